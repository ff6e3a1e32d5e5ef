"""
main.py
-------
FHIR Conditional Upsert Service — FastAPI server
------------------------------------------------
REST surface of the service.  Builds request objects from HTTP calls, sends
them through the Dispatcher and renders the outcome as FHIR JSON.  Every
``FhirError`` is returned as a FHIR ``OperationOutcome`` with its status.

Endpoints:
    GET  /health                         — Service health check
    GET  /metadata                       — CapabilityStatement
    PUT  /{resource_type}?criteria       — Conditional update (create / update / reject)
    GET  /_operations/export/{job_id}    — Bulk export status poll

Backends (``FHIR_STORE_BACKEND``):
    sqlite — SqliteFhirStore for search, writes and export jobs.
    remote — FhirServerClient for search and writes; export jobs stay in SQLite.

Run:
    uvicorn main:app --reload

Project: FHIR Conditional Upsert Service
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from email.utils import format_datetime
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from capabilities import CapabilityStatementBuilder
from conditional_upsert import ConditionalUpsertEngine, ConditionalUpsertResourceRequest
from config import Settings, load_settings
from database import SqliteFhirStore
from dispatcher import Dispatcher, build_dispatcher
from exceptions import BadRequestError, FhirError
from export_status import GetExportRequest, GetExportRequestHandler
from fhir_client import FhirServerClient
from resources import Resource, SaveOutcomeType, UpsertOutcome

logger = logging.getLogger(__name__)

# ── Config ─────────────────────────────────────────────────────────────────────

VERSION = "1.0.0"
SERVICE_NAME = "FHIR Conditional Upsert Service"
FHIR_JSON = "application/fhir+json"

# Query parameters that shape the response rather than select resources.
_RESULT_PARAMS = {"_format", "_pretty", "_summary", "_elements"}


# ── Helpers ────────────────────────────────────────────────────────────────────

def _operation_outcome(severity: str, code: str, diagnostics: str) -> Dict[str, Any]:
    return {
        "resourceType": "OperationOutcome",
        "issue": [{"severity": severity, "code": code, "diagnostics": diagnostics}],
    }


def _http_date(value: datetime) -> str:
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


def _upsert_response(request: Request, outcome: UpsertOutcome) -> JSONResponse:
    wrapper = outcome.wrapper
    base = str(request.base_url).rstrip("/")
    headers = {
        "ETag": str(wrapper.etag),
        "Location": f"{base}/{wrapper.resource_type}/{wrapper.resource_id}/_history/{wrapper.version}",
        "Last-Modified": _http_date(wrapper.last_modified),
    }
    status_code = 201 if outcome.outcome == SaveOutcomeType.CREATED else 200
    return JSONResponse(
        content=wrapper.to_fhir(),
        status_code=status_code,
        headers=headers,
        media_type=FHIR_JSON,
    )


async def _build_services(app: FastAPI, settings: Settings) -> Optional[FhirServerClient]:
    """Wire gateways → engine → dispatcher onto ``app.state``; return the remote client to close."""
    local_store = SqliteFhirStore(settings.db_path)
    remote: Optional[FhirServerClient] = None
    if settings.store_backend == "remote":
        remote = FhirServerClient(
            settings.server_base_url,
            token=settings.server_token,
            timeout=settings.http_timeout,
        )
        await remote.connect()
        search_gateway, data_store = remote, remote
    else:
        search_gateway, data_store = local_store, local_store

    engine = ConditionalUpsertEngine(
        search_gateway,
        data_store,
        conditional_update_enabled=settings.conditional_update_enabled,
    )
    app.state.engine = engine
    app.state.dispatcher = build_dispatcher(engine, GetExportRequestHandler(local_store))
    logger.info(
        "%s %s ready (backend=%s, conditional update advertised=%s).",
        SERVICE_NAME, VERSION, settings.store_backend, settings.conditional_update_enabled,
    )
    return remote


# ── FastAPI app ────────────────────────────────────────────────────────────────

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Explicit settings (tests); defaults to ``load_settings()``.
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        remote = await _build_services(app, settings)
        try:
            yield
        finally:
            if remote is not None:
                await remote.close()

    app = FastAPI(
        title=SERVICE_NAME,
        version=VERSION,
        description="FHIR R4 conditional update over a versioned resource store.",
        lifespan=lifespan,
    )
    app.state.settings = settings

    @app.exception_handler(FhirError)
    async def fhir_error_handler(request: Request, exc: FhirError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.info("%s %s rejected (%d): %s", request.method, request.url.path, exc.status_code, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content=_operation_outcome("error", exc.issue_code, exc.message),
            media_type=FHIR_JSON,
        )

    @app.get("/health")
    def health() -> dict:
        """Return service name, version, status and current UTC timestamp."""
        return {
            "service": SERVICE_NAME,
            "version": VERSION,
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/metadata")
    def metadata(request: Request) -> JSONResponse:
        """CapabilityStatement for every configured resource type."""
        engine: ConditionalUpsertEngine = request.app.state.engine
        builder = CapabilityStatementBuilder(SERVICE_NAME, VERSION)
        builder.add_resource_types(settings.resource_types)
        for resource_type in builder.resource_types:
            engine.add_resource_capability(builder, resource_type)
        return JSONResponse(content=builder.build(), media_type=FHIR_JSON)

    @app.get("/_operations/export/{job_id}")
    async def export_status(job_id: str, request: Request) -> Response:
        """
        Poll an export job.

        Returns:
            200 with the Bulk Data manifest when complete, 202 while queued or running.
        """
        dispatcher: Dispatcher = request.app.state.dispatcher
        result = await dispatcher.send(GetExportRequest(request_uri=str(request.url), job_id=job_id))
        if result.job_result is None:
            return Response(status_code=result.status_code)

        job = result.job_result
        return JSONResponse(
            status_code=result.status_code,
            content={
                "transactionTime": job.transaction_time.isoformat(),
                "request": job.request_uri,
                "requiresAccessToken": False,
                "output": [f.model_dump() for f in job.output],
                "error": [f.model_dump() for f in job.error],
            },
        )

    @app.put("/{resource_type}")
    async def conditional_update(resource_type: str, request: Request) -> JSONResponse:
        """
        Conditional update: ``PUT [type]?[search parameters]`` with a FHIR body.

        Returns 201 when a resource was created, 200 when one was updated.
        """
        criteria = [
            (name, value)
            for name, value in request.query_params.multi_items()
            if name not in _RESULT_PARAMS
        ]
        if not criteria:
            raise BadRequestError(
                "Conditional update requires search criteria in the query string."
            )

        try:
            body = await request.json()
        except ValueError as exc:
            raise BadRequestError(f"Request body is not valid JSON: {exc}") from exc

        resource = Resource.from_fhir(body)
        if resource.resource_type != resource_type:
            raise BadRequestError(
                f"Resource type '{resource.resource_type}' in the body does not match "
                f"'{resource_type}' in the URL."
            )

        dispatcher: Dispatcher = request.app.state.dispatcher
        outcome = await dispatcher.send(
            ConditionalUpsertResourceRequest(resource=resource, conditional_parameters=criteria)
        )
        return _upsert_response(request, outcome)

    return app


_settings = load_settings()

# Enable INFO-level logging for all service modules so engine decisions appear
# in the uvicorn terminal.
logging.basicConfig(
    level=_settings.log_level,
    format="%(levelname)s [%(name)s] %(message)s",
)

app = create_app(_settings)
