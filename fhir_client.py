"""
fhir_client.py
--------------
FHIR Conditional Upsert Service — Remote FHIR R4 store client
-------------------------------------------------------------
Async SearchGateway + DataStoreGateway backed by an external FHIR R4 server.

    search  →  GET  {base}/{type}?{params}          (Bundle → ResourceWrappers)
    create  →  POST {base}/{type}
    upsert  →  PUT  {base}/{type}/{id}   [If-Match: W/"<versionId>"]

The remote server is the truth source for versions: every wrapper's version
is the server's ``meta.versionId`` and the conditional write is enforced by
the server through ``If-Match``.

Status mapping:
    404 / 410        → ResourceNotFoundError
    409              → ResourceConflictError
    412              → ResourceVersionConflictError
    5xx / transport  → ServiceUnavailableError
    other non-2xx    → FhirApiError
    2xx without a versionId / usable ETag → InvalidServerResponseError

Searches send ``Prefer: handling=strict`` so the server rejects criteria it
cannot evaluate instead of silently dropping them.

Usage (async context manager — preferred):
    async with FhirServerClient("https://fhir.example.org/r4") as client:
        engine = ConditionalUpsertEngine(client, client)

Usage (manual lifecycle):
    client = FhirServerClient(base_url)
    await client.connect()
    ...
    await client.close()

Project: FHIR Conditional Upsert Service
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional

import httpx

from etag import WeakETag
from exceptions import (
    FhirApiError,
    InvalidServerResponseError,
    ResourceConflictError,
    ResourceNotFoundError,
    ResourceVersionConflictError,
    ServiceUnavailableError,
)
from resources import (
    Resource,
    ResourceWrapper,
    SaveOutcomeType,
    SearchParams,
    SearchResult,
    UpsertOutcome,
)

logger = logging.getLogger(__name__)

_FHIR_JSON = "application/fhir+json"

# W/"3" or "3"
_ETAG_RE = re.compile(r'^(?:W/)?"(?P<version>[^"]+)"$')

_STATUS_ERRORS = {
    404: ResourceNotFoundError,
    409: ResourceConflictError,
    410: ResourceNotFoundError,
    412: ResourceVersionConflictError,
}


class FhirServerClient:
    """
    Async FHIR R4 client implementing the search and data-store gateways.

    Args:
        base_url:  FHIR base URL (e.g. ``https://fhir.example.org/r4``).
        token:     Optional static bearer token sent on every request.
        timeout:   HTTP request timeout in seconds.
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required.")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._token = token
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the underlying HTTP connection pool."""
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
            logger.debug("FhirServerClient: HTTP transport initialised for %s.", self.base_url)

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None
            logger.debug("FhirServerClient: HTTP transport closed.")

    async def __aenter__(self) -> "FhirServerClient":
        await self.connect()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    # ── Internal request helper ──────────────────────────────────────────────

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Accept": _FHIR_JSON, "Content-Type": _FHIR_JSON}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        params: Optional[SearchParams] = None,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        """
        Execute a FHIR request and return the successful response.

        Raises:
            RuntimeError:             if ``connect()`` / ``__aenter__`` was not called.
            ServiceUnavailableError:  transport failure or 5xx.
            ResourceStoreError:       mapped non-2xx status (see module docstring).
        """
        if self._http is None:
            raise RuntimeError(
                "FhirServerClient is not connected. "
                "Use 'async with FhirServerClient(...) as client:' or call connect() first."
            )

        context = {"resource_type": resource_type, "resource_id": resource_id}
        try:
            resp = await self._http.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=json,
                headers=self._headers(headers),
            )
        except httpx.HTTPError as exc:
            raise ServiceUnavailableError(
                f"FHIR server request {method} {path} failed: {exc}", **context
            ) from exc

        if 200 <= resp.status_code < 300:
            return resp

        logger.debug(
            "FhirServerClient: %s %s → %d %s", method, path, resp.status_code, resp.text[:200],
        )
        if resp.status_code >= 500:
            raise ServiceUnavailableError(
                f"FHIR server returned {resp.status_code}: {resp.text}", **context
            )
        error_cls = _STATUS_ERRORS.get(resp.status_code)
        if error_cls is not None:
            raise error_cls(_diagnostics(resp), **context)
        raise FhirApiError(resp.status_code, resp.text, **context)

    # ── Gateway API ──────────────────────────────────────────────────────────

    async def search(self, resource_type: str, conditional_parameters: SearchParams) -> SearchResult:
        """
        ``GET {base}/{type}?params`` — params are sent in the order given.

        Only ``search``-mode entries of *resource_type* count as matches
        (``_include``-d resources and OperationOutcome entries are skipped).
        """
        logger.debug(
            "FhirServerClient: GET /%s params=%s", resource_type, conditional_parameters or "<none>",
        )
        resp = await self._request(
            "GET",
            f"/{resource_type}",
            resource_type=resource_type,
            params=list(conditional_parameters),
            headers={"Prefer": "handling=strict"},
        )
        bundle = resp.json()
        results = []
        for entry in bundle.get("entry", []) or []:
            resource = entry.get("resource") or {}
            mode = (entry.get("search") or {}).get("mode", "match")
            if resource.get("resourceType") != resource_type or mode != "match":
                continue
            results.append(_to_wrapper(resource))

        next_link = next(
            (link.get("url") for link in bundle.get("link", []) or [] if link.get("relation") == "next"),
            None,
        )
        return SearchResult(results=results, continuation_token=next_link)

    async def create(self, resource: Resource) -> UpsertOutcome:
        """``POST {base}/{type}``; the server keeps or assigns the id."""
        resp = await self._request(
            "POST",
            f"/{resource.resource_type}",
            resource_type=resource.resource_type,
            resource_id=resource.id,
            json=resource.to_fhir(),
        )
        return UpsertOutcome(wrapper=_response_wrapper(resp, resource), outcome=SaveOutcomeType.CREATED)

    async def upsert(self, resource: Resource, weak_etag: Optional[WeakETag]) -> UpsertOutcome:
        """``PUT {base}/{type}/{id}``; 201 → Created, 200 → Updated."""
        if not resource.id:
            raise ValueError("upsert requires a resource id.")
        headers = {"If-Match": str(weak_etag)} if weak_etag is not None else None
        resp = await self._request(
            "PUT",
            f"/{resource.resource_type}/{resource.id}",
            resource_type=resource.resource_type,
            resource_id=resource.id,
            json=resource.to_fhir(),
            headers=headers,
        )
        outcome = SaveOutcomeType.CREATED if resp.status_code == 201 else SaveOutcomeType.UPDATED
        return UpsertOutcome(wrapper=_response_wrapper(resp, resource), outcome=outcome)


# ── Response parsing ─────────────────────────────────────────────────────────

def _diagnostics(resp: httpx.Response) -> str:
    """Return the OperationOutcome diagnostics when present, else the raw body."""
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    issues = body.get("issue") if isinstance(body, dict) else None
    if issues:
        return "; ".join(i.get("diagnostics") or i.get("code", "") for i in issues)
    return resp.text


def _parse_instant(value: Optional[str]) -> datetime:
    """FHIR ``instant`` (ISO 8601) from ``meta.lastUpdated``."""
    if value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("FhirServerClient: unparseable lastUpdated %r.", value)
    return datetime.now(timezone.utc)


def _parse_http_date(value: Optional[str]) -> datetime:
    """RFC 1123 HTTP-date from the ``Last-Modified`` header."""
    if value:
        try:
            return parsedate_to_datetime(value)
        except (TypeError, ValueError):
            logger.debug("FhirServerClient: unparseable Last-Modified %r.", value)
    return datetime.now(timezone.utc)


def _etag_version(header: str, context: Dict[str, Optional[str]]) -> str:
    """versionId from a weak (``W/"3"``) or strong (``"3"``) ETag header."""
    match = _ETAG_RE.match(header.strip())
    if not match:
        raise InvalidServerResponseError(
            f"FHIR server returned an unusable ETag {header!r}.", **context
        )
    return match.group("version")


def _to_wrapper(data: Dict[str, Any]) -> ResourceWrapper:
    resource = Resource.from_fhir(data)
    meta = data.get("meta") or {}
    version = meta.get("versionId")
    if not version:
        raise InvalidServerResponseError(
            f"FHIR server returned {resource.resource_type}/{resource.id} without meta.versionId.",
            resource_type=resource.resource_type,
            resource_id=resource.id,
        )
    return ResourceWrapper(
        resource=resource,
        version=str(version),
        last_modified=_parse_instant(meta.get("lastUpdated")),
    )


def _response_wrapper(resp: httpx.Response, sent: Resource) -> ResourceWrapper:
    """
    Build the stored wrapper from a write response.

    Servers answering ``Prefer: return=minimal`` send no body; the version then
    comes from the ``ETag`` header and the id from ``Location``.

    Raises:
        InvalidServerResponseError: neither the body nor the headers carry a version.
    """
    context = {"resource_type": sent.resource_type, "resource_id": sent.id}
    etag_header = resp.headers.get("ETag")

    if resp.content:
        data = resp.json()
        meta = data.get("meta") or {}
        if not meta.get("versionId") and etag_header:
            data = {**data, "meta": {**meta, "versionId": _etag_version(etag_header, context)}}
        return _to_wrapper(data)

    if not etag_header:
        raise InvalidServerResponseError(
            "FHIR server write response has neither a body nor an ETag.", **context
        )
    version = _etag_version(etag_header, context)
    resource_id = sent.id
    location = resp.headers.get("Location")
    if location:
        # {base}/{type}/{id}/_history/{vid}
        parts = location.rstrip("/").split("/")
        if "_history" in parts:
            resource_id = parts[parts.index("_history") - 1]
        elif parts:
            resource_id = parts[-1]
    return ResourceWrapper(
        resource=sent.with_id(resource_id) if resource_id else sent,
        version=version,
        last_modified=_parse_http_date(resp.headers.get("Last-Modified")),
    )
