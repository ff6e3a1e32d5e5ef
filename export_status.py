"""
export_status.py
----------------
FHIR Conditional Upsert Service — Bulk export status
----------------------------------------------------
Status polling for ``$export`` jobs (FHIR Bulk Data Access).  Export jobs are
created and run elsewhere; this module only reads a stored job record and
translates its status into the response the polling client gets:

    completed           → 200 with the job result (output / error manifests)
    queued | running    → 202, no body
    failed | canceled   → OperationFailedError with the job's failure status

Project: FHIR Conditional Upsert Service
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from etag import WeakETag
from exceptions import OperationFailedError
from gateways import OperationDataStore

logger = logging.getLogger(__name__)

HTTP_OK = 200
HTTP_ACCEPTED = 202
HTTP_INTERNAL_SERVER_ERROR = 500


class OperationStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


class ExportFileInfo(BaseModel):
    """One NDJSON file in the export manifest."""

    type: str
    url: str
    count: int = 0


class ExportJobFailureDetails(BaseModel):
    model_config = ConfigDict(frozen=True)

    failure_reason: str
    failure_status_code: int = HTTP_INTERNAL_SERVER_ERROR


class ExportJobRecord(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    request_uri: str
    resource_type: Optional[str] = None
    hash: str = ""
    status: OperationStatus = OperationStatus.QUEUED
    queued_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    output: List[ExportFileInfo] = Field(default_factory=list)
    error: List[ExportFileInfo] = Field(default_factory=list)
    failure_details: Optional[ExportJobFailureDetails] = None


class ExportJobOutcome(BaseModel):
    """A job record together with the version it was read at."""

    job_record: ExportJobRecord
    etag: WeakETag


class ExportJobResult(BaseModel):
    """Body of a completed status poll (the Bulk Data complete-status manifest)."""

    transaction_time: datetime
    request_uri: str
    output: List[ExportFileInfo] = Field(default_factory=list)
    error: List[ExportFileInfo] = Field(default_factory=list)


class GetExportRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    request_uri: str
    job_id: str


class GetExportResponse(BaseModel):
    status_code: int
    job_result: Optional[ExportJobResult] = None


class GetExportRequestHandler:
    """Reads an export job and maps its status onto a GetExportResponse."""

    def __init__(self, operation_data_store: OperationDataStore) -> None:
        if operation_data_store is None:
            raise ValueError("operation_data_store is required.")
        self._operation_data_store = operation_data_store

    async def handle(self, request: GetExportRequest) -> GetExportResponse:
        """
        Raises:
            JobNotFoundError:     unknown job id (from the data store).
            OperationFailedError: the job failed or was canceled.
        """
        outcome = await self._operation_data_store.get_export_job_by_id(request.job_id)
        record = outcome.job_record

        if record.status == OperationStatus.COMPLETED:
            job_result = ExportJobResult(
                transaction_time=record.queued_time,
                request_uri=record.request_uri,
                output=record.output,
                error=record.error,
            )
            return GetExportResponse(status_code=HTTP_OK, job_result=job_result)

        if record.status in (OperationStatus.FAILED, OperationStatus.CANCELED):
            details = record.failure_details or ExportJobFailureDetails(
                failure_reason="Export job did not complete.",
            )
            logger.warning(
                "export job %s ended as %s: %s",
                record.id, record.status.value, details.failure_reason,
            )
            raise OperationFailedError(
                f"Export job {record.status.value}: {details.failure_reason}",
                details.failure_status_code,
            )

        return GetExportResponse(status_code=HTTP_ACCEPTED)
