"""
gateways.py
-----------
FHIR Conditional Upsert Service — Collaborator contracts
--------------------------------------------------------
Structural interfaces for the collaborators the engine and the export handler
depend on.  Two implementations ship with the service:

    database.SqliteFhirStore       local SQLite store (all three protocols)
    fhir_client.FhirServerClient   remote FHIR R4 server over httpx (search + store)

All methods are coroutines.  Cancelling the awaiting task cancels the
pending call; implementations must not swallow ``asyncio.CancelledError``.

Project: FHIR Conditional Upsert Service
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

from etag import WeakETag
from resources import Resource, SearchParams, SearchResult, UpsertOutcome

if TYPE_CHECKING:
    from export_status import ExportJobOutcome


@runtime_checkable
class SearchGateway(Protocol):
    async def search(
        self, resource_type: str, conditional_parameters: SearchParams
    ) -> SearchResult:
        """
        Return every current resource of *resource_type* matching the params.

        Zero matches is an empty SearchResult, not an error.  Raises
        ``ServiceUnavailableError`` when the search backend cannot be reached.
        """
        ...


@runtime_checkable
class DataStoreGateway(Protocol):
    async def create(self, resource: Resource) -> UpsertOutcome:
        """
        Store *resource* as a new record (version 1).

        Raises ``ResourceConflictError`` if ``resource.id`` is already taken.
        """
        ...

    async def upsert(
        self, resource: Resource, weak_etag: Optional[WeakETag]
    ) -> UpsertOutcome:
        """
        Create-or-replace ``(resource.resource_type, resource.id)``.

        With *weak_etag* set the write only succeeds against that exact current
        version: ``ResourceVersionConflictError`` if it moved,
        ``ResourceNotFoundError`` if the record is gone.  Without it the record
        is created when absent (update-as-create) or replaced when present.
        """
        ...


@runtime_checkable
class OperationDataStore(Protocol):
    async def get_export_job_by_id(self, job_id: str) -> "ExportJobOutcome":
        """Raises ``JobNotFoundError`` for an unknown id."""
        ...

