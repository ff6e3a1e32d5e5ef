"""
exceptions.py
-------------
FHIR Conditional Upsert Service — Error taxonomy
------------------------------------------------
Every error the service raises derives from ``FhirError`` and carries the
HTTP status the REST layer should answer with.  ``main.py`` renders any
``FhirError`` as a FHIR ``OperationOutcome``.

Engine errors (invalid conditional request):
    BadRequestError           400  search criteria the store cannot evaluate
    IdentifierConflictError   400  single match, but the body carries another id
    AmbiguousMatchError       412  criteria matched more than one resource

Collaborator errors (propagated unchanged by the engine):
    ServiceUnavailableError        503  search or store unreachable
    ResourceConflictError          409  create with an id that already exists
    ResourceVersionConflictError   412  If-Match version is no longer current
    ResourceNotFoundError          404  target deleted between search and write
    JobNotFoundError               404  unknown export job
    FhirApiError                   *    remote server answered with an unmapped status
    InvalidServerResponseError     502  remote server response lacks a version / ETag

Operation errors:
    OperationFailedError      job-defined status for failed/canceled exports

Project: FHIR Conditional Upsert Service
"""

from __future__ import annotations

from typing import Optional

# OperationOutcome issue codes (http://hl7.org/fhir/valueset-issue-type.html)
ISSUE_INVALID = "invalid"
ISSUE_CONFLICT = "conflict"
ISSUE_NOT_FOUND = "not-found"
ISSUE_TRANSIENT = "transient"
ISSUE_PROCESSING = "processing"
ISSUE_EXCEPTION = "exception"


class FhirError(Exception):
    """Base class for every error that maps onto an HTTP response."""

    status_code: int = 500
    issue_code: str = ISSUE_EXCEPTION

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class BadRequestError(FhirError):
    """Malformed or invalid client request."""

    status_code = 400
    issue_code = ISSUE_INVALID


class PreconditionFailedError(FhirError):
    """A request precondition does not hold."""

    status_code = 412
    issue_code = ISSUE_CONFLICT


class IdentifierConflictError(BadRequestError):
    """The single resource matched by the criteria has a different id than the request body."""

    def __init__(self, matched_id: str, requested_id: str) -> None:
        self.matched_id = matched_id
        self.requested_id = requested_id
        super().__init__(
            f"Resource id '{requested_id}' in the request body does not match the id "
            f"'{matched_id}' of the resource found by the conditional criteria."
        )


class AmbiguousMatchError(PreconditionFailedError):
    """The conditional criteria matched more than one resource."""

    def __init__(self, resource_type: str, match_count: int) -> None:
        self.resource_type = resource_type
        self.match_count = match_count
        super().__init__(
            f"{match_count} {resource_type} resources matched the conditional criteria; "
            "the search criteria were not selective enough."
        )


# ---------------------------------------------------------------------------
# Collaborator errors
# ---------------------------------------------------------------------------

class ResourceStoreError(FhirError):
    """
    Failure reported by a search or data-store gateway.

    ``resource_type`` / ``resource_id`` identify the record the failure
    concerns so the caller can map it to a transport status.  Gateways set
    them when they know them; the engine fills in whatever is missing.
    """

    def __init__(
        self,
        message: str,
        *,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(message)

    def annotate(self, resource_type: Optional[str], resource_id: Optional[str]) -> None:
        """Fill in resource context that the raising gateway did not know."""
        if self.resource_type is None:
            self.resource_type = resource_type
        if self.resource_id is None:
            self.resource_id = resource_id


class ServiceUnavailableError(ResourceStoreError):
    status_code = 503
    issue_code = ISSUE_TRANSIENT


class ResourceConflictError(ResourceStoreError):
    status_code = 409
    issue_code = ISSUE_CONFLICT


class ResourceVersionConflictError(ResourceStoreError):
    """Expected version does not match the currently stored version."""

    status_code = 412
    issue_code = ISSUE_CONFLICT


class ResourceNotFoundError(ResourceStoreError):
    status_code = 404
    issue_code = ISSUE_NOT_FOUND


class JobNotFoundError(ResourceStoreError):
    status_code = 404
    issue_code = ISSUE_NOT_FOUND


class FhirApiError(ResourceStoreError):
    """Raised when a remote FHIR server returns a status with no specific mapping."""

    def __init__(self, status_code: int, body: str, **context: Optional[str]) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"FHIR server error {status_code}: {body}", **context)


class InvalidServerResponseError(ResourceStoreError):
    """A remote FHIR server answered 2xx with a response the service cannot use."""

    status_code = 502
    issue_code = ISSUE_EXCEPTION


# ---------------------------------------------------------------------------
# Operation errors
# ---------------------------------------------------------------------------

class OperationFailedError(FhirError):
    """An asynchronous operation (export) finished unsuccessfully."""

    issue_code = ISSUE_PROCESSING

    def __init__(self, message: str, response_status_code: int) -> None:
        self.response_status_code = response_status_code
        self.status_code = response_status_code
        super().__init__(message)
