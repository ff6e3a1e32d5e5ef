"""
resources.py
------------
FHIR Conditional Upsert Service — Pydantic data contracts
---------------------------------------------------------
Pydantic v2 models shared by the engine, the gateways and the REST layer.

Public API
----------
    Resource          A typed FHIR record: resourceType tag, optional id, body.
    ResourceWrapper   A stored version of a Resource plus its version string.
    SearchParams      Ordered (name, value) pairs used as conditional criteria.
    SearchResult      Matches returned by a SearchGateway.
    SaveOutcomeType   Created | Updated.
    UpsertOutcome     Result of a store mutation: wrapper + outcome type.

Identity of a Resource is ``(resource_type, id)``.  ``meta`` sent by a client
is never trusted: it is dropped by ``Resource.from_fhir`` and re-stamped from
the stored wrapper by ``ResourceWrapper.to_fhir``.

Project: FHIR Conditional Upsert Service
"""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from etag import WeakETag
from exceptions import BadRequestError

# (parameter-name, parameter-value) pairs; order is kept as received.
SearchParams = List[Tuple[str, str]]

# Elements owned by the server, never copied from a client body.
_SERVER_ELEMENTS = ("resourceType", "id", "meta")


class Resource(BaseModel):
    """
    A FHIR resource as received from, or returned to, a client.

    Fields
    ------
    resource_type: FHIR ``resourceType`` (e.g. ``"Patient"``).
    id:            Logical id.  ``None`` or ``""`` means "not supplied".
    body:          Every other top-level element of the FHIR JSON.
    """

    model_config = ConfigDict(extra="forbid")

    resource_type: str
    id: Optional[str] = None
    body: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("resource_type")
    @classmethod
    def _resource_type_required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("resource_type must not be empty.")
        return v

    @classmethod
    def from_fhir(cls, data: Dict[str, Any]) -> "Resource":
        """
        Build a Resource from FHIR JSON.

        Raises:
            BadRequestError: if *data* is not an object or has no ``resourceType``.
        """
        if not isinstance(data, dict):
            raise BadRequestError("Resource body must be a JSON object.")
        resource_type = data.get("resourceType")
        if not resource_type or not isinstance(resource_type, str):
            raise BadRequestError("Resource body is missing 'resourceType'.")
        resource_id = data.get("id")
        if resource_id is not None and not isinstance(resource_id, str):
            raise BadRequestError("Resource 'id' must be a string.")

        body = {k: copy.deepcopy(v) for k, v in data.items() if k not in _SERVER_ELEMENTS}
        return cls(resource_type=resource_type, id=resource_id or None, body=body)

    def to_fhir(self) -> Dict[str, Any]:
        """Return FHIR JSON for this resource (without ``meta``)."""
        out: Dict[str, Any] = {"resourceType": self.resource_type}
        if self.id:
            out["id"] = self.id
        out.update(copy.deepcopy(self.body))
        return out

    def with_id(self, resource_id: str) -> "Resource":
        """Return a copy of this resource carrying *resource_id*."""
        return self.model_copy(update={"id": resource_id}, deep=True)


class ResourceWrapper(BaseModel):
    """
    A persisted version of a Resource (the stored record wrapper).

    ``version`` is the store-issued versionId; ``etag`` exposes it as the
    optimistic-concurrency token the engine passes back on update.
    """

    model_config = ConfigDict(frozen=True)

    resource: Resource
    version: str
    last_modified: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    is_deleted: bool = False

    @property
    def resource_type(self) -> str:
        return self.resource.resource_type

    @property
    def resource_id(self) -> str:
        return self.resource.id or ""

    @property
    def etag(self) -> WeakETag:
        return WeakETag.from_version_id(self.version)

    def to_fhir(self) -> Dict[str, Any]:
        """FHIR JSON with ``meta.versionId`` and ``meta.lastUpdated`` stamped."""
        out = self.resource.to_fhir()
        meta = {
            "versionId": self.version,
            "lastUpdated": self.last_modified.isoformat(),
        }
        # keep resourceType/id first for readability of responses
        return {
            "resourceType": out.pop("resourceType"),
            **({"id": out.pop("id")} if "id" in out else {}),
            "meta": meta,
            **out,
        }


class SearchResult(BaseModel):
    """
    Matches for one search.  Order of ``results`` carries no meaning for the
    engine; an empty list (never an error) means nothing matched.
    """

    results: List[ResourceWrapper] = Field(default_factory=list)
    unsupported_search_params: List[Tuple[str, str]] = Field(default_factory=list)
    continuation_token: Optional[str] = None


class SaveOutcomeType(str, Enum):
    CREATED = "Created"
    UPDATED = "Updated"


class UpsertOutcome(BaseModel):
    """Outcome of one store mutation."""

    model_config = ConfigDict(frozen=True)

    wrapper: ResourceWrapper
    outcome: SaveOutcomeType
