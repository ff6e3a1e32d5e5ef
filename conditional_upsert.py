"""
conditional_upsert.py
---------------------
FHIR Conditional Upsert Service — Conditional update engine
-----------------------------------------------------------
Implements FHIR conditional update (https://www.hl7.org/fhir/http.html#cond-update):
``PUT [type]?[search parameters]``.

The engine runs one search with the client's criteria and branches on the
number of matches:

    0 matches, no id in body    → create with a server-assigned id
    0 matches, id in body       → update-as-create with the client's id
    1 match,   no id / same id  → versioned update of the match (If-Match its version)
    1 match,   different id     → IdentifierConflictError (400)
    2+ matches                  → AmbiguousMatchError (412)

Criteria the search reports as unsupported reject the request with
BadRequestError (400) before any of the branches above.

The search is never repeated.  A concurrent writer may change the matched
record between the search and the write; the store's version check (the
match's WeakETag passed as the expected version) turns that into a
ResourceVersionConflictError / ResourceNotFoundError instead of a lost
update.  The engine holds no locks and no state between calls.

Public API:
    ConditionalUpsertResourceRequest  request object routed by the Dispatcher
    ConditionalUpsertEngine           the decision procedure

Project: FHIR Conditional Upsert Service
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from capabilities import CapabilityStatementBuilder
from etag import WeakETag
from exceptions import (
    AmbiguousMatchError,
    BadRequestError,
    IdentifierConflictError,
    ResourceStoreError,
)
from gateways import DataStoreGateway, SearchGateway
from resources import Resource, SearchParams, UpsertOutcome

logger = logging.getLogger(__name__)


class ConditionalUpsertResourceRequest(BaseModel):
    """A write whose target is selected by *conditional_parameters*."""

    model_config = ConfigDict(frozen=True)

    resource: Resource
    conditional_parameters: SearchParams = Field(default_factory=list)


class ConditionalUpsertEngine:
    """
    Decides between create, update-as-create, versioned update and rejection.

    Args:
        search_gateway:             Runs the conditional search.
        data_store:                 Performs the single mutation.
        conditional_update_enabled: Advertise ``conditionalUpdate`` in the
                                    CapabilityStatement.
    """

    def __init__(
        self,
        search_gateway: SearchGateway,
        data_store: DataStoreGateway,
        *,
        conditional_update_enabled: bool = True,
    ) -> None:
        if search_gateway is None:
            raise ValueError("search_gateway is required.")
        if data_store is None:
            raise ValueError("data_store is required.")
        self._search_gateway = search_gateway
        self._data_store = data_store
        self._conditional_update_enabled = conditional_update_enabled

    @property
    def conditional_update_enabled(self) -> bool:
        return self._conditional_update_enabled

    async def handle(self, request: ConditionalUpsertResourceRequest) -> UpsertOutcome:
        return await self.execute(request.resource, request.conditional_parameters)

    async def execute(
        self, resource: Resource, conditional_parameters: SearchParams
    ) -> UpsertOutcome:
        """
        Resolve the conditional write and apply it.

        Returns:
            UpsertOutcome from the store (Created or Updated).

        Raises:
            BadRequestError:         the search ignored some of the criteria.
            IdentifierConflictError: one match whose id differs from ``resource.id``.
            AmbiguousMatchError:     more than one match.
            ResourceStoreError:      any gateway failure, re-raised as is.
        """
        if resource is None:
            raise ValueError("resource is required.")
        resource_type = resource.resource_type

        try:
            search_result = await self._search_gateway.search(
                resource_type, list(conditional_parameters)
            )
        except ResourceStoreError as exc:
            exc.annotate(resource_type, resource.id or None)
            raise

        if search_result.unsupported_search_params:
            # Part of the filter was not applied; the matches are not the client's target.
            unsupported = _format_params(search_result.unsupported_search_params)
            logger.warning(
                "conditional upsert: %s search ignored criteria %s; rejecting.",
                resource_type, unsupported,
            )
            raise BadRequestError(
                f"Conditional update criteria could not be evaluated: {unsupported}."
            )

        matches = search_result.results
        count = len(matches)
        logger.debug(
            "conditional upsert: %s?%s matched %d resource(s).",
            resource_type, _format_params(conditional_parameters), count,
        )

        if count == 0:
            if not resource.id:
                # No match, no id: the server creates the resource.
                candidate = resource.with_id(str(uuid.uuid4()))
                logger.info(
                    "conditional upsert: no match, creating %s/%s.",
                    resource_type, candidate.id,
                )
                return await self._create(candidate)

            # No match, id supplied: update-as-create with the client's id.
            logger.info(
                "conditional upsert: no match, update-as-create %s/%s.",
                resource_type, resource.id,
            )
            return await self._upsert(resource, None)

        if count == 1:
            match = matches[0]
            # Ordinal comparison: no case folding or normalisation.
            if not resource.id or resource.id == match.resource_id:
                candidate = resource.with_id(match.resource_id)
                logger.info(
                    "conditional upsert: one match, updating %s/%s at version %s.",
                    resource_type, match.resource_id, match.version,
                )
                return await self._upsert(candidate, match.etag)

            logger.warning(
                "conditional upsert: body id '%s' does not match %s/%s.",
                resource.id, resource_type, match.resource_id,
            )
            raise IdentifierConflictError(match.resource_id, resource.id)

        logger.warning(
            "conditional upsert: %d %s resources matched; criteria not selective enough.",
            count, resource_type,
        )
        raise AmbiguousMatchError(resource_type, count)

    def add_resource_capability(
        self, statement: CapabilityStatementBuilder, resource_type: str
    ) -> None:
        if self._conditional_update_enabled:
            statement.build_rest_resource_component(resource_type, conditionalUpdate=True)

    async def _create(self, resource: Resource) -> UpsertOutcome:
        try:
            return await self._data_store.create(resource)
        except ResourceStoreError as exc:
            exc.annotate(resource.resource_type, resource.id)
            raise

    async def _upsert(self, resource: Resource, weak_etag: Optional[WeakETag]) -> UpsertOutcome:
        try:
            return await self._data_store.upsert(resource, weak_etag)
        except ResourceStoreError as exc:
            exc.annotate(resource.resource_type, resource.id)
            raise


def _format_params(params: SearchParams) -> str:
    return "&".join(f"{name}={value}" for name, value in params)
