"""
dispatcher.py
-------------
FHIR Conditional Upsert Service — Request dispatcher
----------------------------------------------------
Routes a request object to the handler registered for its type.  Handlers are
passed in explicitly; there is no process-wide registry.

Usage::

    dispatcher = build_dispatcher(engine, export_handler)
    outcome = await dispatcher.send(ConditionalUpsertResourceRequest(...))

Project: FHIR Conditional Upsert Service
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Type

from conditional_upsert import ConditionalUpsertEngine, ConditionalUpsertResourceRequest
from export_status import GetExportRequest, GetExportRequestHandler

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[Any]]


class Dispatcher:
    def __init__(self, handlers: Dict[Type[Any], Handler]) -> None:
        self._handlers = dict(handlers)

    async def send(self, request: Any) -> Any:
        """
        Await the handler registered for ``type(request)``.

        Raises:
            TypeError: no handler is registered for the request type.
        """
        handler = self._handlers.get(type(request))
        if handler is None:
            raise TypeError(f"No handler registered for {type(request).__name__}.")
        logger.debug("dispatcher: %s → %s", type(request).__name__, getattr(handler, "__qualname__", handler))
        return await handler(request)


def build_dispatcher(
    engine: ConditionalUpsertEngine,
    export_handler: GetExportRequestHandler,
) -> Dispatcher:
    return Dispatcher(
        {
            ConditionalUpsertResourceRequest: engine.handle,
            GetExportRequest: export_handler.handle,
        }
    )
