"""
capabilities.py
---------------
FHIR Conditional Upsert Service — CapabilityStatement builder
-------------------------------------------------------------
Accumulates per-resource-type REST capabilities and renders the FHIR R4
``CapabilityStatement`` served at ``GET /metadata``.

Handlers contribute to the statement through ``add_resource_capability``;
the conditional-upsert engine only sets ``conditionalUpdate`` when it was
constructed with the feature enabled.

Project: FHIR Conditional Upsert Service
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List

FHIR_VERSION = "4.0.1"

# Interactions every resource type served by this store supports.
DEFAULT_INTERACTIONS = ("read", "vread", "update", "delete", "history-instance", "create", "search-type")


class CapabilityStatementBuilder:
    """Mutable builder; one REST resource component per resource type."""

    def __init__(self, software_name: str, software_version: str) -> None:
        self.software_name = software_name
        self.software_version = software_version
        self._resources: Dict[str, Dict[str, Any]] = {}

    def build_rest_resource_component(self, resource_type: str, **flags: Any) -> Dict[str, Any]:
        """
        Return the component for *resource_type*, creating it on first use, and
        apply *flags* (FHIR element names, e.g. ``conditionalUpdate=True``).
        """
        component = self._resources.get(resource_type)
        if component is None:
            component = {
                "type": resource_type,
                "interaction": [{"code": code} for code in DEFAULT_INTERACTIONS],
                "versioning": "versioned-update",
            }
            self._resources[resource_type] = component
        component.update(flags)
        return component

    def add_resource_types(self, resource_types: Iterable[str]) -> None:
        for resource_type in resource_types:
            self.build_rest_resource_component(resource_type)

    @property
    def resource_types(self) -> List[str]:
        return sorted(self._resources)

    def build(self) -> Dict[str, Any]:
        return {
            "resourceType": "CapabilityStatement",
            "status": "active",
            "date": datetime.now(timezone.utc).date().isoformat(),
            "kind": "instance",
            "software": {"name": self.software_name, "version": self.software_version},
            "fhirVersion": FHIR_VERSION,
            "format": ["json"],
            "rest": [
                {
                    "mode": "server",
                    "resource": [self._resources[t] for t in self.resource_types],
                }
            ],
        }
