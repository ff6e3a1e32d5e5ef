"""
config.py
---------
FHIR Conditional Upsert Service — Settings
------------------------------------------
Runtime settings read from the environment (``.env`` is loaded first via
python-dotenv).

    FHIR_STORE_BACKEND           "sqlite" (default) or "remote"
    FHIR_DB_PATH                 SQLite file for the sqlite backend
    FHIR_SERVER_BASE_URL         FHIR base URL for the remote backend
    FHIR_SERVER_TOKEN            Optional bearer token for the remote backend
    FHIR_HTTP_TIMEOUT            Remote request timeout, seconds (default 30)
    CONDITIONAL_UPDATE_ENABLED   Advertise conditionalUpdate in /metadata (default true)
    FHIR_RESOURCE_TYPES          Comma-separated types listed in /metadata
    LOG_LEVEL                    Root log level (default INFO)

Project: FHIR Conditional Upsert Service
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import List, Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

DEFAULT_RESOURCE_TYPES = "Patient,Observation,Encounter,Condition,MedicationRequest,AllergyIntolerance"


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    store_backend: Literal["sqlite", "remote"] = "sqlite"
    db_path: Path = Path(__file__).parent / "fhir_store.sqlite"
    server_base_url: Optional[str] = None
    server_token: Optional[str] = None
    http_timeout: float = 30.0
    conditional_update_enabled: bool = True
    resource_types: List[str] = Field(default_factory=lambda: DEFAULT_RESOURCE_TYPES.split(","))
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"Unknown log level '{v}'.")
        return level

    @model_validator(mode="after")
    def _remote_needs_url(self) -> "Settings":
        if self.store_backend == "remote" and not self.server_base_url:
            raise ValueError("FHIR_SERVER_BASE_URL is required when FHIR_STORE_BACKEND=remote.")
        return self


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


def load_settings() -> Settings:
    """
    Build Settings from ``.env`` and the process environment.

    Raises:
        pydantic.ValidationError: on invalid values (e.g. remote backend without a URL).
    """
    load_dotenv()
    values = {
        "store_backend": os.getenv("FHIR_STORE_BACKEND", "sqlite").strip().lower(),
        "server_base_url": os.getenv("FHIR_SERVER_BASE_URL") or None,
        "server_token": os.getenv("FHIR_SERVER_TOKEN") or None,
        "http_timeout": os.getenv("FHIR_HTTP_TIMEOUT", "30"),
        "conditional_update_enabled": _env_bool("CONDITIONAL_UPDATE_ENABLED", True),
        "resource_types": [
            t.strip()
            for t in os.getenv("FHIR_RESOURCE_TYPES", DEFAULT_RESOURCE_TYPES).split(",")
            if t.strip()
        ],
        "log_level": os.getenv("LOG_LEVEL", "INFO"),
    }
    db_path = os.getenv("FHIR_DB_PATH")
    if db_path:
        values["db_path"] = db_path
    settings = Settings(**values)
    logger.debug("Settings loaded: backend=%s.", settings.store_backend)
    return settings
