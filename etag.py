"""
etag.py
-------
FHIR Conditional Upsert Service — Weak entity tags
--------------------------------------------------
Optimistic-concurrency stamp attached to one stored version of a resource.

A WeakETag wraps the store-issued ``versionId`` string.  It is opaque to the
rest of the service: two tags are equal iff their version strings are equal,
and nothing orders, parses or increments them.  The HTTP form is
``W/"<versionId>"`` (used for the ``ETag`` and ``If-Match`` headers).

Project: FHIR Conditional Upsert Service
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, field_validator

from exceptions import BadRequestError

_WEAK_ETAG_RE = re.compile(r'^W/"(?P<version>[^"]+)"$')


class WeakETag(BaseModel):
    """Immutable version token.  Compare with ``==``; never inspect the contents."""

    model_config = ConfigDict(frozen=True)

    version_id: str

    @field_validator("version_id")
    @classmethod
    def _not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("version_id must not be empty.")
        return v

    @classmethod
    def from_version_id(cls, version_id: str) -> "WeakETag":
        """Build a tag from a store-provided version identifier."""
        return cls(version_id=version_id)

    @classmethod
    def from_weak_etag(cls, weak_etag: str) -> "WeakETag":
        """
        Parse the header form ``W/"<versionId>"``.

        Raises:
            BadRequestError: when *weak_etag* is not a weak entity tag.
        """
        match = _WEAK_ETAG_RE.match((weak_etag or "").strip())
        if not match:
            raise BadRequestError(f"Invalid weak ETag '{weak_etag}'.")
        return cls(version_id=match.group("version"))

    def __str__(self) -> str:
        return f'W/"{self.version_id}"'
