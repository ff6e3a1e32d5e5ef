"""
database.py
-----------
FHIR Conditional Upsert Service — SQLite resource store
-------------------------------------------------------
Local persistence backend.  Implements the SearchGateway, DataStoreGateway
and OperationDataStore contracts from ``gateways.py`` on top of one SQLite
file.

Table: resources
  - Current version of every (resource_type, resource_id).
  - version is an integer counter, exposed as the opaque versionId string.
  - Deletes are soft: is_deleted=1 and the version still advances.

Table: resource_history
  - Append-only; one row per stored version (including deletes).

Table: export_jobs
  - One row per $export job; the record is stored as JSON with its own
    version counter for optimistic updates by export workers.

Search matching is element equality only: every criterion must equal the
top-level element of the same name (scalars, lists of scalars, or the
``value``/``code`` of coded elements, with optional ``system|value`` form).
``_id`` matches the logical id.  Other ``_``-prefixed parameters, modifiers
(``name:exact``) and chained names (``subject.name``) cannot be evaluated and
make the search fail with BadRequestError.  A search never matches on a
subset of its criteria.

Every version check and the write it guards run inside one
``BEGIN IMMEDIATE`` transaction, so a stale version can never overwrite a
newer one.

Public API:
    init_db()              — Create tables + indexes if absent. Idempotent.
    get_connection()       — Context-manager yielding an open sqlite3.Connection.
    search_resources()     — SELECT current resources matching search params.
    insert_resource()      — INSERT version 1 of a new resource.
    upsert_resource()      — Version-checked create-or-replace.
    read_resource()        — SELECT the current version of one resource.
    delete_resource()      — Soft-delete one resource.
    get_resource_history() — SELECT every stored version of one resource.
    insert_export_job()    — INSERT an export job record.
    get_export_job()       — SELECT an export job record.
    update_export_job()    — Version-checked UPDATE of an export job record.
    SqliteFhirStore        — async gateway wrapper over the functions above.

Project: FHIR Conditional Upsert Service
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Generator, List, Optional, Tuple, TypeVar

from etag import WeakETag
from exceptions import (
    BadRequestError,
    JobNotFoundError,
    ResourceConflictError,
    ResourceNotFoundError,
    ResourceVersionConflictError,
    ServiceUnavailableError,
)
from export_status import ExportJobOutcome, ExportJobRecord
from resources import (
    Resource,
    ResourceWrapper,
    SaveOutcomeType,
    SearchParams,
    SearchResult,
    UpsertOutcome,
)

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

# ---------------------------------------------------------------------------
# DB location — default sits alongside this module
# ---------------------------------------------------------------------------
_DB_PATH: Path = Path(__file__).parent / "fhir_store.sqlite"

# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------
_DDL = """
CREATE TABLE IF NOT EXISTS resources (
    resource_type   TEXT    NOT NULL,
    resource_id     TEXT    NOT NULL,
    version         INTEGER NOT NULL,
    body            TEXT    NOT NULL,             -- JSON object, no id/meta
    is_deleted      INTEGER NOT NULL DEFAULT 0,
    created_at      TEXT    NOT NULL,
    last_modified   TEXT    NOT NULL,
    PRIMARY KEY (resource_type, resource_id)
);

CREATE INDEX IF NOT EXISTS idx_res_type_live ON resources (resource_type, is_deleted);

CREATE TABLE IF NOT EXISTS resource_history (
    resource_type   TEXT    NOT NULL,
    resource_id     TEXT    NOT NULL,
    version         INTEGER NOT NULL,
    body            TEXT    NOT NULL,
    is_deleted      INTEGER NOT NULL DEFAULT 0,
    last_modified   TEXT    NOT NULL,
    PRIMARY KEY (resource_type, resource_id, version)
);
"""

_EXPORT_DDL = """
CREATE TABLE IF NOT EXISTS export_jobs (
    id          TEXT    PRIMARY KEY,
    status      TEXT    NOT NULL,
    hash        TEXT    NOT NULL DEFAULT '',
    record      TEXT    NOT NULL,                 -- ExportJobRecord JSON
    version     INTEGER NOT NULL,
    created_at  TEXT    NOT NULL,
    updated_at  TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_export_status ON export_jobs (status);
CREATE INDEX IF NOT EXISTS idx_export_hash   ON export_jobs (hash);
"""


# ---------------------------------------------------------------------------
# Lifecycle helpers
# ---------------------------------------------------------------------------

def init_db(db_path: Optional[Path] = None) -> None:
    """
    Create all tables and indexes if they do not exist.

    Safe to call multiple times — uses ``IF NOT EXISTS`` throughout.

    Args:
        db_path: Override the default DB file location.  Useful in tests.

    Raises:
        sqlite3.Error: if the underlying SQLite operation fails.
    """
    path = db_path or _DB_PATH
    with sqlite3.connect(str(path)) as conn:
        conn.executescript(_DDL)
        conn.executescript(_EXPORT_DDL)
        conn.commit()
    logger.info("FHIR store DB ready at '%s'.", path)


@contextmanager
def get_connection(
    db_path: Optional[Path] = None,
    *,
    immediate: bool = False,
) -> Generator[sqlite3.Connection, None, None]:
    """
    Yield an open ``sqlite3.Connection`` that commits on clean exit and rolls
    back on exception.

    Args:
        db_path:   Override the default DB file location.
        immediate: Start a ``BEGIN IMMEDIATE`` transaction so reads made to
                   check a version and the write that follows are atomic.

    Yields:
        sqlite3.Connection: with ``row_factory = sqlite3.Row`` set.

    Raises:
        sqlite3.Error: propagated after rollback.
    """
    path = db_path or _DB_PATH
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    try:
        if immediate:
            conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_wrapper(row: sqlite3.Row) -> ResourceWrapper:
    return ResourceWrapper(
        resource=Resource(
            resource_type=row["resource_type"],
            id=row["resource_id"],
            body=json.loads(row["body"]),
        ),
        version=str(row["version"]),
        last_modified=datetime.fromisoformat(row["last_modified"]),
        is_deleted=bool(row["is_deleted"]),
    )


def _current_version(conn: sqlite3.Connection, resource_type: str, resource_id: str) -> Optional[sqlite3.Row]:
    return conn.execute(
        "SELECT version, is_deleted FROM resources "
        "WHERE resource_type = ? AND resource_id = ?",
        (resource_type, resource_id),
    ).fetchone()


def _write_version(
    conn: sqlite3.Connection,
    resource: Resource,
    version: int,
    *,
    is_deleted: bool = False,
) -> ResourceWrapper:
    """INSERT-or-REPLACE the current row and append the history row."""
    now = _now()
    body_json = json.dumps(resource.body, separators=(",", ":"))
    conn.execute(
        """
        INSERT INTO resources
            (resource_type, resource_id, version, body, is_deleted, created_at, last_modified)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT (resource_type, resource_id) DO UPDATE
           SET version = excluded.version,
               body = excluded.body,
               is_deleted = excluded.is_deleted,
               last_modified = excluded.last_modified
        """,
        (resource.resource_type, resource.id, version, body_json, int(is_deleted), now, now),
    )
    conn.execute(
        """
        INSERT INTO resource_history
            (resource_type, resource_id, version, body, is_deleted, last_modified)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (resource.resource_type, resource.id, version, body_json, int(is_deleted), now),
    )
    return ResourceWrapper(
        resource=resource,
        version=str(version),
        last_modified=datetime.fromisoformat(now),
        is_deleted=is_deleted,
    )


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

def _scalar_matches(element: Any, value: str) -> bool:
    if isinstance(element, bool):
        return str(element).lower() == value.lower()
    if isinstance(element, (str, int, float)):
        return str(element) == value
    if isinstance(element, dict):
        system, sep, code = value.rpartition("|")
        candidate = element.get("value", element.get("code"))
        if candidate is None or str(candidate) != code:
            return False
        return not sep or not system or element.get("system") == system
    return False


def _element_matches(element: Any, value: str) -> bool:
    if isinstance(element, list):
        return any(_element_matches(item, value) for item in element)
    if isinstance(element, dict) and "coding" in element:
        return _element_matches(element["coding"], value)
    return _scalar_matches(element, value)


def _split_params(params: SearchParams) -> Tuple[SearchParams, SearchParams]:
    supported: SearchParams = []
    unsupported: SearchParams = []
    for name, value in params:
        if name == "_id" or not (name.startswith("_") or ":" in name or "." in name):
            supported.append((name, value))
        else:
            unsupported.append((name, value))
    return supported, unsupported


def search_resources(
    resource_type: str,
    params: SearchParams,
    db_path: Optional[Path] = None,
) -> SearchResult:
    """
    Return the current, non-deleted resources of *resource_type* matching
    every supported parameter.

    Args:
        resource_type: FHIR resource type to search.
        params:        Ordered (name, value) pairs; all must match.
        db_path:       Override DB file location (tests only).

    Returns:
        SearchResult: matches ordered by resource_id.

    Raises:
        BadRequestError: some params cannot be evaluated by this store.
        sqlite3.Error:   on I/O failures.
    """
    supported, unsupported = _split_params(params)
    if unsupported:
        logger.warning(
            "FHIR store: rejecting unsupported search params %s for %s.",
            unsupported, resource_type,
        )
        raise BadRequestError(
            f"Search parameters not supported for {resource_type}: "
            f"{', '.join(f'{name}={value}' for name, value in unsupported)}."
        )

    with get_connection(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM resources "
            "WHERE resource_type = ? AND is_deleted = 0 "
            "ORDER BY resource_id",
            (resource_type,),
        ).fetchall()

    results: List[ResourceWrapper] = []
    for row in rows:
        body = json.loads(row["body"])
        if all(
            row["resource_id"] == value if name == "_id" else _element_matches(body.get(name), value)
            for name, value in supported
        ):
            results.append(_to_wrapper(row))
    return SearchResult(results=results)


# ---------------------------------------------------------------------------
# Write operations
# ---------------------------------------------------------------------------

def insert_resource(resource: Resource, db_path: Optional[Path] = None) -> UpsertOutcome:
    """
    INSERT version 1 of *resource*.

    Raises:
        ValueError:            if ``resource.id`` is empty.
        ResourceConflictError: if the id is already taken (live or deleted).
        sqlite3.Error:         on I/O failures.
    """
    if not resource.id:
        raise ValueError("insert_resource requires a resource id.")
    with get_connection(db_path, immediate=True) as conn:
        if _current_version(conn, resource.resource_type, resource.id) is not None:
            raise ResourceConflictError(
                f"{resource.resource_type}/{resource.id} already exists.",
                resource_type=resource.resource_type,
                resource_id=resource.id,
            )
        wrapper = _write_version(conn, resource, 1)
    logger.debug("FHIR store: created %s/%s v1.", resource.resource_type, resource.id)
    return UpsertOutcome(wrapper=wrapper, outcome=SaveOutcomeType.CREATED)


def upsert_resource(
    resource: Resource,
    weak_etag: Optional[WeakETag] = None,
    db_path: Optional[Path] = None,
) -> UpsertOutcome:
    """
    Version-checked create-or-replace of ``(resource.resource_type, resource.id)``.

    Args:
        resource:  Resource to store; ``id`` must be set.
        weak_etag: Expected current version, or None for an unconditional write.
        db_path:   Override DB file location (tests only).

    Returns:
        UpsertOutcome: ``Created`` when no live record existed, else ``Updated``.

    Raises:
        ResourceNotFoundError:        *weak_etag* given but no live record exists.
        ResourceVersionConflictError: *weak_etag* differs from the current version.
        sqlite3.Error:                on I/O failures.
    """
    if not resource.id:
        raise ValueError("upsert_resource requires a resource id.")
    rtype, rid = resource.resource_type, resource.id

    with get_connection(db_path, immediate=True) as conn:
        current = _current_version(conn, rtype, rid)
        live = current is not None and not current["is_deleted"]

        if weak_etag is not None:
            if not live:
                raise ResourceNotFoundError(
                    f"{rtype}/{rid} was not found.", resource_type=rtype, resource_id=rid,
                )
            if WeakETag.from_version_id(str(current["version"])) != weak_etag:
                raise ResourceVersionConflictError(
                    f"Version {weak_etag} of {rtype}/{rid} is not the current version "
                    f"(current: {current['version']}).",
                    resource_type=rtype,
                    resource_id=rid,
                )

        next_version = 1 if current is None else current["version"] + 1
        wrapper = _write_version(conn, resource, next_version)

    outcome = SaveOutcomeType.UPDATED if live else SaveOutcomeType.CREATED
    logger.debug(
        "FHIR store: %s %s/%s v%d.", outcome.value.lower(), rtype, rid, next_version,
    )
    return UpsertOutcome(wrapper=wrapper, outcome=outcome)


def delete_resource(
    resource_type: str,
    resource_id: str,
    db_path: Optional[Path] = None,
) -> Optional[str]:
    """
    Soft-delete a resource by writing a deleted version.

    Returns:
        The new version id, or None when there was nothing live to delete.
    """
    with get_connection(db_path, immediate=True) as conn:
        current = _current_version(conn, resource_type, resource_id)
        if current is None or current["is_deleted"]:
            return None
        next_version = current["version"] + 1
        _write_version(
            conn,
            Resource(resource_type=resource_type, id=resource_id),
            next_version,
            is_deleted=True,
        )
    logger.debug("FHIR store: deleted %s/%s v%d.", resource_type, resource_id, next_version)
    return str(next_version)


# ---------------------------------------------------------------------------
# Read operations
# ---------------------------------------------------------------------------

def read_resource(
    resource_type: str,
    resource_id: str,
    db_path: Optional[Path] = None,
) -> Optional[ResourceWrapper]:
    """Return the current version (possibly a deleted marker) or None."""
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT * FROM resources WHERE resource_type = ? AND resource_id = ?",
            (resource_type, resource_id),
        ).fetchone()
    return _to_wrapper(row) if row is not None else None


def get_resource_history(
    resource_type: str,
    resource_id: str,
    db_path: Optional[Path] = None,
) -> List[ResourceWrapper]:
    """Every stored version, newest first."""
    with get_connection(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM resource_history "
            "WHERE resource_type = ? AND resource_id = ? "
            "ORDER BY version DESC",
            (resource_type, resource_id),
        ).fetchall()
    return [_to_wrapper(row) for row in rows]


# ---------------------------------------------------------------------------
# Export jobs
# ---------------------------------------------------------------------------

def insert_export_job(record: ExportJobRecord, db_path: Optional[Path] = None) -> ExportJobOutcome:
    now = _now()
    with get_connection(db_path) as conn:
        conn.execute(
            """
            INSERT INTO export_jobs (id, status, hash, record, version, created_at, updated_at)
            VALUES (?, ?, ?, ?, 1, ?, ?)
            """,
            (record.id, record.status.value, record.hash, record.model_dump_json(), now, now),
        )
    logger.debug("export_jobs: inserted job %s (%s).", record.id, record.status.value)
    return ExportJobOutcome(job_record=record, etag=WeakETag.from_version_id("1"))


def get_export_job(job_id: str, db_path: Optional[Path] = None) -> ExportJobOutcome:
    """
    Raises:
        JobNotFoundError: no job with *job_id*.
    """
    with get_connection(db_path) as conn:
        row = conn.execute(
            "SELECT record, version FROM export_jobs WHERE id = ?", (job_id,)
        ).fetchone()
    if row is None:
        raise JobNotFoundError(f"Export job '{job_id}' was not found.", resource_id=job_id)
    return ExportJobOutcome(
        job_record=ExportJobRecord.model_validate_json(row["record"]),
        etag=WeakETag.from_version_id(str(row["version"])),
    )


def update_export_job(
    record: ExportJobRecord,
    weak_etag: WeakETag,
    db_path: Optional[Path] = None,
) -> ExportJobOutcome:
    """
    Replace a job record if *weak_etag* is still its current version.

    Raises:
        JobNotFoundError:             no job with ``record.id``.
        ResourceVersionConflictError: another writer updated the job first.
    """
    with get_connection(db_path, immediate=True) as conn:
        row = conn.execute(
            "SELECT version FROM export_jobs WHERE id = ?", (record.id,)
        ).fetchone()
        if row is None:
            raise JobNotFoundError(f"Export job '{record.id}' was not found.", resource_id=record.id)
        if WeakETag.from_version_id(str(row["version"])) != weak_etag:
            raise ResourceVersionConflictError(
                f"Export job '{record.id}' was modified by another writer.",
                resource_id=record.id,
            )
        next_version = row["version"] + 1
        conn.execute(
            "UPDATE export_jobs SET status = ?, record = ?, version = ?, updated_at = ? WHERE id = ?",
            (record.status.value, record.model_dump_json(), next_version, _now(), record.id),
        )
    return ExportJobOutcome(job_record=record, etag=WeakETag.from_version_id(str(next_version)))


# ---------------------------------------------------------------------------
# Async gateway
# ---------------------------------------------------------------------------

class SqliteFhirStore:
    """
    SearchGateway + DataStoreGateway + OperationDataStore over one SQLite file.

    Blocking SQLite calls run in a worker thread (``asyncio.to_thread``), so
    the event loop stays free and the awaiting task can be cancelled.
    SQLite locking errors surface as ``ServiceUnavailableError``.
    """

    def __init__(self, db_path: Optional[Path] = None) -> None:
        self.db_path = Path(db_path) if db_path else _DB_PATH
        init_db(self.db_path)

    async def _run(self, func: Callable[..., _T], *args: Any) -> _T:
        try:
            return await asyncio.to_thread(functools.partial(func, *args, db_path=self.db_path))
        except sqlite3.OperationalError as exc:
            raise ServiceUnavailableError(f"FHIR store unavailable: {exc}") from exc

    async def search(self, resource_type: str, conditional_parameters: SearchParams) -> SearchResult:
        return await self._run(search_resources, resource_type, list(conditional_parameters))

    async def create(self, resource: Resource) -> UpsertOutcome:
        return await self._run(insert_resource, resource)

    async def upsert(self, resource: Resource, weak_etag: Optional[WeakETag]) -> UpsertOutcome:
        return await self._run(upsert_resource, resource, weak_etag)

    async def read(self, resource_type: str, resource_id: str) -> Optional[ResourceWrapper]:
        return await self._run(read_resource, resource_type, resource_id)

    async def delete(self, resource_type: str, resource_id: str) -> Optional[str]:
        return await self._run(delete_resource, resource_type, resource_id)

    async def history(self, resource_type: str, resource_id: str) -> List[ResourceWrapper]:
        return await self._run(get_resource_history, resource_type, resource_id)

    async def create_export_job(self, record: ExportJobRecord) -> ExportJobOutcome:
        return await self._run(insert_export_job, record)

    async def get_export_job_by_id(self, job_id: str) -> ExportJobOutcome:
        return await self._run(get_export_job, job_id)

    async def update_export_job(self, record: ExportJobRecord, weak_etag: WeakETag) -> ExportJobOutcome:
        return await self._run(update_export_job, record, weak_etag)
