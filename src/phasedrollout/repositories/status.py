"""
StatusStore - persistence of the rollout status record.

The orchestrator saves the PhasedMigrationStatus after every state
transition. A save must be atomic: readers see either the previous record
or the new one, never a partial write.

Implementations:
    - InMemoryStatusStore: For tests and dry runs
    - FileStatusStore: ``phased-migration-<id>.json`` files, written via a
      temporary file and ``os.replace``
    - SQLAlchemyStatusStore: One JSON row per rollout, upserted in a
      transaction (PostgreSQL or SQLite)

Usage:
    >>> store = FileStatusStore(Path("./status"))
    >>> await store.save_atomic(status)
    >>> loaded = await store.load(status.migration_id)
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from phasedrollout.exceptions import StatusStoreError
from phasedrollout.observability import (
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_MIGRATION_ID,
    Tracer,
    create_tracer,
)
from phasedrollout.repositories._connection import execute_with_connection
from phasedrollout.status import PhasedMigrationStatus

logger = logging.getLogger(__name__)


def _decode(raw: str, migration_id: str, source: str) -> PhasedMigrationStatus:
    try:
        return PhasedMigrationStatus.from_dict(json.loads(raw))
    except (ValueError, KeyError, TypeError) as e:
        raise StatusStoreError(
            f"Corrupt status record {source}: {type(e).__name__}: {e}",
            migration_id=migration_id,
        ) from e


@runtime_checkable
class StatusStore(Protocol):
    """Protocol for status record persistence."""

    async def load(self, migration_id: str) -> PhasedMigrationStatus | None:
        """
        Load the latest status record of a rollout.

        Args:
            migration_id: Rollout id

        Returns:
            The status record, or None if none was saved
        """
        ...

    async def save_atomic(self, status: PhasedMigrationStatus) -> None:
        """
        Persist the status record atomically.

        Raises:
            StatusStoreError: If the record could not be written
        """
        ...


class InMemoryStatusStore:
    """
    In-memory status store.

    Keeps a serialized copy of every save so tests can inspect the
    sequence of persisted states.

    Attributes:
        history: Every saved record as a dict, in save order
    """

    def __init__(self) -> None:
        self._records: dict[str, str] = {}
        self.history: list[dict] = []

    async def load(self, migration_id: str) -> PhasedMigrationStatus | None:
        raw = self._records.get(migration_id)
        if raw is None:
            return None
        return PhasedMigrationStatus.from_dict(json.loads(raw))

    async def save_atomic(self, status: PhasedMigrationStatus) -> None:
        data = status.to_dict()
        self._records[status.migration_id] = json.dumps(data)
        self.history.append(data)


class FileStatusStore:
    """
    File-backed status store.

    Each rollout is stored as ``phased-migration-<id>.json`` in ``directory``.
    Writes go to a temporary file in the same directory which is fsynced and
    then renamed over the target.
    """

    def __init__(
        self,
        directory: Path | str,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._directory = Path(directory)

    def path_for(self, migration_id: str) -> Path:
        return self._directory / f"phased-migration-{migration_id}.json"

    async def load(self, migration_id: str) -> PhasedMigrationStatus | None:
        with self._tracer.span(
            "phasedrollout.status_store.load",
            {ATTR_MIGRATION_ID: migration_id, ATTR_DB_SYSTEM: "file"},
        ):
            path = self.path_for(migration_id)
            try:
                raw = await asyncio.to_thread(path.read_text)
            except FileNotFoundError:
                return None
            except OSError as e:
                raise StatusStoreError(
                    f"Cannot read status record {path}: {e}", migration_id=migration_id
                ) from e
            return _decode(raw, migration_id, str(path))

    async def save_atomic(self, status: PhasedMigrationStatus) -> None:
        with self._tracer.span(
            "phasedrollout.status_store.save",
            {ATTR_MIGRATION_ID: status.migration_id, ATTR_DB_SYSTEM: "file"},
        ):
            payload = json.dumps(status.to_dict(), indent=2)
            try:
                await asyncio.to_thread(self._write, self.path_for(status.migration_id), payload)
            except OSError as e:
                raise StatusStoreError(
                    f"Cannot write status record: {e}", migration_id=status.migration_id
                ) from e

    def _write(self, path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


class SQLAlchemyStatusStore:
    """
    Database-backed status store.

    Uses the ``phased_rollout_status`` table (see ``create_schema``) with one
    row per rollout. Saves are upserts executed in a transaction, so the row
    is replaced atomically.

    Example:
        >>> engine = create_async_engine("postgresql+asyncpg://...")
        >>> store = SQLAlchemyStatusStore(engine)
        >>> await store.create_schema()
        >>> await store.save_atomic(status)
    """

    def __init__(
        self,
        conn: AsyncConnection | AsyncEngine,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._conn = conn

    async def create_schema(self) -> None:
        """Create the status table if it does not exist."""
        query = text("""
            CREATE TABLE IF NOT EXISTS phased_rollout_status (
                migration_id VARCHAR(255) PRIMARY KEY,
                status VARCHAR(32) NOT NULL,
                document TEXT NOT NULL,
                updated_at VARCHAR(64) NOT NULL
            )
        """)
        async with execute_with_connection(self._conn, transactional=True) as conn:
            await conn.execute(query)

    async def load(self, migration_id: str) -> PhasedMigrationStatus | None:
        with self._tracer.span(
            "phasedrollout.status_store.load",
            {ATTR_MIGRATION_ID: migration_id, ATTR_DB_OPERATION: "select"},
        ):
            query = text("""
                SELECT document
                FROM phased_rollout_status
                WHERE migration_id = :migration_id
            """)
            try:
                async with execute_with_connection(self._conn, transactional=False) as conn:
                    result = await conn.execute(query, {"migration_id": migration_id})
                    row = result.fetchone()
            except SQLAlchemyError as e:
                raise StatusStoreError(
                    f"Cannot load status record: {e}", migration_id=migration_id
                ) from e

            if row is None:
                return None
            return _decode(row[0], migration_id, "phased_rollout_status")

    async def save_atomic(self, status: PhasedMigrationStatus) -> None:
        with self._tracer.span(
            "phasedrollout.status_store.save",
            {ATTR_MIGRATION_ID: status.migration_id, ATTR_DB_OPERATION: "upsert"},
        ):
            query = text("""
                INSERT INTO phased_rollout_status (migration_id, status, document, updated_at)
                VALUES (:migration_id, :status, :document, :updated_at)
                ON CONFLICT (migration_id) DO UPDATE SET
                    status = excluded.status,
                    document = excluded.document,
                    updated_at = excluded.updated_at
            """)
            params = {
                "migration_id": status.migration_id,
                "status": status.status.value,
                "document": json.dumps(status.to_dict()),
                "updated_at": datetime.now(UTC).isoformat(),
            }
            try:
                async with execute_with_connection(self._conn, transactional=True) as conn:
                    await conn.execute(query, params)
            except SQLAlchemyError as e:
                raise StatusStoreError(
                    f"Cannot save status record: {e}", migration_id=status.migration_id
                ) from e
            logger.debug(
                "Saved status for %s (%s)", status.migration_id, status.status.value
            )


__all__ = [
    "StatusStore",
    "InMemoryStatusStore",
    "FileStatusStore",
    "SQLAlchemyStatusStore",
]
