"""
Restore backends used by the Data Reversion rollback step.

Two ways to put data back:

    - BulkImportRestoreBackend: runs an external import command against a
      managed export (``gs://`` locations), e.g. ``gcloud firestore import``.
    - DocumentRestoreBackend: rewrites documents one batch at a time from a
      JSON snapshot ``{collection: {doc_id: data}}``, either in memory or
      on disk.

``select_restore_backend`` picks the backend that supports a backup's
format.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from phasedrollout.exceptions import RestoreError
from phasedrollout.observability import (
    ATTR_DOCUMENT_COUNT,
    Tracer,
    create_tracer,
)
from phasedrollout.stores import DocumentStore

logger = logging.getLogger(__name__)


class BackupFormat(Enum):
    BULK_EXPORT = "bulk_export"
    """Managed export restored with an import command."""

    DOCUMENT_JSON = "document_json"
    """``{collection: {doc_id: data}}`` snapshot restored document by document."""


@dataclass(frozen=True)
class BackupReference:
    """
    Where a pre-migration backup lives.

    Attributes:
        location: ``gs://`` URI, file path, or ``memory://`` id
        format: Explicit format; inferred from the location when None
        documents: In-memory snapshot payload (``memory://`` backups)
    """

    location: str
    format: BackupFormat | None = None
    documents: Mapping[str, Mapping[str, dict[str, Any]]] | None = field(
        default=None, compare=False
    )

    @property
    def resolved_format(self) -> BackupFormat:
        if self.format is not None:
            return self.format
        if self.location.startswith("gs://"):
            return BackupFormat.BULK_EXPORT
        return BackupFormat.DOCUMENT_JSON


@dataclass(frozen=True)
class RestoreResult:
    documents_restored: int = 0
    collections: tuple[str, ...] = ()
    backend: str = ""


@runtime_checkable
class RestoreBackend(Protocol):
    """Protocol for restore implementations."""

    name: str

    def supports(self, backup: BackupReference) -> bool: ...

    async def restore(self, backup: BackupReference) -> RestoreResult:
        """
        Restore a backup.

        Raises:
            RestoreError: If the restore failed
        """
        ...


class BulkImportRestoreBackend:
    """
    Restores managed exports by running an import command.

    The command is an argument list; ``{location}`` is substituted with the
    backup location. The default is ``gcloud firestore import <location>``.

    Example:
        >>> backend = BulkImportRestoreBackend(project="prod-project")
        >>> await backend.restore(BackupReference("gs://backups/2024-01-01"))
    """

    name = "bulk_import"

    def __init__(
        self,
        command: Sequence[str] = ("gcloud", "firestore", "import", "{location}"),
        *,
        project: str | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._command = list(command)
        if project:
            self._command.append(f"--project={project}")

    def supports(self, backup: BackupReference) -> bool:
        return backup.resolved_format == BackupFormat.BULK_EXPORT

    async def restore(self, backup: BackupReference) -> RestoreResult:
        argv = [part.format(location=backup.location) for part in self._command]
        with self._tracer.span("phasedrollout.restore.bulk_import", {"backup.location": backup.location}):
            logger.warning("Running bulk import restore: %s", " ".join(argv))
            try:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as e:
                raise RestoreError(backup.location, str(e)) from e
            _, stderr = await process.communicate()
            if process.returncode != 0:
                raise RestoreError(
                    backup.location,
                    f"exit code {process.returncode}: {stderr.decode(errors='replace').strip()}",
                )
            return RestoreResult(backend=self.name)


class DocumentRestoreBackend:
    """
    Restores a JSON document snapshot through the document store.

    Example:
        >>> backend = DocumentRestoreBackend(store, batch_size=200)
        >>> result = await backend.restore(BackupReference("/backups/pre-mig-42.json"))
        >>> result.documents_restored
        1000
    """

    name = "document_restore"

    def __init__(
        self,
        store: DocumentStore,
        *,
        batch_size: int = 500,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._store = store
        self._batch_size = batch_size

    def supports(self, backup: BackupReference) -> bool:
        return backup.resolved_format == BackupFormat.DOCUMENT_JSON

    async def _load(self, backup: BackupReference) -> Mapping[str, Mapping[str, dict[str, Any]]]:
        if backup.documents is not None:
            return backup.documents
        try:
            raw = await asyncio.to_thread(Path(backup.location).read_text)
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError) as e:
            raise RestoreError(backup.location, str(e)) from e
        if not isinstance(data, dict):
            raise RestoreError(backup.location, "backup is not a {collection: documents} object")
        return data

    async def restore(self, backup: BackupReference) -> RestoreResult:
        with self._tracer.span("phasedrollout.restore.documents") as span:
            snapshot = await self._load(backup)
            restored = 0
            for collection, documents in snapshot.items():
                items = list(documents.items())
                for start in range(0, len(items), self._batch_size):
                    batch = dict(items[start : start + self._batch_size])
                    try:
                        restored += await self._store.write_batch(collection, batch)
                    except Exception as e:
                        raise RestoreError(
                            backup.location, f"write to {collection} failed: {e}"
                        ) from e
            if span is not None:
                span.set_attribute(ATTR_DOCUMENT_COUNT, restored)
            logger.info(
                "Restored %d documents across %d collections from %s",
                restored,
                len(snapshot),
                backup.location,
            )
            return RestoreResult(
                documents_restored=restored,
                collections=tuple(snapshot),
                backend=self.name,
            )


def select_restore_backend(
    backup: BackupReference,
    backends: Sequence[RestoreBackend],
) -> RestoreBackend:
    """
    Pick the first backend that supports the backup's format.

    Raises:
        RestoreError: If no backend supports it
    """
    for backend in backends:
        if backend.supports(backup):
            return backend
    raise RestoreError(backup.location, f"no restore backend for {backup.resolved_format.value}")


__all__ = [
    "BackupFormat",
    "BackupReference",
    "RestoreResult",
    "RestoreBackend",
    "BulkImportRestoreBackend",
    "DocumentRestoreBackend",
    "select_restore_backend",
]
