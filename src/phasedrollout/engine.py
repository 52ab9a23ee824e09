"""
Migration engine - performs the document work of each phase.

The orchestrator only needs ``run_phase``, ``stop`` and ``backup``;
DocumentMigrationEngine is the default implementation working against a
DocumentStore.

Responsibilities:
    - Process each phase's slice of documents in batches
    - Stamp ``schemaVersion`` on every migrated document
    - Record the original of every changed document so the Data Reversion
      rollback step can put it back
    - Keep originals already in an existing backup file, so a resumed run
      extends the backup instead of replacing it
    - Report per-batch latency and failures to the metrics recorder

Phases are cumulative: ``target_documents`` of phase N is the total number
of documents migrated once phase N has finished, so each phase continues
from where the previous one stopped.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import tempfile
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from phasedrollout.exceptions import PhaseExecutionFailure
from phasedrollout.health import ProcessMetricsProvider
from phasedrollout.observability import (
    ATTR_DOCUMENT_COUNT,
    ATTR_DRY_RUN,
    ATTR_PHASE_NUMBER,
    Tracer,
    create_tracer,
)
from phasedrollout.plan import MigrationPlan
from phasedrollout.rollback.backends import BackupFormat, BackupReference
from phasedrollout.status import Phase
from phasedrollout.stores import Document, DocumentStore

logger = logging.getLogger(__name__)

SCHEMA_VERSION_FIELD = "schemaVersion"

Transform = Callable[[dict[str, Any]], dict[str, Any]]


@dataclass(frozen=True)
class PhaseWorkResult:
    """
    Outcome of one phase of migration work.

    Attributes:
        processed: Documents migrated (or counted, in a dry run)
        failed: Documents whose transform raised
        skipped: Documents already at the target version
        elapsed_seconds: Wall time spent
        errors: First few failure messages
        complete: False if the work stopped before reaching its target
    """

    processed: int = 0
    failed: int = 0
    skipped: int = 0
    elapsed_seconds: float = 0.0
    errors: tuple[str, ...] = field(default_factory=tuple)
    complete: bool = True

    @property
    def success(self) -> bool:
        return self.failed == 0 and self.complete


@runtime_checkable
class MigrationEngine(Protocol):
    """Protocol for the component that does the actual migration work."""

    async def check_compatibility(self, plan: MigrationPlan) -> list[str]:
        """Return problems that would prevent the migration (empty when ready)."""
        ...

    async def run_phase(self, phase: Phase, plan: MigrationPlan) -> PhaseWorkResult:
        """
        Migrate the phase's slice of documents.

        Raises:
            PhaseExecutionFailure: If the work cannot continue
        """
        ...

    async def stop(self) -> None:
        """Stop in-flight work after the current batch."""
        ...

    def backup(self) -> BackupReference | None:
        """Backup of everything changed so far, or None if nothing changed."""
        ...


class DocumentMigrationEngine:
    """
    Applies a transform to documents collection by collection.

    Example:
        >>> engine = DocumentMigrationEngine(
        ...     store,
        ...     ["users", "trades"],
        ...     transform=lambda doc: {**doc, "displayName": doc.get("name", "")},
        ...     backup_path=Path("/var/backups/mig-42.json"),
        ... )
        >>> result = await engine.run_phase(phase, plan)
        >>> result.processed
        1000
    """

    _MAX_ERRORS = 10

    def __init__(
        self,
        store: DocumentStore,
        collections: Sequence[str],
        *,
        transform: Transform | None = None,
        batch_size: int = 100,
        dry_run: bool = False,
        recorder: ProcessMetricsProvider | None = None,
        backup_path: Path | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the engine.

        Args:
            store: Store holding the documents
            collections: Collections to migrate, in order
            transform: Document transform (identity if None)
            batch_size: Documents per write batch
            dry_run: Count documents without writing
            recorder: Receives batch latencies and outcomes
            backup_path: JSON file for originals (kept in memory if None).
                Originals already in the file are kept, so a resumed run
                never loses the backup of earlier phases.
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._store = store
        self._collections = list(collections)
        self._transform = transform or (lambda data: data)
        self._batch_size = batch_size
        self._dry_run = dry_run
        self._recorder = recorder
        self._backup_path = backup_path

        # Resume state across phases
        self._collection_index = 0
        self._cursor: str | None = None
        self._total_processed = 0
        self._originals: dict[str, dict[str, dict[str, Any]]] = {}
        if backup_path is not None and not dry_run:
            self._originals = self._load_backup(backup_path)
        self._is_cancelled = False

    @property
    def total_processed(self) -> int:
        return self._total_processed

    @property
    def is_cancelled(self) -> bool:
        return self._is_cancelled

    async def check_compatibility(self, plan: MigrationPlan) -> list[str]:
        problems: list[str] = []
        if not self._collections:
            problems.append("no collections configured")
        existing = set(await self._store.collections())
        for name in self._collections:
            if name not in existing:
                problems.append(f"collection '{name}' does not exist")
        if self._backup_path is not None and not self._backup_path.parent.exists():
            problems.append(f"backup directory {self._backup_path.parent} does not exist")
        return problems

    async def stop(self) -> None:
        self._is_cancelled = True
        logger.info("Migration work stop requested")

    @staticmethod
    def _load_backup(path: Path) -> dict[str, dict[str, dict[str, Any]]]:
        try:
            with path.open() as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except ValueError as e:
            raise ValueError(f"Backup file {path} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Backup file {path} must hold a JSON object")
        logger.info(
            "Loaded %d original documents from existing backup %s",
            sum(len(docs) for docs in data.values()),
            path,
        )
        return data

    def backup(self) -> BackupReference | None:
        if self._backup_path is not None and (self._originals or self._backup_path.exists()):
            return BackupReference(str(self._backup_path), BackupFormat.DOCUMENT_JSON)
        if not self._originals:
            return None
        return BackupReference(
            "memory://originals",
            BackupFormat.DOCUMENT_JSON,
            documents=copy.deepcopy(self._originals),
        )

    async def run_phase(self, phase: Phase, plan: MigrationPlan) -> PhaseWorkResult:
        with self._tracer.span(
            "phasedrollout.engine.run_phase",
            {ATTR_PHASE_NUMBER: phase.number, ATTR_DRY_RUN: self._dry_run},
        ) as span:
            self._is_cancelled = False
            start = time.monotonic()
            processed = failed = skipped = 0
            errors: list[str] = []
            logger.info(
                "Phase %d work: %d -> %d documents%s",
                phase.number,
                self._total_processed,
                phase.target_documents,
                " (dry run)" if self._dry_run else "",
            )

            while self._total_processed < phase.target_documents and not self._is_cancelled:
                if self._collection_index >= len(self._collections):
                    logger.info("All collections exhausted after %d documents", self._total_processed)
                    break
                collection = self._collections[self._collection_index]
                limit = min(self._batch_size, phase.target_documents - self._total_processed)
                try:
                    docs = await self._store.scan(collection, limit=limit, start_after=self._cursor)
                except Exception as e:
                    raise PhaseExecutionFailure(
                        f"Scan of {collection} failed: {e}",
                        migration_id=plan.migration_id,
                        phase_number=phase.number,
                    ) from e
                if not docs:
                    self._collection_index += 1
                    self._cursor = None
                    continue

                batch, batch_failed, batch_skipped = self._prepare(docs, plan.version, errors)
                await self._write(collection, batch, docs, plan, phase)
                processed += len(batch)
                failed += batch_failed
                skipped += batch_skipped
                self._total_processed += len(docs)
                self._cursor = docs[-1].id

            elapsed = time.monotonic() - start
            complete = self._total_processed >= phase.target_documents or (
                self._collection_index >= len(self._collections)
            )
            if span is not None:
                span.set_attribute(ATTR_DOCUMENT_COUNT, processed)
            logger.info(
                "Phase %d work finished: %d processed, %d failed, %d skipped in %.1fs",
                phase.number,
                processed,
                failed,
                skipped,
                elapsed,
            )
            return PhaseWorkResult(
                processed=processed,
                failed=failed,
                skipped=skipped,
                elapsed_seconds=elapsed,
                errors=tuple(errors),
                complete=complete,
            )

    def _prepare(
        self,
        docs: list[Document],
        version: str,
        errors: list[str],
    ) -> tuple[dict[str, dict[str, Any]], int, int]:
        batch: dict[str, dict[str, Any]] = {}
        failed = skipped = 0
        for doc in docs:
            if doc.data.get(SCHEMA_VERSION_FIELD) == version:
                skipped += 1
                continue
            try:
                migrated = dict(self._transform(copy.deepcopy(doc.data)))
            except Exception as e:
                failed += 1
                if len(errors) < self._MAX_ERRORS:
                    errors.append(f"{doc.id}: {e}")
                logger.warning("Transform failed for document %s: %s", doc.id, e)
                continue
            migrated[SCHEMA_VERSION_FIELD] = version
            batch[doc.id] = migrated
        return batch, failed, skipped

    async def _write(
        self,
        collection: str,
        batch: dict[str, dict[str, Any]],
        docs: list[Document],
        plan: MigrationPlan,
        phase: Phase,
    ) -> None:
        if not batch:
            return
        if self._dry_run:
            return
        originals = self._originals.setdefault(collection, {})
        for doc in docs:
            if doc.id in batch:
                originals.setdefault(doc.id, doc.data)
        if self._backup_path is not None:
            await asyncio.to_thread(self._write_backup, self._backup_path)

        if self._recorder is not None:
            self._recorder.request_started()
        started = time.perf_counter()
        success = False
        try:
            await self._store.write_batch(collection, batch)
            success = True
        except Exception as e:
            raise PhaseExecutionFailure(
                f"Write to {collection} failed: {e}",
                migration_id=plan.migration_id,
                phase_number=phase.number,
            ) from e
        finally:
            if self._recorder is not None:
                self._recorder.request_finished()
                self._recorder.record_request((time.perf_counter() - started) * 1000, success)

    def _write_backup(self, path: Path) -> None:
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(self._originals, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise


__all__ = [
    "SCHEMA_VERSION_FIELD",
    "Transform",
    "PhaseWorkResult",
    "MigrationEngine",
    "DocumentMigrationEngine",
]
