"""
Unit tests for restore backends.
"""

import json
import sys

import pytest

from phasedrollout.exceptions import RestoreError
from phasedrollout.rollback import (
    BackupFormat,
    BackupReference,
    BulkImportRestoreBackend,
    DocumentRestoreBackend,
    select_restore_backend,
)
from phasedrollout.stores import InMemoryDocumentStore

ORIGINALS = {
    "users": {f"user-{i}": {"name": f"User {i}", "schemaVersion": "1.0.0"} for i in range(5)},
    "orders": {"order-1": {"total": 12}},
}


class TestBackupReference:
    def test_format_inferred_from_location(self):
        assert BackupReference("gs://bucket/export").resolved_format == BackupFormat.BULK_EXPORT
        assert BackupReference("/tmp/backup.json").resolved_format == BackupFormat.DOCUMENT_JSON

    def test_explicit_format_wins(self):
        ref = BackupReference("gs://bucket/dump.json", BackupFormat.DOCUMENT_JSON)
        assert ref.resolved_format == BackupFormat.DOCUMENT_JSON


class TestDocumentRestoreBackend:
    """Tests for DocumentRestoreBackend."""

    @pytest.mark.asyncio
    async def test_restores_in_memory_snapshot(self, tracer):
        store = InMemoryDocumentStore(enable_tracing=False)
        backend = DocumentRestoreBackend(store, batch_size=2, tracer=tracer)

        result = await backend.restore(BackupReference("memory://x", documents=ORIGINALS))

        assert result.documents_restored == 6
        assert result.collections == ("users", "orders")
        assert result.backend == "document_restore"
        assert store.dump() == ORIGINALS
        assert store.operations == 4  # three users batches, one orders batch
        assert "phasedrollout.restore.documents" in tracer.span_names

    @pytest.mark.asyncio
    async def test_restores_file(self, tmp_path):
        path = tmp_path / "backup.json"
        path.write_text(json.dumps(ORIGINALS))
        store = InMemoryDocumentStore(enable_tracing=False)

        result = await DocumentRestoreBackend(store, enable_tracing=False).restore(
            BackupReference(str(path))
        )

        assert result.documents_restored == 6
        assert (await store.get("orders", "order-1")).data == {"total": 12}

    @pytest.mark.asyncio
    async def test_missing_file_raises(self, tmp_path):
        backend = DocumentRestoreBackend(InMemoryDocumentStore(enable_tracing=False), enable_tracing=False)

        with pytest.raises(RestoreError) as exc_info:
            await backend.restore(BackupReference(str(tmp_path / "missing.json")))

        assert exc_info.value.error_code == "RESTORE_FAILED"

    @pytest.mark.asyncio
    async def test_non_object_backup_raises(self, tmp_path):
        path = tmp_path / "backup.json"
        path.write_text("[1, 2, 3]")
        backend = DocumentRestoreBackend(InMemoryDocumentStore(enable_tracing=False), enable_tracing=False)

        with pytest.raises(RestoreError, match="not a"):
            await backend.restore(BackupReference(str(path)))

    def test_rejects_bad_batch_size(self):
        with pytest.raises(ValueError):
            DocumentRestoreBackend(InMemoryDocumentStore(enable_tracing=False), batch_size=0)


class TestBulkImportRestoreBackend:
    """Tests for BulkImportRestoreBackend."""

    @pytest.mark.asyncio
    async def test_successful_command(self):
        backend = BulkImportRestoreBackend(
            (sys.executable, "-c", "import sys; sys.exit(0)", "{location}"), enable_tracing=False
        )

        result = await backend.restore(BackupReference("gs://bucket/export"))

        assert result.backend == "bulk_import"

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises(self):
        backend = BulkImportRestoreBackend(
            (sys.executable, "-c", "import sys; sys.stderr.write('denied'); sys.exit(3)"),
            enable_tracing=False,
        )

        with pytest.raises(RestoreError, match="exit code 3: denied"):
            await backend.restore(BackupReference("gs://bucket/export"))

    @pytest.mark.asyncio
    async def test_missing_executable_raises(self):
        backend = BulkImportRestoreBackend(
            ("/nonexistent/importer", "{location}"), enable_tracing=False
        )

        with pytest.raises(RestoreError):
            await backend.restore(BackupReference("gs://bucket/export"))


class TestSelectRestoreBackend:
    def test_picks_by_format(self):
        store = InMemoryDocumentStore(enable_tracing=False)
        bulk = BulkImportRestoreBackend(enable_tracing=False)
        documents = DocumentRestoreBackend(store, enable_tracing=False)

        assert select_restore_backend(BackupReference("gs://b/e"), [documents, bulk]) is bulk
        assert select_restore_backend(BackupReference("/b.json"), [bulk, documents]) is documents

    def test_no_backend_raises(self):
        with pytest.raises(RestoreError, match="no restore backend"):
            select_restore_backend(BackupReference("gs://b/e"), [])
