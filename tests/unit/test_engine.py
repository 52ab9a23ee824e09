"""
Unit tests for DocumentMigrationEngine.
"""

import json

import pytest

from phasedrollout.engine import SCHEMA_VERSION_FIELD, DocumentMigrationEngine, MigrationEngine
from phasedrollout.exceptions import PhaseExecutionFailure
from phasedrollout.health import ProcessMetricsProvider
from phasedrollout.rollback import BackupFormat
from phasedrollout.status import PhasedMigrationStatus
from phasedrollout.stores import InMemoryDocumentStore


def _versions(store: InMemoryDocumentStore) -> dict[str, str]:
    return {doc_id: doc[SCHEMA_VERSION_FIELD] for doc_id, doc in store.dump()["users"].items()}


class FailingStore(InMemoryDocumentStore):
    async def write_batch(self, collection, documents):
        raise ConnectionError("store unavailable")


class TestDocumentMigrationEngine:
    """Tests for phase work."""

    def test_satisfies_protocol(self, seeded_store):
        assert isinstance(DocumentMigrationEngine(seeded_store, ["users"]), MigrationEngine)

    @pytest.mark.asyncio
    async def test_phases_are_cumulative(self, plan, seeded_store, tracer):
        """Test each phase continues where the previous one stopped."""
        engine = DocumentMigrationEngine(seeded_store, ["users"], batch_size=4, tracer=tracer)
        status = PhasedMigrationStatus.for_plan(plan)

        first = await engine.run_phase(status.phase(1), plan)
        second = await engine.run_phase(status.phase(2), plan)

        assert first.processed == 10
        assert second.processed == 10
        assert engine.total_processed == 20
        versions = _versions(seeded_store)
        assert sum(1 for v in versions.values() if v == "2.0.0") == 20
        assert versions["user-019"] == "2.0.0"
        assert versions["user-020"] == "1.0.0"
        assert tracer.span_names.count("phasedrollout.engine.run_phase") == 2

    @pytest.mark.asyncio
    async def test_transform_applied(self, plan, seeded_store):
        engine = DocumentMigrationEngine(
            seeded_store,
            ["users"],
            transform=lambda doc: {**doc, "displayName": doc["name"].upper()},
            enable_tracing=False,
        )

        await engine.run_phase(PhasedMigrationStatus.for_plan(plan).phase(1), plan)

        doc = await seeded_store.get("users", "user-000")
        assert doc.data == {"name": "User 0", "displayName": "USER 0", "schemaVersion": "2.0.0"}

    @pytest.mark.asyncio
    async def test_already_migrated_documents_skipped(self, plan):
        store = InMemoryDocumentStore(
            {"users": {"a": {"schemaVersion": "2.0.0"}, "b": {"schemaVersion": "1.0.0"}}},
            enable_tracing=False,
        )
        engine = DocumentMigrationEngine(store, ["users"], enable_tracing=False)

        result = await engine.run_phase(PhasedMigrationStatus.for_plan(plan).phase(1), plan)

        assert result.processed == 1
        assert result.skipped == 1
        assert result.complete is True
        assert engine.backup().documents == {"users": {"b": {"schemaVersion": "1.0.0"}}}

    @pytest.mark.asyncio
    async def test_transform_failures_counted(self, plan, seeded_store):
        def transform(doc):
            if doc["name"].endswith("3"):
                raise ValueError("bad name")
            return doc

        engine = DocumentMigrationEngine(seeded_store, ["users"], transform=transform, enable_tracing=False)

        result = await engine.run_phase(PhasedMigrationStatus.for_plan(plan).phase(1), plan)

        assert result.failed == 1
        assert result.processed == 9
        assert result.success is False
        assert result.errors == ("user-003: bad name",)

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, plan, seeded_store):
        before = seeded_store.dump()
        engine = DocumentMigrationEngine(seeded_store, ["users"], dry_run=True, enable_tracing=False)

        result = await engine.run_phase(PhasedMigrationStatus.for_plan(plan).phase(1), plan)

        assert result.processed == 10
        assert seeded_store.dump() == before
        assert engine.backup() is None

    @pytest.mark.asyncio
    async def test_collections_exhausted(self, plan):
        store = InMemoryDocumentStore({"users": {"a": {}, "b": {}}}, enable_tracing=False)
        engine = DocumentMigrationEngine(store, ["users"], enable_tracing=False)

        result = await engine.run_phase(PhasedMigrationStatus.for_plan(plan).phase(1), plan)

        assert result.processed == 2
        assert result.complete is True

    @pytest.mark.asyncio
    async def test_run_phase_clears_stop_request(self, plan, seeded_store):
        engine = DocumentMigrationEngine(seeded_store, ["users"], batch_size=1, enable_tracing=False)
        await engine.stop()
        assert engine.is_cancelled

        result = await engine.run_phase(PhasedMigrationStatus.for_plan(plan).phase(1), plan)
        assert result.processed == 10

    @pytest.mark.asyncio
    async def test_write_failure_raises(self, plan):
        store = FailingStore({"users": {"a": {}}}, enable_tracing=False)
        recorder = ProcessMetricsProvider()
        engine = DocumentMigrationEngine(store, ["users"], recorder=recorder, enable_tracing=False)

        with pytest.raises(PhaseExecutionFailure, match="store unavailable") as exc_info:
            await engine.run_phase(PhasedMigrationStatus.for_plan(plan).phase(1), plan)

        assert exc_info.value.phase_number == 1
        metrics = await recorder.application_metrics()
        assert metrics.error_rate == 1.0

    @pytest.mark.asyncio
    async def test_backup_file(self, plan, seeded_store, tmp_path):
        """Test originals are written to the backup file before each batch."""
        path = tmp_path / "originals.json"
        engine = DocumentMigrationEngine(
            seeded_store, ["users"], backup_path=path, enable_tracing=False
        )

        await engine.run_phase(PhasedMigrationStatus.for_plan(plan).phase(1), plan)

        backup = engine.backup()
        assert backup.location == str(path)
        assert backup.format == BackupFormat.DOCUMENT_JSON
        saved = json.loads(path.read_text())
        assert len(saved["users"]) == 10
        assert saved["users"]["user-000"]["schemaVersion"] == "1.0.0"

    @pytest.mark.asyncio
    async def test_backup_survives_engine_restart(self, plan, seeded_store, tmp_path):
        """Test a restarted engine extends the backup file written before the restart."""
        path = tmp_path / "originals.json"
        status = PhasedMigrationStatus.for_plan(plan)
        first = DocumentMigrationEngine(
            seeded_store, ["users"], backup_path=path, enable_tracing=False
        )
        await first.run_phase(status.phase(1), plan)

        second = DocumentMigrationEngine(
            seeded_store, ["users"], backup_path=path, enable_tracing=False
        )
        assert second.backup().location == str(path)
        await second.run_phase(status.phase(2), plan)

        saved = json.loads(path.read_text())
        assert sorted(saved["users"]) == [f"user-{i:03d}" for i in range(20)]
        assert all(doc["schemaVersion"] == "1.0.0" for doc in saved["users"].values())

    def test_existing_backup_file_reported_before_any_work(self, seeded_store, tmp_path):
        path = tmp_path / "originals.json"
        path.write_text(json.dumps({"users": {"user-000": {"schemaVersion": "1.0.0"}}}))

        engine = DocumentMigrationEngine(
            seeded_store, ["users"], backup_path=path, enable_tracing=False
        )

        assert engine.backup().location == str(path)

    def test_corrupt_backup_file_rejected(self, seeded_store, tmp_path):
        path = tmp_path / "originals.json"
        path.write_text("{not json")

        with pytest.raises(ValueError, match="not valid JSON"):
            DocumentMigrationEngine(seeded_store, ["users"], backup_path=path)


class TestCheckCompatibility:
    @pytest.mark.asyncio
    async def test_ready(self, plan, seeded_store):
        engine = DocumentMigrationEngine(seeded_store, ["users"], enable_tracing=False)
        assert await engine.check_compatibility(plan) == []

    @pytest.mark.asyncio
    async def test_problems_reported(self, plan, seeded_store, tmp_path):
        engine = DocumentMigrationEngine(
            seeded_store,
            ["users", "ghosts"],
            backup_path=tmp_path / "missing" / "backup.json",
            enable_tracing=False,
        )

        problems = await engine.check_compatibility(plan)

        assert "collection 'ghosts' does not exist" in problems
        assert any("backup directory" in p for p in problems)
