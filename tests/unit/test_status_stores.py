"""
Unit tests for status record persistence.
"""

import json

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine

from phasedrollout.exceptions import StatusStoreError
from phasedrollout.models import MigrationState
from phasedrollout.repositories import (
    FileStatusStore,
    InMemoryStatusStore,
    SQLAlchemyStatusStore,
    StatusStore,
)
from phasedrollout.status import PhasedMigrationStatus


@pytest.fixture
def status(plan) -> PhasedMigrationStatus:
    return PhasedMigrationStatus.for_plan(plan)


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'status.db'}")
    yield engine
    await engine.dispose()


class TestInMemoryStatusStore:
    """Tests for InMemoryStatusStore."""

    @pytest.mark.asyncio
    async def test_load_missing(self):
        assert await InMemoryStatusStore().load("nope") is None

    @pytest.mark.asyncio
    async def test_save_and_load(self, status):
        store = InMemoryStatusStore()
        await store.save_atomic(status)
        status.status = MigrationState.RUNNING
        await store.save_atomic(status)

        loaded = await store.load(status.migration_id)

        assert loaded.status == MigrationState.RUNNING
        assert [h["status"] for h in store.history] == ["pending", "running"]

    @pytest.mark.asyncio
    async def test_saved_copy_is_detached(self, status):
        store = InMemoryStatusStore()
        await store.save_atomic(status)
        status.status = MigrationState.FAILED

        assert (await store.load(status.migration_id)).status == MigrationState.PENDING

    def test_satisfies_protocol(self):
        assert isinstance(InMemoryStatusStore(), StatusStore)


class TestFileStatusStore:
    """Tests for FileStatusStore."""

    @pytest.mark.asyncio
    async def test_save_and_load(self, status, tmp_path, tracer):
        store = FileStatusStore(tmp_path / "status", tracer=tracer)

        await store.save_atomic(status)
        loaded = await store.load(status.migration_id)

        assert loaded.to_dict() == status.to_dict()
        assert store.path_for("mig-test").name == "phased-migration-mig-test.json"
        assert tracer.span_names == [
            "phasedrollout.status_store.save",
            "phasedrollout.status_store.load",
        ]

    @pytest.mark.asyncio
    async def test_no_temporary_files_left(self, status, tmp_path):
        store = FileStatusStore(tmp_path, enable_tracing=False)

        for state in (MigrationState.RUNNING, MigrationState.COMPLETED):
            status.status = state
            await store.save_atomic(status)

        assert [p.name for p in tmp_path.iterdir()] == ["phased-migration-mig-test.json"]
        data = json.loads(store.path_for("mig-test").read_text())
        assert data["status"] == "completed"

    @pytest.mark.asyncio
    async def test_load_missing(self, tmp_path):
        assert await FileStatusStore(tmp_path, enable_tracing=False).load("nope") is None

    @pytest.mark.asyncio
    async def test_unwritable_directory(self, status, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        store = FileStatusStore(blocker / "status", enable_tracing=False)

        with pytest.raises(StatusStoreError) as exc_info:
            await store.save_atomic(status)

        assert exc_info.value.migration_id == "mig-test"

    @pytest.mark.asyncio
    async def test_corrupt_json_raises_store_error(self, tmp_path):
        store = FileStatusStore(tmp_path, enable_tracing=False)
        store.path_for("mig-test").write_text("{\"migration_id\": \"mig-te")

        with pytest.raises(StatusStoreError, match="Corrupt status record") as exc_info:
            await store.load("mig-test")

        assert exc_info.value.migration_id == "mig-test"
        assert isinstance(exc_info.value.__cause__, json.JSONDecodeError)

    @pytest.mark.asyncio
    async def test_incomplete_record_raises_store_error(self, status, tmp_path):
        store = FileStatusStore(tmp_path, enable_tracing=False)
        data = status.to_dict()
        del data["started_at"]
        store.path_for("mig-test").write_text(json.dumps(data))

        with pytest.raises(StatusStoreError, match="KeyError"):
            await store.load("mig-test")


class TestSQLAlchemyStatusStore:
    """Tests for SQLAlchemyStatusStore on SQLite."""

    @pytest.mark.asyncio
    async def test_upsert_and_load(self, status, sqlite_engine):
        store = SQLAlchemyStatusStore(sqlite_engine, enable_tracing=False)
        await store.create_schema()

        await store.save_atomic(status)
        status.status = MigrationState.ROLLED_BACK
        status.failure_reason = "error rate 8%"
        await store.save_atomic(status)

        loaded = await store.load(status.migration_id)
        assert loaded.status == MigrationState.ROLLED_BACK
        assert loaded.failure_reason == "error rate 8%"

    @pytest.mark.asyncio
    async def test_load_missing(self, sqlite_engine):
        store = SQLAlchemyStatusStore(sqlite_engine, enable_tracing=False)
        await store.create_schema()

        assert await store.load("nope") is None

    @pytest.mark.asyncio
    async def test_missing_table_raises(self, status, sqlite_engine):
        store = SQLAlchemyStatusStore(sqlite_engine, enable_tracing=False)

        with pytest.raises(StatusStoreError, match="Cannot save status record"):
            await store.save_atomic(status)

    @pytest.mark.asyncio
    async def test_corrupt_document_raises_store_error(self, sqlite_engine):
        store = SQLAlchemyStatusStore(sqlite_engine, enable_tracing=False)
        await store.create_schema()
        async with sqlite_engine.begin() as conn:
            await conn.execute(
                text(
                    "INSERT INTO phased_rollout_status (migration_id, status, document, updated_at) "
                    "VALUES ('mig-test', 'running', 'not json', '2026-01-01T00:00:00Z')"
                )
            )

        with pytest.raises(StatusStoreError, match="Corrupt status record"):
            await store.load("mig-test")
