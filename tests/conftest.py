"""
Shared pytest fixtures for the phasedrollout tests.

This module provides:
- FakeMetricsProvider: a MetricsProvider whose readings tests set directly
- Plan fixtures (make_plan) with millisecond phase windows
- Store fixtures (seeded_store) with a small users collection
- Context fixtures (make_context) wiring an OrchestratorContext for tests
- Snapshot and polling helpers (make_snapshot, wait_until)
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from phasedrollout.config import OrchestratorConfig
from phasedrollout.context import OrchestratorContext
from phasedrollout.engine import DocumentMigrationEngine
from phasedrollout.models import (
    ApplicationMetrics,
    ComparisonOperator,
    HealthSnapshot,
    HealthStatus,
    ResponseTimeMetrics,
    Severity,
    StoreMetrics,
    SystemMetrics,
)
from phasedrollout.observability import MockTracer
from phasedrollout.plan import (
    MigrationPlan,
    PhaseCriteria,
    PhaseDefinition,
    ProgressionCriteria,
    RollbackTriggerDefinition,
)
from phasedrollout.preflight import ValidatorConfig
from phasedrollout.repositories import InMemoryStatusStore
from phasedrollout.stores import InMemoryDocumentStore

# =============================================================================
# Fakes
# =============================================================================


class FakeMetricsProvider:
    """MetricsProvider with readings controlled by the test."""

    def __init__(
        self,
        *,
        error_rate: float = 0.0,
        p95_ms: float = 50.0,
        memory_mb: float = 128.0,
        cpu_percent: float = 10.0,
    ) -> None:
        self.system = SystemMetrics(memory_mb=memory_mb, cpu_percent=cpu_percent, disk_percent=40.0)
        self.application = ApplicationMetrics(
            request_rate=20.0,
            response_time=ResponseTimeMetrics(average=p95_ms / 2, p50=p95_ms / 2, p95=p95_ms, p99=p95_ms),
            error_rate=error_rate,
        )
        self.pool = 0.1
        self.ops = 50.0
        self.fail_with: Exception | None = None

    def set_error_rate(self, error_rate: float) -> None:
        self.application = ApplicationMetrics(
            request_rate=self.application.request_rate,
            response_time=self.application.response_time,
            error_rate=error_rate,
        )

    async def system_metrics(self) -> SystemMetrics:
        if self.fail_with is not None:
            raise self.fail_with
        return self.system

    async def application_metrics(self) -> ApplicationMetrics:
        return self.application

    async def store_load(self) -> tuple[float, float]:
        return self.pool, self.ops


def _make_snapshot(
    *,
    timestamp: datetime | None = None,
    error_rate: float = 0.0,
    health_score: float = 100.0,
    p95_ms: float = 50.0,
    status: HealthStatus = HealthStatus.HEALTHY,
    degraded: bool = False,
) -> HealthSnapshot:
    """Build a HealthSnapshot with the given headline figures."""
    return HealthSnapshot(
        timestamp=timestamp or datetime.now(UTC),
        system=SystemMetrics(memory_mb=128.0, cpu_percent=10.0),
        application=ApplicationMetrics(
            request_rate=20.0,
            response_time=ResponseTimeMetrics(average=p95_ms / 2, p95=p95_ms),
            error_rate=error_rate,
        ),
        store=StoreMetrics(),
        health_score=health_score,
        status=status,
        degraded=degraded,
    )


async def _wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll ``predicate`` until it holds or fail the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            pytest.fail("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def make_snapshot() -> Callable[..., HealthSnapshot]:
    return _make_snapshot


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    return _wait_until


# =============================================================================
# Plan fixtures
# =============================================================================


def build_plan(
    *,
    migration_id: str = "mig-test",
    phases: int = 3,
    duration: timedelta = timedelta(milliseconds=60),
    interval: timedelta = timedelta(milliseconds=10),
    criteria: PhaseCriteria | None = None,
    **overrides: Any,
) -> MigrationPlan:
    """Small staging plan with millisecond windows."""
    percentages = [10.0, 50.0, 100.0, 100.0][:phases]
    definitions = tuple(
        PhaseDefinition(
            phase_number=number,
            name=f"Phase {number}",
            percentage=percentages[number - 1] if number <= len(percentages) else 100.0,
            target_documents=10 * number,
            duration=duration,
            monitoring_interval=interval,
            criteria=criteria or PhaseCriteria(),
        )
        for number in range(1, phases + 1)
    )
    fields: dict[str, Any] = {
        "migration_id": migration_id,
        "version": "2.0.0",
        "environment": "staging",
        "phases": definitions,
        "rollback_triggers": (
            RollbackTriggerDefinition(
                id="error_rate_critical",
                name="Critical Error Rate",
                metric="error_rate",
                operator=ComparisonOperator.GT,
                threshold=0.05,
                severity=Severity.CRITICAL,
                cooldown_period=timedelta(minutes=5),
            ),
            RollbackTriggerDefinition(
                id="health_score_degraded",
                name="Health Score Degradation",
                metric="health_score",
                operator=ComparisonOperator.LT,
                threshold=70,
                cooldown_period=timedelta(minutes=10),
            ),
        ),
        "progression_criteria": ProgressionCriteria(minimum_duration=timedelta(0)),
    }
    fields.update(overrides)
    return MigrationPlan(**fields)


@pytest.fixture
def make_plan() -> Callable[..., MigrationPlan]:
    return build_plan


@pytest.fixture
def plan() -> MigrationPlan:
    return build_plan()


# =============================================================================
# Store and context fixtures
# =============================================================================


def seed_documents(count: int = 40) -> dict[str, dict[str, dict[str, Any]]]:
    return {
        "users": {
            f"user-{i:03d}": {"name": f"User {i}", "schemaVersion": "1.0.0"} for i in range(count)
        }
    }


@pytest.fixture
def seeded_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore(seed_documents(), enable_tracing=False)


@pytest.fixture
def provider() -> FakeMetricsProvider:
    return FakeMetricsProvider()


@pytest.fixture
def status_store() -> InMemoryStatusStore:
    return InMemoryStatusStore()


@pytest.fixture
def tracer() -> MockTracer:
    return MockTracer()


@pytest.fixture
def make_context(
    seeded_store: InMemoryDocumentStore,
    provider: FakeMetricsProvider,
    status_store: InMemoryStatusStore,
    tracer: MockTracer,
) -> Callable[..., OrchestratorContext]:
    """Factory wiring an OrchestratorContext around the shared fakes."""

    def _make(plan: MigrationPlan, **kwargs: Any) -> OrchestratorContext:
        store = kwargs.pop("store", seeded_store)
        engine = kwargs.pop("engine", None) or DocumentMigrationEngine(
            store,
            ["users"],
            batch_size=5,
            dry_run=kwargs.get("config", OrchestratorConfig()).dry_run,
            enable_tracing=False,
        )
        kwargs.setdefault("config", OrchestratorConfig(enable_tracing=False, enable_metrics=False))
        kwargs.setdefault("status_store", status_store)
        kwargs.setdefault("provider", provider)
        kwargs.setdefault("validator_config", ValidatorConfig.for_environment(plan.environment))
        kwargs.setdefault("sample_collection", "users")
        kwargs.setdefault("tracer", tracer)
        return OrchestratorContext.build(plan, store, engine, **kwargs)

    return _make
