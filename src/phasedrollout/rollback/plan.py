"""
Default rollback plan.

``build_rollback_plan`` derives the standard IMMEDIATE plan from a
MigrationPlan. The plan has five steps:

    1. Emergency Stop        (emergency_stop, 1 min)
    2. Health Assessment     (after Emergency Stop, 3 min)
    3. Data Reversion        (after Health Assessment, 15 min)
    4. System Verification   (10 min)
    5. Monitoring Reset      (1 min)

It also runs three plan-level validations: Database Connectivity
(critical), Data Integrity (critical) and Performance Baseline.

The actions themselves are provided by RollbackActions, which wraps the
collaborators of a running rollout.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from datetime import timedelta
from typing import Any

from phasedrollout.health import HealthSnapshotCollector
from phasedrollout.models import (
    DataLossRisk,
    HealthStatus,
    RollbackContext,
    RollbackPlan,
    RollbackStep,
    RollbackStrategy,
    RollbackValidation,
    StepStatus,
)
from phasedrollout.plan import MigrationPlan
from phasedrollout.rollback.backends import (
    BackupReference,
    RestoreBackend,
    select_restore_backend,
)
from phasedrollout.stores import DocumentStore

logger = logging.getLogger(__name__)

DATA_REVERSION = "Data Reversion"


class RollbackActions:
    """
    Step actions and validations of the default rollback plan.

    Args:
        stop_work: Cancels in-flight migration work
        collector: Health collector used for assessment and verification
        store: Document store (connectivity validation)
        backup_source: Returns the backup to restore, or None if nothing was changed
        backends: Restore backends to choose from
        on_reset: Called by the Monitoring Reset step
        performance_baseline_ms: P95 latency the Performance Baseline check accepts
    """

    def __init__(
        self,
        *,
        stop_work: Callable[[], Awaitable[None]],
        collector: HealthSnapshotCollector,
        store: DocumentStore,
        backup_source: Callable[[], BackupReference | None],
        backends: Sequence[RestoreBackend],
        on_reset: Callable[[], None] | None = None,
        performance_baseline_ms: float = 2000.0,
    ) -> None:
        self._stop_work = stop_work
        self._collector = collector
        self._store = store
        self._backup_source = backup_source
        self._backends = list(backends)
        self._on_reset = on_reset
        self._performance_baseline_ms = performance_baseline_ms

    async def emergency_stop(self, context: RollbackContext) -> dict[str, Any]:
        await self._stop_work()
        logger.warning("Migration work stopped for %s", context.migration_id)
        return {"validations": {"migration_stopped": True}}

    async def assess_health(self, context: RollbackContext) -> dict[str, Any]:
        snapshot = await self._collector.collect()
        context.details["pre_reversion_health"] = snapshot.health_score
        if snapshot.degraded:
            logger.warning("Pre-reversion health snapshot is degraded: %s", snapshot.error)
        return {"validations": {"health_snapshot_collected": True}}

    async def revert_data(self, context: RollbackContext) -> dict[str, Any]:
        backup = self._backup_source()
        if backup is None:
            logger.info("No backup recorded for %s; nothing to revert", context.migration_id)
            return {"documents_reverted": 0, "validations": {"backup_restored": True}}
        backend = select_restore_backend(backup, self._backends)
        result = await backend.restore(backup)
        context.details["restored_collections"] = list(result.collections)
        return {
            "documents_reverted": result.documents_restored,
            "collections_affected": len(result.collections),
            "validations": {"backup_restored": True},
        }

    async def verify_system(self, context: RollbackContext) -> dict[str, Any]:
        snapshot = await self._collector.collect()
        if snapshot.degraded:
            raise RuntimeError(f"System verification failed: {snapshot.error}")
        context.details["post_reversion_health"] = snapshot.health_score
        return {"validations": {"system_responsive": snapshot.status != HealthStatus.CRITICAL}}

    async def reset_monitoring(self, context: RollbackContext) -> dict[str, Any]:
        if self._on_reset is not None:
            self._on_reset()
        return {}

    async def check_connectivity(self, context: RollbackContext) -> bool:
        names = await self._store.collections()
        if names:
            await self._store.scan(names[0], limit=1)
        return True

    async def check_data_integrity(self, context: RollbackContext) -> bool:
        # Read from the execution so a resumed rollback sees the earlier restore
        return context.execution.result_for(DATA_REVERSION).status == StepStatus.COMPLETED

    async def check_performance(self, context: RollbackContext) -> bool:
        latest = self._collector.latest
        if latest is None:
            return False
        return latest.application.response_time.p95 <= self._performance_baseline_ms


def build_rollback_plan(plan: MigrationPlan, actions: RollbackActions) -> RollbackPlan:
    """
    Derive the default rollback plan for a migration plan.

    Args:
        plan: The migration plan being rolled out
        actions: Step actions bound to the running rollout

    Returns:
        The rollback plan
    """
    steps = (
        RollbackStep(
            name="Emergency Stop",
            description="Stop all in-flight migration work",
            estimated_time=timedelta(seconds=60),
            action=actions.emergency_stop,
            validations=("migration_stopped",),
            emergency_stop=True,
        ),
        RollbackStep(
            name="Health Assessment",
            description="Assess system health before reverting data",
            estimated_time=timedelta(seconds=180),
            action=actions.assess_health,
            dependencies=("Emergency Stop",),
            validations=("health_snapshot_collected",),
        ),
        RollbackStep(
            name=DATA_REVERSION,
            description="Restore documents from the pre-migration backup",
            estimated_time=timedelta(seconds=900),
            action=actions.revert_data,
            automated=False,
            dependencies=("Health Assessment",),
            validations=("backup_restored",),
        ),
        RollbackStep(
            name="System Verification",
            description="Verify the system is responsive after reversion",
            estimated_time=timedelta(seconds=600),
            action=actions.verify_system,
            validations=("system_responsive",),
        ),
        RollbackStep(
            name="Monitoring Reset",
            description="Reset trigger and condition state",
            estimated_time=timedelta(seconds=60),
            action=actions.reset_monitoring,
        ),
    )
    validations = (
        RollbackValidation(
            name="Database Connectivity",
            description="The document store answers a bounded scan",
            check=actions.check_connectivity,
            critical=True,
            timeout=timedelta(seconds=30),
        ),
        RollbackValidation(
            name="Data Integrity",
            description="The backup was restored without errors",
            check=actions.check_data_integrity,
            critical=True,
            timeout=timedelta(seconds=120),
        ),
        RollbackValidation(
            name="Performance Baseline",
            description="P95 latency is back within the baseline",
            check=actions.check_performance,
            critical=False,
            timeout=timedelta(seconds=60),
        ),
    )
    return RollbackPlan(
        id=f"rollback-{plan.migration_id}",
        version=plan.version,
        strategy=RollbackStrategy.IMMEDIATE,
        data_loss_risk=DataLossRisk.MINIMAL,
        steps=steps,
        validations=validations,
    )


__all__ = [
    "DATA_REVERSION",
    "RollbackActions",
    "build_rollback_plan",
]
