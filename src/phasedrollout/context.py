"""
Orchestrator context and control channels.

RolloutControl carries the operator signals (emergency, pause, approval)
as asyncio events; the CLI's signal handlers only set them.

OrchestratorContext bundles every collaborator of one run. ``build``
wires the defaults from a MigrationPlan, and each collaborator can be
replaced by passing it explicitly (tests pass fakes this way).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime

from phasedrollout.alerts import AlertChannel, AlertDispatcher, build_channels
from phasedrollout.config import OrchestratorConfig
from phasedrollout.engine import MigrationEngine
from phasedrollout.gate import ProgressionGate
from phasedrollout.health import (
    HealthAlertAnalyzer,
    HealthSnapshotCollector,
    MetricsProvider,
    ProcessMetricsProvider,
)
from phasedrollout.metrics import RolloutMetrics
from phasedrollout.models import RollbackPlan
from phasedrollout.observability import Tracer, create_tracer
from phasedrollout.plan import MigrationPlan
from phasedrollout.preflight import PreFlightValidator, ValidatorConfig
from phasedrollout.repositories import FileStatusStore, InMemoryStatusStore, StatusStore
from phasedrollout.rollback import (
    BulkImportRestoreBackend,
    DocumentRestoreBackend,
    RestoreBackend,
    RollbackActions,
    build_rollback_plan,
)
from phasedrollout.stores import DocumentStore
from phasedrollout.triggers import RollbackTriggerEngine

logger = logging.getLogger(__name__)


class RolloutControl:
    """
    Operator control channels of a running rollout.

    Example:
        >>> control = RolloutControl()
        >>> loop.add_signal_handler(signal.SIGUSR2, control.approve)
    """

    def __init__(self) -> None:
        self.emergency = asyncio.Event()
        self.pause = asyncio.Event()
        self.approval = asyncio.Event()
        self.emergency_reason = ""

    def request_emergency(self, reason: str = "operator emergency stop") -> None:
        """Roll back the current rollout immediately."""
        if not self.emergency.is_set():
            self.emergency_reason = reason
            logger.warning("Emergency stop requested: %s", reason)
        self.emergency.set()

    def request_pause(self) -> None:
        """Stop after the current phase window (or rollback step)."""
        if not self.pause.is_set():
            logger.warning("Pause requested")
        self.pause.set()

    def approve(self) -> None:
        """Release a manual-approval wait."""
        logger.info("Approval received")
        self.approval.set()

    def consume_approval(self) -> None:
        self.approval.clear()


@dataclass
class OrchestratorContext:
    """
    Everything one orchestrator run needs.

    Built once per run; nothing in here is shared between runs.
    """

    plan: MigrationPlan
    config: OrchestratorConfig
    store: DocumentStore
    engine: MigrationEngine
    status_store: StatusStore
    collector: HealthSnapshotCollector
    analyzer: HealthAlertAnalyzer
    trigger_engine: RollbackTriggerEngine
    gate: ProgressionGate
    dispatcher: AlertDispatcher
    rollback_plan: RollbackPlan
    validator: PreFlightValidator
    metrics: RolloutMetrics
    tracer: Tracer
    control: RolloutControl = field(default_factory=RolloutControl)
    clock: Callable[[], datetime] = field(default=lambda: datetime.now(UTC))

    @classmethod
    def build(
        cls,
        plan: MigrationPlan,
        store: DocumentStore,
        engine: MigrationEngine,
        *,
        config: OrchestratorConfig | None = None,
        status_store: StatusStore | None = None,
        provider: MetricsProvider | None = None,
        validator_config: ValidatorConfig | None = None,
        channels: Sequence[AlertChannel] | None = None,
        backends: Sequence[RestoreBackend] | None = None,
        latest_backup: Callable[[], Awaitable[datetime | None]] | None = None,
        sample_collection: str | None = None,
        control: RolloutControl | None = None,
        clock: Callable[[], datetime] | None = None,
        tracer: Tracer | None = None,
    ) -> OrchestratorContext:
        """
        Wire the default collaborators for a plan.

        Args:
            plan: The migration plan
            store: Backing document store
            engine: Migration engine doing the phase work
            config: Operator switches
            status_store: Status persistence (file store under
                ``config.status_dir``, else in memory)
            provider: Metrics source (psutil-backed by default)
            validator_config: Pre-flight thresholds (environment defaults)
            channels: Notification channels (built from the plan by default)
            backends: Restore backends (bulk import, then document restore)
            latest_backup: Returns the time of the newest backup
            sample_collection: Collection sampled for store health
            control: Operator control channels
            clock: Time source
            tracer: Tracer shared by every component

        Returns:
            The context
        """
        config = config or OrchestratorConfig()
        clock = clock or (lambda: datetime.now(UTC))
        tracer = tracer or create_tracer("phasedrollout", config.enable_tracing)
        control = control or RolloutControl()
        provider = provider or ProcessMetricsProvider()

        if status_store is None:
            if config.status_dir is not None:
                status_store = FileStatusStore(config.status_dir, tracer=tracer)
            else:
                status_store = InMemoryStatusStore()

        metrics = RolloutMetrics(
            plan.migration_id,
            plan.environment.value,
            enable_metrics=config.enable_metrics,
        )
        dispatcher = AlertDispatcher(
            channels if channels is not None else build_channels(plan.notification_channels),
            max_history=plan.monitoring.max_alert_history,
            enabled=plan.monitoring.alerting_enabled,
            clock=clock,
            metrics=metrics,
            tracer=tracer,
        )
        collector = HealthSnapshotCollector(
            store,
            provider,
            sample_collection=sample_collection,
            retention=plan.monitoring.metrics_retention,
            open_alerts=lambda: dispatcher.open_alerts,
            clock=clock,
            tracer=tracer,
        )
        trigger_engine = RollbackTriggerEngine(
            [definition.to_trigger() for definition in plan.rollback_triggers],
            tracer=tracer,
        )
        if backends is None:
            backends = [
                BulkImportRestoreBackend(config.executor.import_command, tracer=tracer),
                DocumentRestoreBackend(
                    store, batch_size=config.executor.restore_batch_size, tracer=tracer
                ),
            ]
        actions = RollbackActions(
            stop_work=engine.stop,
            collector=collector,
            store=store,
            backup_source=engine.backup,
            backends=backends,
            on_reset=trigger_engine.reset_conditions,
            performance_baseline_ms=config.executor.performance_baseline_ms,
        )
        rollback_plan = build_rollback_plan(plan, actions)
        validator = PreFlightValidator(
            store,
            provider,
            validator_config or ValidatorConfig.for_environment(plan.environment),
            engine=engine,
            latest_backup=latest_backup,
            rollback_plan=rollback_plan,
            clock=clock,
            tracer=tracer,
        )
        return cls(
            plan=plan,
            config=config,
            store=store,
            engine=engine,
            status_store=status_store,
            collector=collector,
            analyzer=HealthAlertAnalyzer(plan.health_thresholds),
            trigger_engine=trigger_engine,
            gate=ProgressionGate(tracer=tracer),
            dispatcher=dispatcher,
            rollback_plan=rollback_plan,
            validator=validator,
            metrics=metrics,
            tracer=tracer,
            control=control,
            clock=clock,
        )


__all__ = [
    "RolloutControl",
    "OrchestratorContext",
]
