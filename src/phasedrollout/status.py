"""
Runtime status of a phased rollout.

The PhasedMigrationStatus record is the single document the orchestrator
persists after every state transition. It is what ``phasedrollout status``
prints and what a dashboard reads: overall state, per-phase progress,
health summary, alert history and rollback history.

Only the PhaseOrchestrator mutates these objects.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from phasedrollout.exceptions import InvalidTransitionError
from phasedrollout.models import (
    Alert,
    HealthSnapshot,
    HealthSummary,
    MigrationState,
    PhaseStatus,
    RollbackEvent,
    RollbackExecution,
    format_timestamp,
    parse_timestamp,
)
from phasedrollout.plan import (
    MigrationPlan,
    PhaseCriteria,
    PhaseDefinition,
    RollbackConditionDefinition,
)


@dataclass
class PhaseMetrics:
    """
    Metrics accumulated while a phase runs.

    Attributes:
        documents_processed: Documents successfully migrated
        documents_failed: Documents the engine could not migrate
        success_rate: documents_processed / attempted
        average_response_time: Mean snapshot response time (ms)
        error_rate: Mean snapshot error rate
        throughput: Documents per second
        health_score: Mean snapshot health score
        rollbacks_triggered: Rollbacks started during the phase
        snapshots: Number of snapshots observed
    """

    documents_processed: int = 0
    documents_failed: int = 0
    success_rate: float = 1.0
    average_response_time: float = 0.0
    error_rate: float = 0.0
    throughput: float = 0.0
    health_score: float = 100.0
    rollbacks_triggered: int = 0
    snapshots: int = 0

    def observe(self, snapshot: HealthSnapshot) -> None:
        """Fold a snapshot into the running means."""
        n = self.snapshots
        self.average_response_time = (
            self.average_response_time * n + snapshot.application.response_time.average
        ) / (n + 1)
        self.error_rate = (self.error_rate * n + snapshot.application.error_rate) / (n + 1)
        self.health_score = (self.health_score * n + snapshot.health_score) / (n + 1)
        self.snapshots = n + 1

    def record_work(self, processed: int, failed: int, elapsed_seconds: float) -> None:
        self.documents_processed = processed
        self.documents_failed = failed
        attempted = processed + failed
        self.success_rate = processed / attempted if attempted else 1.0
        self.throughput = processed / elapsed_seconds if elapsed_seconds > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "documents_processed": self.documents_processed,
            "documents_failed": self.documents_failed,
            "success_rate": self.success_rate,
            "average_response_time": self.average_response_time,
            "error_rate": self.error_rate,
            "throughput": self.throughput,
            "health_score": self.health_score,
            "rollbacks_triggered": self.rollbacks_triggered,
            "snapshots": self.snapshots,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseMetrics:
        return cls(**data)


@dataclass
class Phase:
    """
    Runtime state of one phase.

    Created from a PhaseDefinition; only ``status``, the timestamps,
    ``metrics`` and ``failure_reason`` change afterwards.

    Attributes:
        number: 1-based sequence number
        name: Display name
        percentage: Share of the fleet migrated when the phase completes
        target_documents: Documents to migrate
        duration: Observation window
        monitoring_interval: Time between snapshots
        criteria: Readiness and acceptance criteria
        rollback_conditions: Phase-local rollback conditions
        status: Current lifecycle status
        started_at: When the phase entered RUNNING
        ended_at: When the phase reached a terminal status
        metrics: Accumulated phase metrics
        failure_reason: Why the phase failed or was rolled back
    """

    number: int
    name: str
    percentage: float
    target_documents: int
    duration: timedelta
    monitoring_interval: timedelta
    criteria: PhaseCriteria = field(default_factory=PhaseCriteria)
    rollback_conditions: tuple[RollbackConditionDefinition, ...] = ()
    status: PhaseStatus = PhaseStatus.PENDING
    started_at: datetime | None = None
    ended_at: datetime | None = None
    metrics: PhaseMetrics = field(default_factory=PhaseMetrics)
    failure_reason: str | None = None

    @classmethod
    def from_definition(cls, definition: PhaseDefinition) -> Phase:
        return cls(
            number=definition.phase_number,
            name=definition.name,
            percentage=definition.percentage,
            target_documents=definition.target_documents,
            duration=definition.duration,
            monitoring_interval=definition.monitoring_interval,
            criteria=definition.criteria,
            rollback_conditions=definition.rollback_conditions,
        )

    def transition_to(self, target: PhaseStatus, now: datetime | None = None) -> None:
        """
        Move the phase to a new status.

        Args:
            target: New status
            now: Transition time (defaults to the current time)

        Raises:
            InvalidTransitionError: If the transition is not allowed
        """
        if not self.status.can_transition_to(target):
            raise InvalidTransitionError(self.status, target, phase_number=self.number)
        now = now or datetime.now(UTC)
        self.status = target
        if target == PhaseStatus.RUNNING:
            self.started_at = now
        elif target.is_terminal:
            self.ended_at = now

    def elapsed(self, now: datetime | None = None) -> timedelta:
        """Time spent in the phase so far (or in total once it ended)."""
        if self.started_at is None:
            return timedelta(0)
        end = self.ended_at or now or datetime.now(UTC)
        return end - self.started_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "name": self.name,
            "percentage": self.percentage,
            "target_documents": self.target_documents,
            "duration_ms": int(self.duration.total_seconds() * 1000),
            "monitoring_interval_ms": int(self.monitoring_interval.total_seconds() * 1000),
            "criteria": self.criteria.model_dump(mode="json"),
            "rollback_conditions": [
                c.model_dump(mode="json") for c in self.rollback_conditions
            ],
            "status": self.status.value,
            "started_at": format_timestamp(self.started_at),
            "ended_at": format_timestamp(self.ended_at),
            "metrics": self.metrics.to_dict(),
            "failure_reason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Phase:
        return cls(
            number=data["number"],
            name=data["name"],
            percentage=data["percentage"],
            target_documents=data["target_documents"],
            duration=timedelta(milliseconds=data["duration_ms"]),
            monitoring_interval=timedelta(milliseconds=data["monitoring_interval_ms"]),
            criteria=PhaseCriteria.model_validate(data.get("criteria", {})),
            rollback_conditions=tuple(
                RollbackConditionDefinition.model_validate(c)
                for c in data.get("rollback_conditions", [])
            ),
            status=PhaseStatus(data["status"]),
            started_at=parse_timestamp(data.get("started_at")),
            ended_at=parse_timestamp(data.get("ended_at")),
            metrics=PhaseMetrics.from_dict(data.get("metrics", {})),
            failure_reason=data.get("failure_reason"),
        )


@dataclass
class PhasedMigrationStatus:
    """
    Persisted status record of a rollout.

    Attributes:
        migration_id: Rollout id
        version: Target schema version
        environment: Target environment value
        phases: Runtime phases in order
        status: Overall rollout state
        current_phase: Number of the active (or last active) phase, 0 before start
        overall_progress: completed phases / total phases * 100
        awaiting_approval: True while waiting for an operator approval
        gate_pending: True when the run paused on a closed progression gate;
            the gate is evaluated again before the next phase starts
        started_at: Rollout start
        last_updated: Last persisted transition
        completed_at: When the rollout reached a terminal state
        health: Aggregate health summary
        alerts: Recent alerts (bounded by the plan's alert history size)
        rollback_history: Rollback events in order
        rollback_executions: Rollback executions in order
        preflight: Pre-flight report, if validation ran
        latest_snapshot: Most recent health snapshot
        failure_reason: Why the rollout stopped, if it did not complete
        trigger_state: Fire history per rollback trigger id
            (``last_triggered``, ``trigger_count``) so cooldowns survive a resume
    """

    migration_id: str
    version: str
    environment: str
    phases: list[Phase]
    status: MigrationState = MigrationState.PENDING
    current_phase: int = 0
    overall_progress: float = 0.0
    awaiting_approval: bool = False
    gate_pending: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_updated: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    health: HealthSummary = field(default_factory=HealthSummary)
    alerts: list[Alert] = field(default_factory=list)
    rollback_history: list[RollbackEvent] = field(default_factory=list)
    rollback_executions: list[RollbackExecution] = field(default_factory=list)
    preflight: dict[str, Any] | None = None
    latest_snapshot: HealthSnapshot | None = None
    failure_reason: str | None = None
    trigger_state: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def for_plan(cls, plan: MigrationPlan) -> PhasedMigrationStatus:
        return cls(
            migration_id=plan.migration_id,
            version=plan.version,
            environment=plan.environment.value,
            phases=[Phase.from_definition(p) for p in plan.phases],
        )

    @property
    def total_phases(self) -> int:
        return len(self.phases)

    @property
    def completed_phases(self) -> int:
        return sum(1 for phase in self.phases if phase.status == PhaseStatus.COMPLETED)

    def phase(self, number: int) -> Phase:
        return self.phases[number - 1]

    def recompute_progress(self) -> float:
        """Update and return ``overall_progress``."""
        if not self.phases:
            self.overall_progress = 100.0
        else:
            self.overall_progress = self.completed_phases / self.total_phases * 100.0
        return self.overall_progress

    def touch(self, now: datetime | None = None) -> None:
        self.last_updated = now or datetime.now(UTC)

    def to_dict(self) -> dict[str, Any]:
        return {
            "migration_id": self.migration_id,
            "version": self.version,
            "environment": self.environment,
            "status": self.status.value,
            "current_phase": self.current_phase,
            "total_phases": self.total_phases,
            "overall_progress": self.overall_progress,
            "awaiting_approval": self.awaiting_approval,
            "gate_pending": self.gate_pending,
            "started_at": self.started_at.isoformat(),
            "last_updated": self.last_updated.isoformat(),
            "completed_at": format_timestamp(self.completed_at),
            "phases": [p.to_dict() for p in self.phases],
            "health": self.health.to_dict(),
            "alerts": [a.to_dict() for a in self.alerts],
            "rollback_history": [e.to_dict() for e in self.rollback_history],
            "rollback_executions": [e.to_dict() for e in self.rollback_executions],
            "preflight": self.preflight,
            "latest_snapshot": self.latest_snapshot.to_dict() if self.latest_snapshot else None,
            "failure_reason": self.failure_reason,
            "trigger_state": self.trigger_state,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhasedMigrationStatus:
        snapshot = data.get("latest_snapshot")
        return cls(
            migration_id=data["migration_id"],
            version=data["version"],
            environment=data["environment"],
            phases=[Phase.from_dict(p) for p in data.get("phases", [])],
            status=MigrationState(data["status"]),
            current_phase=data.get("current_phase", 0),
            overall_progress=data.get("overall_progress", 0.0),
            awaiting_approval=data.get("awaiting_approval", False),
            gate_pending=data.get("gate_pending", False),
            started_at=datetime.fromisoformat(data["started_at"]),
            last_updated=datetime.fromisoformat(data["last_updated"]),
            completed_at=parse_timestamp(data.get("completed_at")),
            health=HealthSummary.from_dict(data.get("health", {})),
            alerts=[Alert.from_dict(a) for a in data.get("alerts", [])],
            rollback_history=[RollbackEvent.from_dict(e) for e in data.get("rollback_history", [])],
            rollback_executions=[
                RollbackExecution.from_dict(e) for e in data.get("rollback_executions", [])
            ],
            preflight=data.get("preflight"),
            latest_snapshot=HealthSnapshot.from_dict(snapshot) if snapshot else None,
            failure_reason=data.get("failure_reason"),
            trigger_state=data.get("trigger_state", {}),
        )


__all__ = [
    "PhaseMetrics",
    "Phase",
    "PhasedMigrationStatus",
]
