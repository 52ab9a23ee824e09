"""
Core data models for the phased rollout orchestrator.

This module defines the runtime data structures shared by every component:
health snapshots, alerts, rollback triggers, rollback plans and their
executions. Plan input (what the operator submits) lives in
``phasedrollout.plan``; the per-run status record lives in
``phasedrollout.status``.

Models in this module:

Enums:
    - Environment: Target deployment environment
    - PhaseStatus: Lifecycle of a single phase
    - MigrationState: Overall lifecycle of a rollout
    - HealthStatus: Coarse health classification of a snapshot
    - AlertSeverity: Severity of operator alerts
    - Severity: Impact level for triggers and pre-flight checks
    - ComparisonOperator: Operators used by trigger conditions
    - RollbackStrategy, DataLossRisk: Rollback plan classification
    - StepStatus, RollbackExecutionStatus: Rollback execution lifecycle

Health:
    - SystemMetrics, ResponseTimeMetrics, ApplicationMetrics, StoreMetrics
    - HealthSnapshot: Point-in-time health assessment
    - HealthSummary: Aggregate health shown in the status record

Alerting:
    - Alert: Operator-facing notification

Rollback:
    - RollbackTrigger: Automatic (or manual) rollback rule with cooldown
    - RollbackStep, RollbackValidation, RollbackPlan
    - ValidationResult, StepResult, RollbackMetrics, RollbackExecution
    - RollbackEvent: Entry in the rollout's rollback history
"""

from __future__ import annotations

import logging
import math
import operator
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any
from uuid import uuid4


def format_timestamp(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def parse_timestamp(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class Environment(Enum):
    """Deployment environment a plan targets."""

    STAGING = "staging"
    PRODUCTION = "production"

    @property
    def is_production(self) -> bool:
        return self == Environment.PRODUCTION


class PhaseStatus(Enum):
    """
    Lifecycle of a single rollout phase.

    State machine transitions:
        PENDING -> RUNNING -> COMPLETED
                      |
                      +--> FAILED
                      +--> ROLLED_BACK

    A phase never leaves a terminal state.
    """

    PENDING = "pending"
    """Phase has not started."""

    RUNNING = "running"
    """Migration work and monitoring are active."""

    COMPLETED = "completed"
    """Phase window elapsed with healthy metrics."""

    FAILED = "failed"
    """Phase could not start, or its rollback failed."""

    ROLLED_BACK = "rolled_back"
    """Phase was reverted by the rollback executor."""

    @property
    def is_terminal(self) -> bool:
        """Check if this is a terminal status."""
        return self in (
            PhaseStatus.COMPLETED,
            PhaseStatus.FAILED,
            PhaseStatus.ROLLED_BACK,
        )

    def can_transition_to(self, target: PhaseStatus) -> bool:
        """
        Check if a transition to the target status is valid.

        Args:
            target: The status to transition to

        Returns:
            True if the transition is valid
        """
        valid_transitions: dict[PhaseStatus, set[PhaseStatus]] = {
            PhaseStatus.PENDING: {PhaseStatus.RUNNING, PhaseStatus.FAILED},
            PhaseStatus.RUNNING: {
                PhaseStatus.COMPLETED,
                PhaseStatus.FAILED,
                PhaseStatus.ROLLED_BACK,
            },
            PhaseStatus.COMPLETED: set(),
            PhaseStatus.FAILED: set(),
            PhaseStatus.ROLLED_BACK: set(),
        }
        return target in valid_transitions.get(self, set())


class MigrationState(Enum):
    """
    Overall state of a phased rollout.

    State machine transitions:
        PENDING -> RUNNING -> COMPLETED
                     |  ^
                     v  |
                    PAUSED (awaiting approval or interrupted)
        RUNNING -> FAILED | ROLLED_BACK
        PENDING -> BLOCKED (pre-flight validation blocked the rollout)
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    ROLLED_BACK = "rolled_back"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        """Check if the rollout can no longer make progress in this process."""
        return self in (
            MigrationState.COMPLETED,
            MigrationState.FAILED,
            MigrationState.ROLLED_BACK,
            MigrationState.BLOCKED,
        )


class HealthStatus(Enum):
    """Coarse health classification attached to every snapshot."""

    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    MAINTENANCE = "maintenance"


class AlertSeverity(Enum):
    """
    Severity of an operator alert.

    Channels filter on these values, and the log channel maps them to
    Python logging levels.
    """

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def log_level(self) -> int:
        """Get the corresponding Python logging level."""
        level_map = {
            AlertSeverity.INFO: logging.INFO,
            AlertSeverity.WARNING: logging.WARNING,
            AlertSeverity.ERROR: logging.ERROR,
            AlertSeverity.CRITICAL: logging.CRITICAL,
        }
        return level_map[self]


class Severity(Enum):
    """Impact level used by rollback triggers and pre-flight checks."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def alert_severity(self) -> AlertSeverity:
        """Alert severity used when something of this impact is reported."""
        mapping = {
            Severity.LOW: AlertSeverity.INFO,
            Severity.MEDIUM: AlertSeverity.WARNING,
            Severity.HIGH: AlertSeverity.ERROR,
            Severity.CRITICAL: AlertSeverity.CRITICAL,
        }
        return mapping[self]


class ComparisonOperator(Enum):
    """Comparison used by trigger and rollback conditions."""

    GT = ">"
    LT = "<"
    GTE = ">="
    LTE = "<="
    EQ = "=="
    NE = "!="

    def evaluate(self, value: float, threshold: float) -> bool:
        """
        Compare a metric value against a threshold.

        Args:
            value: Observed metric value
            threshold: Configured threshold

        Returns:
            True if the condition holds
        """
        functions: dict[ComparisonOperator, Callable[[float, float], bool]] = {
            ComparisonOperator.GT: operator.gt,
            ComparisonOperator.LT: operator.lt,
            ComparisonOperator.GTE: operator.ge,
            ComparisonOperator.LTE: operator.le,
            ComparisonOperator.EQ: operator.eq,
            ComparisonOperator.NE: operator.ne,
        }
        return functions[self](value, threshold)


class RollbackStrategy(Enum):
    IMMEDIATE = "immediate"
    PHASED = "phased"
    GRADUAL = "gradual"


class DataLossRisk(Enum):
    NONE = "none"
    MINIMAL = "minimal"
    SOME = "some"
    SIGNIFICANT = "significant"


class StepStatus(Enum):
    """Lifecycle of a single rollback step."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RollbackExecutionStatus(Enum):
    """Lifecycle of a rollback execution."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"

    @property
    def is_terminal(self) -> bool:
        return self in (RollbackExecutionStatus.COMPLETED, RollbackExecutionStatus.FAILED)


# =============================================================================
# Health
# =============================================================================


@dataclass(frozen=True)
class SystemMetrics:
    """
    Host resource usage.

    Attributes:
        memory_mb: Resident memory of the orchestrator process in MB
        cpu_percent: Host CPU utilisation (0-100)
        disk_percent: Root filesystem utilisation (0-100)
        uptime_seconds: Process uptime
    """

    memory_mb: float = 0.0
    cpu_percent: float = 0.0
    disk_percent: float = 0.0
    uptime_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory_mb": self.memory_mb,
            "cpu_percent": self.cpu_percent,
            "disk_percent": self.disk_percent,
            "uptime_seconds": self.uptime_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SystemMetrics:
        return cls(**data)


@dataclass(frozen=True)
class ResponseTimeMetrics:
    """Latency distribution in milliseconds."""

    average: float = 0.0
    p50: float = 0.0
    p95: float = 0.0
    p99: float = 0.0
    max: float = 0.0

    @classmethod
    def from_samples(cls, samples_ms: list[float]) -> ResponseTimeMetrics:
        """
        Build a latency distribution from raw samples.

        Uses nearest-rank percentiles, which is stable for the small
        sample sizes a health sample produces.

        Args:
            samples_ms: Observed latencies in milliseconds

        Returns:
            ResponseTimeMetrics (all zeros for an empty sample)
        """
        if not samples_ms:
            return cls()
        ordered = sorted(samples_ms)

        def rank(pct: float) -> float:
            index = max(0, min(len(ordered) - 1, math.ceil(pct * len(ordered)) - 1))
            return ordered[index]

        return cls(
            average=sum(ordered) / len(ordered),
            p50=rank(0.50),
            p95=rank(0.95),
            p99=rank(0.99),
            max=ordered[-1],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "average": self.average,
            "p50": self.p50,
            "p95": self.p95,
            "p99": self.p99,
            "max": self.max,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResponseTimeMetrics:
        return cls(**data)


@dataclass(frozen=True)
class ApplicationMetrics:
    """
    Application-level traffic metrics.

    Attributes:
        request_rate: Requests per second
        response_time: Request latency distribution (ms)
        error_rate: Fraction of failed requests (0-1)
        active_users: Currently active users, if known
    """

    request_rate: float = 0.0
    response_time: ResponseTimeMetrics = field(default_factory=ResponseTimeMetrics)
    error_rate: float = 0.0
    active_users: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_rate": self.request_rate,
            "response_time": self.response_time.to_dict(),
            "error_rate": self.error_rate,
            "active_users": self.active_users,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ApplicationMetrics:
        return cls(
            request_rate=data.get("request_rate", 0.0),
            response_time=ResponseTimeMetrics.from_dict(data.get("response_time", {})),
            error_rate=data.get("error_rate", 0.0),
            active_users=data.get("active_users", 0),
        )


@dataclass(frozen=True)
class StoreMetrics:
    """
    Backing document store metrics.

    Attributes:
        query_latency: Query latency distribution (ms)
        connection_pool_utilization: Fraction of the pool in use (0-1)
        operations_per_second: Store throughput
        document_count: Documents seen by the sample scan
    """

    query_latency: ResponseTimeMetrics = field(default_factory=ResponseTimeMetrics)
    connection_pool_utilization: float = 0.0
    operations_per_second: float = 0.0
    document_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "query_latency": self.query_latency.to_dict(),
            "connection_pool_utilization": self.connection_pool_utilization,
            "operations_per_second": self.operations_per_second,
            "document_count": self.document_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoreMetrics:
        return cls(
            query_latency=ResponseTimeMetrics.from_dict(data.get("query_latency", {})),
            connection_pool_utilization=data.get("connection_pool_utilization", 0.0),
            operations_per_second=data.get("operations_per_second", 0.0),
            document_count=data.get("document_count", 0),
        )


# Metric names that triggers and rollback conditions may reference.
SNAPSHOT_METRICS: frozenset[str] = frozenset(
    {
        "health_score",
        "error_rate",
        "response_time",
        "p95_latency",
        "p99_latency",
        "request_rate",
        "memory_usage",
        "cpu_usage",
        "disk_usage",
        "query_latency",
        "connection_pool",
        "operations_per_second",
    }
)


@dataclass(frozen=True)
class HealthSnapshot:
    """
    Point-in-time assessment of system health.

    Snapshots are produced by the HealthSnapshotCollector once per
    monitoring interval and are never modified afterwards.

    Attributes:
        timestamp: When the snapshot was taken
        system: Host resource metrics
        application: Application traffic metrics
        store: Backing store metrics
        health_score: Composite score in [0, 100]
        status: Coarse health classification
        degraded: True when collection failed and defaults were used
        error: Collection error message, if degraded
    """

    timestamp: datetime
    system: SystemMetrics
    application: ApplicationMetrics
    store: StoreMetrics
    health_score: float
    status: HealthStatus
    degraded: bool = False
    error: str | None = None

    def metric(self, name: str) -> float:
        """
        Look up a named metric for trigger evaluation.

        Args:
            name: One of SNAPSHOT_METRICS

        Returns:
            The metric value

        Raises:
            KeyError: If the metric name is unknown
        """
        values = {
            "health_score": self.health_score,
            "error_rate": self.application.error_rate,
            "response_time": self.application.response_time.average,
            "p95_latency": self.application.response_time.p95,
            "p99_latency": self.application.response_time.p99,
            "request_rate": self.application.request_rate,
            "memory_usage": self.system.memory_mb,
            "cpu_usage": self.system.cpu_percent,
            "disk_usage": self.system.disk_percent,
            "query_latency": self.store.query_latency.p95,
            "connection_pool": self.store.connection_pool_utilization,
            "operations_per_second": self.store.operations_per_second,
        }
        if name not in values:
            raise KeyError(f"Unknown snapshot metric: {name}")
        return float(values[name])

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "system": self.system.to_dict(),
            "application": self.application.to_dict(),
            "store": self.store.to_dict(),
            "health_score": self.health_score,
            "status": self.status.value,
            "degraded": self.degraded,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HealthSnapshot:
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            system=SystemMetrics.from_dict(data.get("system", {})),
            application=ApplicationMetrics.from_dict(data.get("application", {})),
            store=StoreMetrics.from_dict(data.get("store", {})),
            health_score=data["health_score"],
            status=HealthStatus(data["status"]),
            degraded=data.get("degraded", False),
            error=data.get("error"),
        )


@dataclass
class HealthSummary:
    """Aggregate health figures shown in the status record."""

    overall_health: float = 100.0
    system_health: float = 100.0
    data_integrity: float = 100.0
    performance: float = 100.0
    last_assessment: datetime | None = None

    @classmethod
    def from_snapshot(cls, snapshot: HealthSnapshot, data_integrity: float) -> HealthSummary:
        """
        Summarise a snapshot.

        Args:
            snapshot: Most recent health snapshot
            data_integrity: Percentage of processed documents without failures

        Returns:
            HealthSummary for the status record
        """
        system_penalty = 0.0
        if snapshot.system.cpu_percent > 80:
            system_penalty += 25
        if snapshot.system.disk_percent > 90:
            system_penalty += 25
        perf = 100.0 - min(100.0, snapshot.application.response_time.p95 / 50.0)
        return cls(
            overall_health=snapshot.health_score,
            system_health=max(0.0, 100.0 - system_penalty),
            data_integrity=data_integrity,
            performance=max(0.0, perf),
            last_assessment=snapshot.timestamp,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall_health": self.overall_health,
            "system_health": self.system_health,
            "data_integrity": self.data_integrity,
            "performance": self.performance,
            "last_assessment": format_timestamp(self.last_assessment),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HealthSummary:
        return cls(
            overall_health=data.get("overall_health", 100.0),
            system_health=data.get("system_health", 100.0),
            data_integrity=data.get("data_integrity", 100.0),
            performance=data.get("performance", 100.0),
            last_assessment=parse_timestamp(data.get("last_assessment")),
        )


# =============================================================================
# Alerting
# =============================================================================


@dataclass
class Alert:
    """
    Operator-facing notification.

    Alerts are immutable apart from acknowledgement and resolution.

    Attributes:
        severity: Alert severity used for channel filtering
        source: Component that raised the alert
        category: Grouping key used for per-channel rate limiting
        message: Human-readable summary
        details: Structured context
        id: Unique alert id
        timestamp: When the alert was raised
        acknowledged: Whether an operator acknowledged it
        resolved_at: When the alert was resolved, if it was
    """

    severity: AlertSeverity
    source: str
    category: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    acknowledged: bool = False
    resolved_at: datetime | None = None

    def acknowledge(self) -> None:
        self.acknowledged = True

    def resolve(self, when: datetime | None = None) -> None:
        self.resolved_at = when or datetime.now(UTC)

    @property
    def is_open(self) -> bool:
        """An alert is open until acknowledged or resolved."""
        return not self.acknowledged and self.resolved_at is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "severity": self.severity.value,
            "source": self.source,
            "category": self.category,
            "message": self.message,
            "details": self.details,
            "acknowledged": self.acknowledged,
            "resolved_at": format_timestamp(self.resolved_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Alert:
        return cls(
            id=data["id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            severity=AlertSeverity(data["severity"]),
            source=data["source"],
            category=data["category"],
            message=data["message"],
            details=data.get("details", {}),
            acknowledged=data.get("acknowledged", False),
            resolved_at=parse_timestamp(data.get("resolved_at")),
        )


# =============================================================================
# Rollback
# =============================================================================


@dataclass
class RollbackTrigger:
    """
    A rule that requests a rollback when a snapshot metric breaches a threshold.

    The definition fields come from the plan; ``last_triggered`` and
    ``trigger_count`` are owned by the RollbackTriggerEngine and only change
    when the trigger fires.

    Attributes:
        id: Unique trigger id
        name: Display name
        metric: Snapshot metric name (see SNAPSHOT_METRICS)
        operator: Comparison applied as ``metric <operator> threshold``
        threshold: Threshold value
        severity: Impact level of a fire
        automatic: Evaluated against every snapshot when True
        cooldown: Minimum time between two fires
        notifications: Channel names to notify in addition to the defaults
        last_triggered: Timestamp of the last fire
        trigger_count: Number of fires so far
    """

    id: str
    name: str
    metric: str
    operator: ComparisonOperator
    threshold: float
    severity: Severity = Severity.HIGH
    automatic: bool = True
    cooldown: timedelta = timedelta(minutes=5)
    notifications: tuple[str, ...] = ()
    last_triggered: datetime | None = None
    trigger_count: int = 0

    @property
    def condition(self) -> str:
        """Readable form of the condition, e.g. ``error_rate > 0.05``."""
        return f"{self.metric} {self.operator.value} {self.threshold:g}"

    def in_cooldown(self, now: datetime) -> bool:
        if self.last_triggered is None:
            return False
        return now - self.last_triggered < self.cooldown

    def record_fire(self, now: datetime) -> None:
        self.last_triggered = now
        self.trigger_count += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "condition": self.condition,
            "severity": self.severity.value,
            "automatic": self.automatic,
            "cooldown_ms": int(self.cooldown.total_seconds() * 1000),
            "last_triggered": format_timestamp(self.last_triggered),
            "trigger_count": self.trigger_count,
        }


RollbackAction = Callable[["RollbackContext"], Awaitable[dict[str, Any] | None]]
"""Async callable performing a rollback step; may return metrics to merge."""

ValidationCheck = Callable[["RollbackContext"], Awaitable[bool]]


@dataclass
class RollbackContext:
    """
    What a rollback step action receives.

    Attributes:
        execution: The execution in progress
        migration_id: Rollout being reverted
        details: Free-form data the steps share (e.g. restore results)
    """

    execution: RollbackExecution
    migration_id: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RollbackStep:
    """
    One step of a rollback plan.

    Attributes:
        name: Unique step name (dependencies refer to it)
        description: What the step does
        estimated_time: Expected duration; bounds the step timeout
        action: Async callable performing the step
        automated: False when the step expects operator involvement
        dependencies: Names of steps that must be COMPLETED first
        validations: Names of the checks this step verifies
        emergency_stop: A failure of this step halts the whole rollback
    """

    name: str
    description: str
    estimated_time: timedelta
    action: RollbackAction
    automated: bool = True
    dependencies: tuple[str, ...] = ()
    validations: tuple[str, ...] = ()
    emergency_stop: bool = False


@dataclass(frozen=True)
class RollbackValidation:
    """Plan-level check run after all steps."""

    name: str
    description: str
    check: ValidationCheck
    critical: bool = False
    timeout: timedelta = timedelta(seconds=60)


@dataclass(frozen=True)
class RollbackPlan:
    """
    Ordered recipe for reverting a rollout.

    Attributes:
        id: Plan id
        version: Schema version being reverted
        strategy: How aggressively to revert
        data_loss_risk: Expected data loss
        steps: Steps in execution order
        validations: Plan-level validations
    """

    id: str
    version: str
    steps: tuple[RollbackStep, ...]
    strategy: RollbackStrategy = RollbackStrategy.IMMEDIATE
    data_loss_risk: DataLossRisk = DataLossRisk.MINIMAL
    validations: tuple[RollbackValidation, ...] = ()

    @property
    def step_names(self) -> list[str]:
        return [step.name for step in self.steps]


@dataclass
class ValidationResult:
    name: str
    passed: bool
    message: str = ""
    critical: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "message": self.message,
            "critical": self.critical,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidationResult:
        return cls(**data)


@dataclass
class StepResult:
    """Outcome of one rollback step within an execution."""

    step_name: str
    status: StepStatus = StepStatus.PENDING
    started_at: datetime | None = None
    ended_at: datetime | None = None
    validations: list[ValidationResult] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_name": self.step_name,
            "status": self.status.value,
            "started_at": format_timestamp(self.started_at),
            "ended_at": format_timestamp(self.ended_at),
            "validations": [v.to_dict() for v in self.validations],
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepResult:
        return cls(
            step_name=data["step_name"],
            status=StepStatus(data["status"]),
            started_at=parse_timestamp(data.get("started_at")),
            ended_at=parse_timestamp(data.get("ended_at")),
            validations=[ValidationResult.from_dict(v) for v in data.get("validations", [])],
            error=data.get("error"),
        )


@dataclass
class RollbackMetrics:
    documents_reverted: int = 0
    collections_affected: int = 0
    validations_passed: int = 0
    validations_failed: int = 0
    error_count: int = 0
    time_elapsed_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "documents_reverted": self.documents_reverted,
            "collections_affected": self.collections_affected,
            "validations_passed": self.validations_passed,
            "validations_failed": self.validations_failed,
            "error_count": self.error_count,
            "time_elapsed_seconds": self.time_elapsed_seconds,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RollbackMetrics:
        return cls(**data)


@dataclass
class RollbackExecution:
    """
    A single run of a RollbackPlan.

    ``current_step`` is the index of the step being (or last) executed; it
    only ever increases, and a step that reached COMPLETED is never run
    again within the same execution.

    Attributes:
        plan_id: Plan being executed
        triggered_by: Trigger id, or "manual" / "emergency"
        reason: Why the rollback was started
        step_results: One entry per plan step, in plan order
        id: Execution id
        status: Execution lifecycle
        current_step: Index of the current step
        started_at: Start time
        ended_at: End time
        metrics: Accumulated rollback metrics
        validations: Results of the plan-level validations
    """

    plan_id: str
    triggered_by: str
    reason: str
    step_results: list[StepResult] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid4()))
    status: RollbackExecutionStatus = RollbackExecutionStatus.RUNNING
    current_step: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    ended_at: datetime | None = None
    metrics: RollbackMetrics = field(default_factory=RollbackMetrics)
    validations: list[ValidationResult] = field(default_factory=list)

    @classmethod
    def for_plan(cls, plan: RollbackPlan, triggered_by: str, reason: str) -> RollbackExecution:
        """Create a fresh execution with a PENDING result for every step."""
        return cls(
            plan_id=plan.id,
            triggered_by=triggered_by,
            reason=reason,
            step_results=[StepResult(step_name=name) for name in plan.step_names],
        )

    @property
    def total_steps(self) -> int:
        return len(self.step_results)

    @property
    def progress(self) -> float:
        """Percentage of steps that finished (completed, failed or skipped)."""
        if not self.step_results:
            return 100.0
        done = sum(
            1
            for result in self.step_results
            if result.status in (StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED)
        )
        return done / len(self.step_results) * 100.0

    def advance_to(self, index: int) -> None:
        """
        Move the step cursor forward.

        Raises:
            ValueError: If the cursor would move backwards
        """
        if index < self.current_step:
            raise ValueError(
                f"Rollback step cursor cannot move backwards ({self.current_step} -> {index})"
            )
        self.current_step = index

    def result_for(self, step_name: str) -> StepResult:
        for result in self.step_results:
            if result.step_name == step_name:
                return result
        raise KeyError(step_name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "plan_id": self.plan_id,
            "triggered_by": self.triggered_by,
            "reason": self.reason,
            "status": self.status.value,
            "current_step": self.current_step,
            "total_steps": self.total_steps,
            "progress": self.progress,
            "started_at": self.started_at.isoformat(),
            "ended_at": format_timestamp(self.ended_at),
            "metrics": self.metrics.to_dict(),
            "step_results": [r.to_dict() for r in self.step_results],
            "validations": [v.to_dict() for v in self.validations],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RollbackExecution:
        return cls(
            id=data["id"],
            plan_id=data["plan_id"],
            triggered_by=data["triggered_by"],
            reason=data["reason"],
            status=RollbackExecutionStatus(data["status"]),
            current_step=data.get("current_step", 0),
            started_at=datetime.fromisoformat(data["started_at"]),
            ended_at=parse_timestamp(data.get("ended_at")),
            metrics=RollbackMetrics.from_dict(data.get("metrics", {})),
            step_results=[StepResult.from_dict(r) for r in data.get("step_results", [])],
            validations=[ValidationResult.from_dict(v) for v in data.get("validations", [])],
        )


@dataclass
class RollbackEvent:
    """Entry in a rollout's rollback history."""

    phase: int
    trigger: str
    reason: str
    automatic: bool
    success: bool
    documents_affected: int = 0
    execution_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "phase": self.phase,
            "trigger": self.trigger,
            "reason": self.reason,
            "automatic": self.automatic,
            "success": self.success,
            "documents_affected": self.documents_affected,
            "execution_id": self.execution_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RollbackEvent:
        return cls(
            timestamp=datetime.fromisoformat(data["timestamp"]),
            phase=data["phase"],
            trigger=data["trigger"],
            reason=data["reason"],
            automatic=data["automatic"],
            success=data["success"],
            documents_affected=data.get("documents_affected", 0),
            execution_id=data.get("execution_id"),
        )


__all__ = [
    "format_timestamp",
    "parse_timestamp",
    "Environment",
    "PhaseStatus",
    "MigrationState",
    "HealthStatus",
    "AlertSeverity",
    "Severity",
    "ComparisonOperator",
    "RollbackStrategy",
    "DataLossRisk",
    "StepStatus",
    "RollbackExecutionStatus",
    "SystemMetrics",
    "ResponseTimeMetrics",
    "ApplicationMetrics",
    "StoreMetrics",
    "SNAPSHOT_METRICS",
    "HealthSnapshot",
    "HealthSummary",
    "Alert",
    "RollbackTrigger",
    "RollbackAction",
    "ValidationCheck",
    "RollbackContext",
    "RollbackStep",
    "RollbackValidation",
    "RollbackPlan",
    "ValidationResult",
    "StepResult",
    "RollbackMetrics",
    "RollbackExecution",
    "RollbackEvent",
]
