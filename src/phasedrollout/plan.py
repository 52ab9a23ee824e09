"""
Migration plan input schema.

A MigrationPlan is the immutable document an operator submits to start a
phased rollout. It is validated with pydantic and accepts the camelCase
JSON produced by the deployment tooling (snake_case works too). Durations
are given in milliseconds in JSON and exposed as ``timedelta``.

Usage:
    >>> from phasedrollout.plan import MigrationPlan, create_default_plan
    >>>
    >>> plan = MigrationPlan.model_validate_json(path.read_text())
    >>> plan = create_default_plan("mig-42", "2.0.0", "staging")
    >>> plan.phases[0].percentage
    10.0

See Also:
    - phasedrollout.status: Runtime phase state derived from a plan
"""

from __future__ import annotations

import json
import re
from datetime import timedelta
from pathlib import Path
from typing import Annotated, Any

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
    ValidationError,
    model_validator,
)
from pydantic.alias_generators import to_camel

from phasedrollout.exceptions import PlanError
from phasedrollout.models import (
    SNAPSHOT_METRICS,
    AlertSeverity,
    ComparisonOperator,
    Environment,
    RollbackTrigger,
    Severity,
)


def _to_timedelta(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, int | float):
        return timedelta(milliseconds=value)
    return value


def _to_milliseconds(value: timedelta) -> int:
    return int(value.total_seconds() * 1000)


Milliseconds = Annotated[
    timedelta,
    BeforeValidator(_to_timedelta),
    PlainSerializer(_to_milliseconds, return_type=int, when_used="json"),
]
"""A duration written as integer milliseconds in plan JSON."""

_CONDITION_PATTERN = re.compile(
    r"^\s*(?P<metric>[a-z_]+)\s*(?P<op>>=|<=|==|!=|>|<)\s*(?P<threshold>-?\d+(?:\.\d+)?)\s*$"
)


def parse_condition(condition: str) -> tuple[str, ComparisonOperator, float]:
    """
    Parse a condition string such as ``"error_rate > 0.05"``.

    Args:
        condition: ``<metric> <operator> <number>``

    Returns:
        Tuple of (metric, operator, threshold)

    Raises:
        ValueError: If the condition cannot be parsed or names an unknown metric
    """
    match = _CONDITION_PATTERN.match(condition)
    if match is None:
        raise ValueError(f"Cannot parse condition: {condition!r}")
    metric = match.group("metric")
    if metric not in SNAPSHOT_METRICS:
        raise ValueError(f"Unknown metric in condition: {metric}")
    return metric, ComparisonOperator(match.group("op")), float(match.group("threshold"))


class _PlanModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class Threshold(_PlanModel):
    warning: float
    critical: float


class PhaseCriteria(_PlanModel):
    """
    Readiness and acceptance criteria of a phase.

    Attributes:
        required: Named criteria that must hold before the phase starts
        optional: Named criteria that are reported but not enforced
        health_score_minimum: Minimum health score while the phase runs
        error_rate_maximum: Maximum error rate while the phase runs
        response_time_maximum: Maximum P95 latency (ms) while the phase runs
        validation_checks: Informational check names shown in the status
    """

    required: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()
    health_score_minimum: float = 80.0
    error_rate_maximum: float = 0.05
    response_time_maximum: float = 2000.0
    validation_checks: tuple[str, ...] = ()


class RollbackConditionDefinition(_PlanModel):
    """
    Phase-local rollback condition.

    When ``duration`` is set the breach must persist for that long across
    consecutive snapshots before it counts.
    """

    metric: str
    operator: ComparisonOperator
    threshold: float
    duration: Milliseconds | None = None
    description: str = ""

    @model_validator(mode="after")
    def _check_metric(self) -> RollbackConditionDefinition:
        if self.metric not in SNAPSHOT_METRICS:
            raise ValueError(f"Unknown metric: {self.metric}")
        return self


class PhaseDefinition(_PlanModel):
    """
    One percentage step of a rollout.

    Attributes:
        phase_number: 1-based sequence number
        name: Display name
        percentage: Share of the fleet migrated once the phase completes
        target_documents: Documents the phase migrates
        duration: Observation window of the phase
        criteria: Readiness and acceptance criteria
        rollback_conditions: Phase-local rollback conditions
        monitoring_interval: Time between health snapshots
    """

    phase_number: int = Field(ge=1)
    name: str
    percentage: float = Field(gt=0, le=100)
    target_documents: int = Field(ge=0)
    duration: Milliseconds
    criteria: PhaseCriteria = Field(default_factory=PhaseCriteria)
    rollback_conditions: tuple[RollbackConditionDefinition, ...] = ()
    monitoring_interval: Milliseconds = timedelta(seconds=30)

    @model_validator(mode="after")
    def _check_durations(self) -> PhaseDefinition:
        if self.duration <= timedelta(0):
            raise ValueError("phase duration must be positive")
        if self.monitoring_interval <= timedelta(0):
            raise ValueError("monitoring interval must be positive")
        return self


class RollbackTriggerDefinition(_PlanModel):
    """
    Plan-level rollback trigger.

    Either give ``metric``/``operator``/``threshold`` or a ``condition``
    string like ``"health_score < 70"``.
    """

    id: str
    name: str
    metric: str
    operator: ComparisonOperator
    threshold: float
    severity: Severity = Severity.HIGH
    automatic: bool = True
    cooldown_period: Milliseconds = timedelta(minutes=5)
    notifications: tuple[str, ...] = ()

    @model_validator(mode="before")
    @classmethod
    def _expand_condition(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("condition") and "metric" not in data:
            metric, op, threshold = parse_condition(data["condition"])
            data = {**data, "metric": metric, "operator": op, "threshold": threshold}
            data.pop("condition")
        return data

    @model_validator(mode="after")
    def _check_metric(self) -> RollbackTriggerDefinition:
        if self.metric not in SNAPSHOT_METRICS:
            raise ValueError(f"Unknown metric: {self.metric}")
        return self

    def to_trigger(self) -> RollbackTrigger:
        """Create the runtime trigger owned by the trigger engine."""
        return RollbackTrigger(
            id=self.id,
            name=self.name,
            metric=self.metric,
            operator=self.operator,
            threshold=self.threshold,
            severity=self.severity,
            automatic=self.automatic,
            cooldown=self.cooldown_period,
            notifications=self.notifications,
        )


class HealthThresholds(_PlanModel):
    """Warning/critical thresholds used for health alerts."""

    health_score: Threshold = Threshold(warning=85, critical=70)
    error_rate: Threshold = Threshold(warning=0.01, critical=0.05)
    response_time: Threshold = Threshold(warning=1000, critical=3000)
    throughput: Threshold = Threshold(warning=10, critical=5)
    memory_usage: Threshold = Threshold(warning=512, critical=1024)
    cpu_usage: Threshold = Threshold(warning=70, critical=80)
    disk_usage: Threshold = Threshold(warning=80, critical=90)
    connection_pool: Threshold = Threshold(warning=0.8, critical=0.9)
    query_latency: Threshold = Threshold(warning=500, critical=1000)


class ProgressionCriteria(_PlanModel):
    """
    Conditions the progression gate checks before the next phase.

    The boolean flags switch individual checks on or off.
    """

    health_stable: bool = True
    errors_within_threshold: bool = True
    performance_acceptable: bool = True
    data_integrity_maintained: bool = True
    minimum_duration: Milliseconds = timedelta(minutes=30)
    minimum_health_score: float = 80.0
    maximum_error_rate: float = 0.05
    maximum_response_time: float = 2000.0


class MonitoringConfig(_PlanModel):
    metrics_retention: Milliseconds = timedelta(hours=1)
    alerting_enabled: bool = True
    max_alert_history: int = Field(default=100, ge=1)


class NotificationChannelConfig(_PlanModel):
    """
    Notification channel settings.

    ``config`` holds type-specific keys: ``url`` and ``headers`` for
    webhooks, ``webhookUrl`` (or ``webhook_url``) for Slack.
    """

    type: str
    name: str
    enabled: bool = True
    alert_levels: tuple[AlertSeverity, ...] = tuple(AlertSeverity)
    rate_limit: Milliseconds = timedelta(0)
    config: dict[str, Any] = Field(default_factory=dict)


def _default_channels() -> tuple[NotificationChannelConfig, ...]:
    return (NotificationChannelConfig(type="log", name="log"),)


class MigrationPlan(_PlanModel):
    """
    Immutable description of a phased rollout.

    Attributes:
        migration_id: Unique rollout id
        version: Target schema version
        environment: staging or production
        phases: Ordered phases
        rollback_triggers: Plan-wide rollback triggers
        health_thresholds: Thresholds for health alerts
        progression_criteria: Progression gate configuration
        monitoring: Snapshot retention and alert history settings
        notification_channels: Where alerts are delivered
        emergency_contacts: Contacts listed in critical alerts
        automatic_progression: Advance without approval when the gate passes
        manual_approval_required: Wait for operator approval between phases
    """

    migration_id: str = Field(min_length=1)
    version: str
    environment: Environment
    phases: tuple[PhaseDefinition, ...] = Field(min_length=1)
    rollback_triggers: tuple[RollbackTriggerDefinition, ...] = ()
    health_thresholds: HealthThresholds = Field(default_factory=HealthThresholds)
    progression_criteria: ProgressionCriteria = Field(default_factory=ProgressionCriteria)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    notification_channels: tuple[NotificationChannelConfig, ...] = Field(
        default_factory=_default_channels
    )
    emergency_contacts: tuple[str, ...] = ()
    automatic_progression: bool = True
    manual_approval_required: bool = False

    @model_validator(mode="after")
    def _check_consistency(self) -> MigrationPlan:
        previous = 0.0
        for expected, phase in enumerate(self.phases, start=1):
            if phase.phase_number != expected:
                raise ValueError(
                    f"phase numbers must run 1..n in order, got {phase.phase_number} "
                    f"at position {expected}"
                )
            if phase.percentage < previous:
                raise ValueError(f"phase {phase.phase_number} percentage decreases")
            previous = phase.percentage
        ids = [trigger.id for trigger in self.rollback_triggers]
        if len(ids) != len(set(ids)):
            raise ValueError("rollback trigger ids must be unique")
        return self

    @property
    def requires_approval(self) -> bool:
        """True when phases may not advance without an operator."""
        return self.manual_approval_required or not self.automatic_progression

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)


def load_plan(path: str | Path) -> MigrationPlan:
    """
    Load and validate a plan document.

    Args:
        path: Path to a JSON plan

    Returns:
        The validated plan

    Raises:
        PlanError: If the file cannot be read or fails validation
    """
    try:
        raw = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise PlanError(f"Cannot read plan {path}: {e}") from e
    try:
        return MigrationPlan.model_validate(raw)
    except ValidationError as e:
        raise PlanError(f"Invalid plan {path}: {e}") from e


def create_default_plan(
    migration_id: str,
    version: str,
    environment: Environment | str,
) -> MigrationPlan:
    """
    Build the standard three-phase plan (10%, 50%, 100%).

    Production gets longer observation windows, a longer minimum duration
    and manual approval between phases; staging advances automatically.

    Args:
        migration_id: Rollout id
        version: Target schema version
        environment: staging or production

    Returns:
        A validated MigrationPlan
    """
    env = Environment(environment)
    prod = env.is_production

    def hours(prod_hours: float, staging_hours: float) -> timedelta:
        return timedelta(hours=prod_hours if prod else staging_hours)

    phases = (
        PhaseDefinition(
            phase_number=1,
            name="Initial Rollout (10%)",
            percentage=10,
            target_documents=1000,
            duration=hours(1, 0.5),
            criteria=PhaseCriteria(
                required=("health_score_above_90", "error_rate_below_1_percent"),
                optional=("performance_within_baseline",),
                health_score_minimum=90,
                error_rate_maximum=0.01,
                response_time_maximum=1000,
                validation_checks=("data_integrity", "user_impact_minimal"),
            ),
            rollback_conditions=(
                RollbackConditionDefinition(
                    metric="error_rate",
                    operator=ComparisonOperator.GT,
                    threshold=0.05,
                    duration=timedelta(minutes=5),
                    description="Error rate exceeds 5% for 5 minutes",
                ),
            ),
            monitoring_interval=timedelta(seconds=30),
        ),
        PhaseDefinition(
            phase_number=2,
            name="Expanded Rollout (50%)",
            percentage=50,
            target_documents=5000,
            duration=hours(2, 1),
            criteria=PhaseCriteria(
                required=("health_score_above_90", "no_critical_alerts"),
                health_score_minimum=85,
                error_rate_maximum=0.02,
                response_time_maximum=1500,
                validation_checks=("data_integrity", "performance_stable"),
            ),
            rollback_conditions=(
                RollbackConditionDefinition(
                    metric="error_rate",
                    operator=ComparisonOperator.GT,
                    threshold=0.03,
                    duration=timedelta(minutes=10),
                    description="Error rate exceeds 3% for 10 minutes",
                ),
            ),
            monitoring_interval=timedelta(seconds=60),
        ),
        PhaseDefinition(
            phase_number=3,
            name="Full Rollout (100%)",
            percentage=100,
            target_documents=10000,
            duration=hours(4, 2),
            criteria=PhaseCriteria(
                required=("health_score_above_90",),
                health_score_minimum=80,
                error_rate_maximum=0.05,
                response_time_maximum=2000,
                validation_checks=("data_integrity", "system_stable"),
            ),
            rollback_conditions=(
                RollbackConditionDefinition(
                    metric="error_rate",
                    operator=ComparisonOperator.GT,
                    threshold=0.1,
                    duration=timedelta(minutes=15),
                    description="Error rate exceeds 10% for 15 minutes",
                ),
            ),
            monitoring_interval=timedelta(seconds=120),
        ),
    )

    triggers = (
        RollbackTriggerDefinition(
            id="error_rate_critical",
            name="Critical Error Rate",
            metric="error_rate",
            operator=ComparisonOperator.GT,
            threshold=0.05,
            severity=Severity.CRITICAL,
            automatic=True,
            cooldown_period=timedelta(minutes=5),
            notifications=("log",),
        ),
        RollbackTriggerDefinition(
            id="health_score_degraded",
            name="Health Score Degradation",
            metric="health_score",
            operator=ComparisonOperator.LT,
            threshold=70,
            severity=Severity.HIGH,
            automatic=True,
            cooldown_period=timedelta(minutes=10),
            notifications=("log",),
        ),
    )

    return MigrationPlan(
        migration_id=migration_id,
        version=version,
        environment=env,
        phases=phases,
        rollback_triggers=triggers,
        progression_criteria=ProgressionCriteria(
            minimum_duration=timedelta(minutes=30 if prod else 15),
        ),
        automatic_progression=not prod,
        manual_approval_required=prod,
    )


__all__ = [
    "Milliseconds",
    "parse_condition",
    "Threshold",
    "PhaseCriteria",
    "RollbackConditionDefinition",
    "PhaseDefinition",
    "RollbackTriggerDefinition",
    "HealthThresholds",
    "ProgressionCriteria",
    "MonitoringConfig",
    "NotificationChannelConfig",
    "MigrationPlan",
    "load_plan",
    "create_default_plan",
]
