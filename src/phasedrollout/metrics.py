"""
OpenTelemetry metrics for phased rollouts.

Metrics Exposed:
    - phasedrollout.phase.duration (Histogram): Time spent in each phase
    - phasedrollout.documents.migrated (Counter): Documents migrated by phases
    - phasedrollout.health.score (Gauge): Latest composite health score
    - phasedrollout.trigger.fires (Counter): Rollback trigger fires
    - phasedrollout.rollbacks (Counter): Rollback executions by outcome
    - phasedrollout.rollback.duration (Histogram): Rollback execution time
    - phasedrollout.alerts (Counter): Alerts dispatched by severity

All metrics carry the 'migration_id' and 'environment' attributes.

Example:
    >>> metrics = RolloutMetrics("mig-42", "staging")
    >>> metrics.record_documents_migrated(1000, phase_number=1)
    >>> metrics.record_health_score(92.5)
    >>> metrics.get_snapshot().documents_migrated
    1000
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import CallbackOptions, NoOpMeter, Observation

METER_NAME = "phasedrollout"


@dataclass(frozen=True)
class RolloutMetricSnapshot:
    """
    In-process view of what was reported to OpenTelemetry.

    Attributes:
        documents_migrated: Total documents migrated
        health_score: Latest health score
        trigger_fires: Trigger fires by trigger id
        rollbacks: Rollback executions by final status
        alerts: Alerts by severity
        phase_durations: Phase number to duration in seconds
    """

    documents_migrated: int = 0
    health_score: float = 100.0
    trigger_fires: dict[str, int] = field(default_factory=dict)
    rollbacks: dict[str, int] = field(default_factory=dict)
    alerts: dict[str, int] = field(default_factory=dict)
    phase_durations: dict[int, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "documents_migrated": self.documents_migrated,
            "health_score": self.health_score,
            "trigger_fires": dict(self.trigger_fires),
            "rollbacks": dict(self.rollbacks),
            "alerts": dict(self.alerts),
            "phase_durations": {str(k): v for k, v in self.phase_durations.items()},
        }


@dataclass
class RolloutMetrics:
    """
    Container for rollout metric instruments.

    When ``enable_metrics`` is False the instruments come from the
    OpenTelemetry no-op meter, so recording is always safe.

    Attributes:
        migration_id: Rollout identifier for metric labels
        environment: Environment label
        enable_metrics: Whether metrics are exported (default True)
    """

    migration_id: str
    environment: str
    enable_metrics: bool = True

    _meter: Any = field(default=None, init=False, repr=False)
    _phase_duration_histogram: Any = field(default=None, init=False, repr=False)
    _documents_counter: Any = field(default=None, init=False, repr=False)
    _trigger_counter: Any = field(default=None, init=False, repr=False)
    _rollback_counter: Any = field(default=None, init=False, repr=False)
    _rollback_duration_histogram: Any = field(default=None, init=False, repr=False)
    _alert_counter: Any = field(default=None, init=False, repr=False)

    _health_score: float = field(default=100.0, init=False, repr=False)
    _documents_migrated: int = field(default=0, init=False, repr=False)
    _trigger_fires: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _rollbacks: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _alerts: dict[str, int] = field(default_factory=dict, init=False, repr=False)
    _phase_durations: dict[int, float] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.enable_metrics:
            self._meter = metrics.get_meter(METER_NAME, version="0.1.0")
        else:
            self._meter = NoOpMeter(METER_NAME)

        self._phase_duration_histogram = self._meter.create_histogram(
            name="phasedrollout.phase.duration",
            unit="s",
            description="Time spent in each rollout phase in seconds",
        )
        self._documents_counter = self._meter.create_counter(
            name="phasedrollout.documents.migrated",
            unit="documents",
            description="Documents migrated by rollout phases",
        )
        self._meter.create_observable_gauge(
            name="phasedrollout.health.score",
            callbacks=[self._observe_health_score],
            unit="1",
            description="Latest composite health score (0-100)",
        )
        self._trigger_counter = self._meter.create_counter(
            name="phasedrollout.trigger.fires",
            unit="fires",
            description="Rollback trigger fires",
        )
        self._rollback_counter = self._meter.create_counter(
            name="phasedrollout.rollbacks",
            unit="rollbacks",
            description="Rollback executions by outcome",
        )
        self._rollback_duration_histogram = self._meter.create_histogram(
            name="phasedrollout.rollback.duration",
            unit="s",
            description="Rollback execution time in seconds",
        )
        self._alert_counter = self._meter.create_counter(
            name="phasedrollout.alerts",
            unit="alerts",
            description="Alerts dispatched by severity",
        )

    def _base_attributes(self) -> dict[str, str]:
        return {
            "migration_id": self.migration_id,
            "environment": self.environment,
        }

    def _observe_health_score(self, options: CallbackOptions) -> Iterable[Observation]:
        yield Observation(value=self._health_score, attributes=self._base_attributes())

    def record_phase_duration(self, phase_number: int, seconds: float, status: str) -> None:
        attrs = {**self._base_attributes(), "phase": str(phase_number), "status": status}
        self._phase_duration_histogram.record(seconds, attrs)
        self._phase_durations[phase_number] = seconds

    def record_documents_migrated(self, count: int, phase_number: int) -> None:
        if count <= 0:
            return
        self._documents_counter.add(count, {**self._base_attributes(), "phase": str(phase_number)})
        self._documents_migrated += count

    def record_health_score(self, score: float) -> None:
        self._health_score = score

    def record_trigger_fire(self, trigger_id: str) -> None:
        self._trigger_counter.add(1, {**self._base_attributes(), "trigger_id": trigger_id})
        self._trigger_fires[trigger_id] = self._trigger_fires.get(trigger_id, 0) + 1

    def record_rollback(self, status: str, seconds: float) -> None:
        attrs = {**self._base_attributes(), "status": status}
        self._rollback_counter.add(1, attrs)
        self._rollback_duration_histogram.record(seconds, attrs)
        self._rollbacks[status] = self._rollbacks.get(status, 0) + 1

    def record_alert(self, severity: str) -> None:
        self._alert_counter.add(1, {**self._base_attributes(), "severity": severity})
        self._alerts[severity] = self._alerts.get(severity, 0) + 1

    def get_snapshot(self) -> RolloutMetricSnapshot:
        return RolloutMetricSnapshot(
            documents_migrated=self._documents_migrated,
            health_score=self._health_score,
            trigger_fires=dict(self._trigger_fires),
            rollbacks=dict(self._rollbacks),
            alerts=dict(self._alerts),
            phase_durations=dict(self._phase_durations),
        )


__all__ = [
    "METER_NAME",
    "RolloutMetricSnapshot",
    "RolloutMetrics",
]
