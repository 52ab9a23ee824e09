"""
Progression gate and phase readiness.

The gate decides whether a completed phase may hand over to the next one.
Every enabled check must pass:

    - health stability: current health score >= minimum
    - error rate: current error rate <= maximum
    - performance: current P95 latency <= maximum
    - data integrity: the snapshot is not degraded and the phase migrated
      without document failures
    - minimum duration: the phase ran at least ``minimum_duration``
    - phase acceptance: the phase's own health, error-rate and latency limits

A passing gate still needs operator approval when the plan disables
automatic progression; that decision belongs to the orchestrator.

``evaluate_readiness`` is the entry counterpart: it decides whether a phase
may start at all.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime

from phasedrollout.models import Alert, AlertSeverity, HealthSnapshot, HealthStatus
from phasedrollout.observability import (
    ATTR_PHASE_NUMBER,
    Tracer,
    create_tracer,
)
from phasedrollout.plan import ProgressionCriteria
from phasedrollout.status import Phase

logger = logging.getLogger(__name__)

_SCORE_ABOVE = re.compile(r"^health_score_above_(\d+(?:\.\d+)?)$")
_ERRORS_BELOW = re.compile(r"^error_rate_below_(\d+(?:\.\d+)?)_percent$")


@dataclass(frozen=True)
class GateDecision:
    """
    Result of a gate evaluation.

    Attributes:
        passed: True if every enabled check passed
        failures: Human-readable reasons for each failed check
    """

    passed: bool
    failures: tuple[str, ...] = field(default_factory=tuple)

    def __bool__(self) -> bool:
        return self.passed


class ProgressionGate:
    """
    Evaluates ProgressionCriteria for a phase.

    Example:
        >>> gate = ProgressionGate()
        >>> gate.can_advance(phase, plan.progression_criteria, snapshot)
        True
    """

    def __init__(
        self,
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled

    def evaluate(
        self,
        phase: Phase,
        criteria: ProgressionCriteria,
        health: HealthSnapshot | None,
        now: datetime | None = None,
    ) -> GateDecision:
        """
        Evaluate all enabled checks.

        Args:
            phase: The phase that just finished its window
            criteria: Plan progression criteria
            health: Latest health snapshot (a missing snapshot fails every
                health-based check)
            now: Evaluation time, used for the elapsed-time check

        Returns:
            GateDecision with the failed checks
        """
        with self._tracer.span(
            "phasedrollout.gate.evaluate",
            {ATTR_PHASE_NUMBER: phase.number},
        ):
            failures: list[str] = []

            if health is None:
                if (
                    criteria.health_stable
                    or criteria.errors_within_threshold
                    or criteria.performance_acceptable
                ):
                    failures.append("no health snapshot available")
            else:
                if criteria.health_stable and health.health_score < criteria.minimum_health_score:
                    failures.append(
                        f"health score {health.health_score:.1f} below "
                        f"{criteria.minimum_health_score:.1f}"
                    )
                error_rate = health.application.error_rate
                if criteria.errors_within_threshold and error_rate > criteria.maximum_error_rate:
                    failures.append(
                        f"error rate {error_rate:.4f} above {criteria.maximum_error_rate:.4f}"
                    )
                p95 = health.application.response_time.p95
                if criteria.performance_acceptable and p95 > criteria.maximum_response_time:
                    failures.append(
                        f"P95 latency {p95:.0f}ms above {criteria.maximum_response_time:.0f}ms"
                    )
                if criteria.data_integrity_maintained and health.degraded:
                    failures.append("latest snapshot is degraded")

                limits = phase.criteria
                if health.health_score < limits.health_score_minimum:
                    failures.append(
                        f"health score {health.health_score:.1f} below phase minimum "
                        f"{limits.health_score_minimum:.1f}"
                    )
                if error_rate > limits.error_rate_maximum:
                    failures.append(
                        f"error rate {error_rate:.4f} above phase maximum "
                        f"{limits.error_rate_maximum:.4f}"
                    )
                if p95 > limits.response_time_maximum:
                    failures.append(
                        f"P95 latency {p95:.0f}ms above phase maximum "
                        f"{limits.response_time_maximum:.0f}ms"
                    )

            if criteria.data_integrity_maintained and phase.metrics.documents_failed > 0:
                failures.append(f"{phase.metrics.documents_failed} documents failed to migrate")

            elapsed = phase.elapsed(now)
            if elapsed < criteria.minimum_duration:
                failures.append(
                    f"phase ran {elapsed.total_seconds():.0f}s, minimum is "
                    f"{criteria.minimum_duration.total_seconds():.0f}s"
                )

            if failures:
                logger.info(
                    "Progression gate closed after phase %d: %s",
                    phase.number,
                    "; ".join(failures),
                )
            return GateDecision(passed=not failures, failures=tuple(failures))

    def can_advance(
        self,
        phase: Phase,
        criteria: ProgressionCriteria,
        health: HealthSnapshot | None,
        now: datetime | None = None,
    ) -> bool:
        """Return True if every enabled progression check passes."""
        return self.evaluate(phase, criteria, health, now).passed


def _criterion_holds(
    name: str,
    phase: Phase,
    snapshot: HealthSnapshot,
    open_alerts: Sequence[Alert],
) -> bool | None:
    match = _SCORE_ABOVE.match(name)
    if match:
        return snapshot.health_score >= float(match.group(1))
    match = _ERRORS_BELOW.match(name)
    if match:
        return snapshot.application.error_rate < float(match.group(1)) / 100
    if name == "no_critical_alerts":
        return not any(
            a.severity == AlertSeverity.CRITICAL and a.is_open for a in open_alerts
        )
    if name == "performance_within_baseline":
        return snapshot.application.response_time.p95 <= phase.criteria.response_time_maximum
    return None


def evaluate_readiness(
    phase: Phase,
    snapshot: HealthSnapshot,
    open_alerts: Sequence[Alert] = (),
) -> GateDecision:
    """
    Decide whether a phase may start.

    The snapshot must not be CRITICAL and every criterion named in
    ``phase.criteria.required`` must hold. Recognised names are
    ``health_score_above_<n>``, ``error_rate_below_<n>_percent``,
    ``no_critical_alerts`` and ``performance_within_baseline``; unknown
    names are logged and ignored. Optional criteria are only logged.

    Args:
        phase: Phase about to start
        snapshot: Fresh health snapshot
        open_alerts: Alerts that are still open

    Returns:
        GateDecision with the unmet criteria
    """
    failures: list[str] = []
    if snapshot.status == HealthStatus.CRITICAL:
        failures.append(f"system health is critical (score {snapshot.health_score:.1f})")

    for name in phase.criteria.required:
        holds = _criterion_holds(name, phase, snapshot, open_alerts)
        if holds is None:
            logger.warning("Unknown readiness criterion '%s' ignored", name)
        elif not holds:
            failures.append(name)

    for name in phase.criteria.optional:
        if _criterion_holds(name, phase, snapshot, open_alerts) is False:
            logger.info("Optional criterion '%s' not met for phase %d", name, phase.number)

    return GateDecision(passed=not failures, failures=tuple(failures))


__all__ = [
    "GateDecision",
    "ProgressionGate",
    "evaluate_readiness",
]
