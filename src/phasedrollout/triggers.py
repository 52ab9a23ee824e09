"""
Rollback trigger evaluation.

The RollbackTriggerEngine compares every health snapshot against the
plan's automatic rollback triggers and the current phase's rollback
conditions. It owns the mutable trigger state (``last_triggered`` and
``trigger_count``), which only changes when a trigger actually fires.

Rules:
    - Only triggers with ``automatic=True`` are evaluated; manual triggers
      are fired explicitly with ``fire_manual``.
    - A trigger inside its cooldown (measured against the snapshot
      timestamp) is skipped.
    - Snapshots must arrive in timestamp order; an older snapshot is
      rejected and evaluates nothing.
    - A phase condition with a ``duration`` must be breached continuously
      for that long before it counts.
    - Fire history is exported into the status record and restored when a
      run resumes, so a cooldown spans process restarts.

Usage:
    >>> engine = RollbackTriggerEngine([t.to_trigger() for t in plan.rollback_triggers])
    >>> fired = engine.evaluate(snapshot)
    >>> if fired:
    ...     raise RollbackTriggerFired(fired)
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from phasedrollout.models import (
    HealthSnapshot,
    RollbackTrigger,
    format_timestamp,
    parse_timestamp,
)
from phasedrollout.observability import (
    ATTR_TRIGGER_COUNT,
    ATTR_TRIGGER_ID,
    Tracer,
    create_tracer,
)
from phasedrollout.plan import RollbackConditionDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConditionBreach:
    """A phase rollback condition that held long enough to count."""

    condition: RollbackConditionDefinition
    value: float
    since: datetime

    @property
    def description(self) -> str:
        c = self.condition
        return c.description or f"{c.metric} {c.operator.value} {c.threshold:g}"


class RollbackTriggerEngine:
    """
    Evaluates rollback triggers and phase conditions against snapshots.

    Example:
        >>> engine = RollbackTriggerEngine(triggers)
        >>> engine.evaluate(snapshot)
        [RollbackTrigger(id='error_rate_critical', ...)]
    """

    def __init__(
        self,
        triggers: Iterable[RollbackTrigger] = (),
        *,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._triggers: dict[str, RollbackTrigger] = {t.id: t for t in triggers}
        self._last_evaluated: datetime | None = None
        # condition index -> first timestamp of the current breach streak
        self._breach_started: dict[int, datetime] = {}

    @property
    def triggers(self) -> list[RollbackTrigger]:
        return list(self._triggers.values())

    def get(self, trigger_id: str) -> RollbackTrigger:
        return self._triggers[trigger_id]

    def _accept(self, snapshot: HealthSnapshot) -> bool:
        if self._last_evaluated is not None and snapshot.timestamp < self._last_evaluated:
            logger.warning(
                "Rejecting out-of-order snapshot %s (last evaluated %s)",
                snapshot.timestamp.isoformat(),
                self._last_evaluated.isoformat(),
            )
            return False
        self._last_evaluated = snapshot.timestamp
        return True

    def evaluate(
        self,
        snapshot: HealthSnapshot,
        triggers: Sequence[RollbackTrigger] | None = None,
    ) -> list[RollbackTrigger]:
        """
        Evaluate automatic triggers against a snapshot.

        Args:
            snapshot: The newest health snapshot
            triggers: Triggers to evaluate (defaults to the engine's own)

        Returns:
            The triggers that fired, in evaluation order
        """
        candidates = list(triggers) if triggers is not None else self.triggers
        with self._tracer.span(
            "phasedrollout.triggers.evaluate",
            {ATTR_TRIGGER_COUNT: len(candidates)},
        ):
            if not self._accept(snapshot):
                return []

            now = snapshot.timestamp
            fired: list[RollbackTrigger] = []
            for trigger in candidates:
                if not trigger.automatic:
                    continue
                if trigger.in_cooldown(now):
                    logger.debug("Trigger %s in cooldown", trigger.id)
                    continue
                value = snapshot.metric(trigger.metric)
                if trigger.operator.evaluate(value, trigger.threshold):
                    trigger.record_fire(now)
                    logger.warning(
                        "Rollback trigger fired: %s (%s, observed %g)",
                        trigger.name,
                        trigger.condition,
                        value,
                    )
                    fired.append(trigger)
            return fired

    def evaluate_conditions(
        self,
        snapshot: HealthSnapshot,
        conditions: Sequence[RollbackConditionDefinition],
    ) -> list[ConditionBreach]:
        """
        Evaluate phase-local rollback conditions.

        Conditions without a duration count on the first breaching snapshot.
        Conditions with a duration count once consecutive breaching
        snapshots span at least that duration; any non-breaching snapshot
        resets the streak.

        Args:
            snapshot: The newest health snapshot (same ordering rules apply)
            conditions: The phase's rollback conditions

        Returns:
            Conditions that are breached
        """
        if not self._accept(snapshot):
            return []
        breaches: list[ConditionBreach] = []
        for index, condition in enumerate(conditions):
            value = snapshot.metric(condition.metric)
            if not condition.operator.evaluate(value, condition.threshold):
                self._breach_started.pop(index, None)
                continue
            since = self._breach_started.setdefault(index, snapshot.timestamp)
            if condition.duration is None or snapshot.timestamp - since >= condition.duration:
                breaches.append(ConditionBreach(condition=condition, value=value, since=since))
        return breaches

    def export_state(self) -> dict[str, dict[str, Any]]:
        """Fire history of every trigger that has fired, keyed by trigger id."""
        return {
            trigger.id: {
                "last_triggered": format_timestamp(trigger.last_triggered),
                "trigger_count": trigger.trigger_count,
            }
            for trigger in self._triggers.values()
            if trigger.trigger_count
        }

    def restore_state(self, state: Mapping[str, Mapping[str, Any]]) -> None:
        """
        Reapply fire history saved by ``export_state``.

        Ids that no longer match a trigger are ignored.
        """
        for trigger_id, entry in state.items():
            trigger = self._triggers.get(trigger_id)
            if trigger is None:
                logger.warning("Ignoring saved state for unknown trigger %s", trigger_id)
                continue
            trigger.last_triggered = parse_timestamp(entry.get("last_triggered"))
            trigger.trigger_count = int(entry.get("trigger_count", 0))

    def reset_conditions(self) -> None:
        """Forget breach streaks (called when a new phase starts)."""
        self._breach_started.clear()

    def fire_manual(self, trigger_id: str, now: datetime) -> RollbackTrigger:
        """
        Fire a trigger on operator request.

        Manual fires ignore the cooldown but still record the fire.

        Args:
            trigger_id: Trigger to fire
            now: Fire time

        Returns:
            The fired trigger

        Raises:
            KeyError: If the trigger does not exist
        """
        trigger = self._triggers[trigger_id]
        with self._tracer.span("phasedrollout.triggers.fire_manual", {ATTR_TRIGGER_ID: trigger_id}):
            trigger.record_fire(now)
            logger.warning("Rollback trigger fired manually: %s", trigger.name)
            return trigger


__all__ = [
    "ConditionBreach",
    "RollbackTriggerEngine",
]
