"""
Unit tests for the RollbackTriggerEngine.
"""

from datetime import UTC, datetime, timedelta

import pytest

from phasedrollout.models import ComparisonOperator, RollbackTrigger, Severity, format_timestamp
from phasedrollout.plan import RollbackConditionDefinition
from phasedrollout.triggers import RollbackTriggerEngine

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


def _error_trigger(**kwargs) -> RollbackTrigger:
    defaults = dict(
        id="error_rate_critical",
        name="Critical Error Rate",
        metric="error_rate",
        operator=ComparisonOperator.GT,
        threshold=0.05,
        severity=Severity.CRITICAL,
        cooldown=timedelta(minutes=5),
    )
    defaults.update(kwargs)
    return RollbackTrigger(**defaults)


@pytest.fixture
def engine(tracer) -> RollbackTriggerEngine:
    return RollbackTriggerEngine([_error_trigger()], tracer=tracer)


class TestEvaluate:
    """Tests for automatic trigger evaluation."""

    def test_breach_fires(self, engine, make_snapshot, tracer):
        fired = engine.evaluate(make_snapshot(timestamp=T0, error_rate=0.08))

        assert [t.id for t in fired] == ["error_rate_critical"]
        trigger = engine.get("error_rate_critical")
        assert trigger.trigger_count == 1
        assert trigger.last_triggered == T0
        assert "phasedrollout.triggers.evaluate" in tracer.span_names

    def test_no_breach_leaves_state_unchanged(self, engine, make_snapshot):
        assert engine.evaluate(make_snapshot(timestamp=T0, error_rate=0.05)) == []
        assert engine.get("error_rate_critical").trigger_count == 0
        assert engine.get("error_rate_critical").last_triggered is None

    def test_fires_once_within_cooldown(self, engine, make_snapshot):
        """Test a sustained breach fires once per cooldown window."""
        results = [
            engine.evaluate(make_snapshot(timestamp=T0 + timedelta(minutes=m), error_rate=0.09))
            for m in (0, 1, 2, 4)
        ]

        assert [len(r) for r in results] == [1, 0, 0, 0]
        assert engine.get("error_rate_critical").trigger_count == 1

    def test_fires_again_after_cooldown(self, engine, make_snapshot):
        engine.evaluate(make_snapshot(timestamp=T0, error_rate=0.09))
        fired = engine.evaluate(
            make_snapshot(timestamp=T0 + timedelta(minutes=5), error_rate=0.09)
        )

        assert len(fired) == 1
        assert engine.get("error_rate_critical").trigger_count == 2

    def test_out_of_order_snapshot_rejected(self, engine, make_snapshot):
        """Test a snapshot older than the last evaluated one evaluates nothing."""
        engine.evaluate(make_snapshot(timestamp=T0 + timedelta(minutes=1)))

        fired = engine.evaluate(make_snapshot(timestamp=T0, error_rate=0.5))

        assert fired == []
        assert engine.get("error_rate_critical").trigger_count == 0

    def test_manual_trigger_not_evaluated(self, make_snapshot):
        engine = RollbackTriggerEngine(
            [_error_trigger(id="manual_only", automatic=False)], enable_tracing=False
        )

        assert engine.evaluate(make_snapshot(timestamp=T0, error_rate=0.5)) == []

    def test_health_score_trigger(self, make_snapshot):
        engine = RollbackTriggerEngine(
            [
                _error_trigger(
                    id="health_score_degraded",
                    metric="health_score",
                    operator=ComparisonOperator.LT,
                    threshold=70,
                )
            ],
            enable_tracing=False,
        )

        assert engine.evaluate(make_snapshot(timestamp=T0, health_score=70)) == []
        fired = engine.evaluate(make_snapshot(timestamp=T0 + timedelta(seconds=1), health_score=69))
        assert [t.id for t in fired] == ["health_score_degraded"]


class TestFireManual:
    def test_ignores_cooldown(self, engine, make_snapshot):
        engine.evaluate(make_snapshot(timestamp=T0, error_rate=0.09))

        trigger = engine.fire_manual("error_rate_critical", T0 + timedelta(seconds=10))

        assert trigger.trigger_count == 2
        assert trigger.last_triggered == T0 + timedelta(seconds=10)

    def test_unknown_trigger(self, engine):
        with pytest.raises(KeyError):
            engine.fire_manual("nope", T0)


class TestStatePersistence:
    """Tests for exporting and restoring fire history."""

    def test_export_only_fired_triggers(self, make_snapshot):
        engine = RollbackTriggerEngine(
            [_error_trigger(), _error_trigger(id="other", name="Other")], enable_tracing=False
        )
        engine.evaluate(
            make_snapshot(timestamp=T0, error_rate=0.09), [engine.get("error_rate_critical")]
        )

        assert engine.export_state() == {
            "error_rate_critical": {"last_triggered": format_timestamp(T0), "trigger_count": 1}
        }

    def test_cooldown_survives_restore(self, engine, make_snapshot):
        """Test a restored engine still honours the cooldown of a fire before the restart."""
        engine.evaluate(make_snapshot(timestamp=T0, error_rate=0.09))
        restarted = RollbackTriggerEngine([_error_trigger()], enable_tracing=False)

        restarted.restore_state(engine.export_state())

        within = restarted.evaluate(
            make_snapshot(timestamp=T0 + timedelta(minutes=2), error_rate=0.09)
        )
        after = restarted.evaluate(
            make_snapshot(timestamp=T0 + timedelta(minutes=6), error_rate=0.09)
        )
        assert within == []
        assert [t.id for t in after] == ["error_rate_critical"]
        assert restarted.get("error_rate_critical").trigger_count == 2

    def test_unknown_trigger_ignored(self, engine, caplog):
        engine.restore_state({"gone": {"last_triggered": None, "trigger_count": 3}})

        assert engine.get("error_rate_critical").trigger_count == 0
        assert "unknown trigger gone" in caplog.text


class TestEvaluateConditions:
    """Tests for phase-local rollback conditions."""

    def test_condition_without_duration_counts_immediately(self, engine, make_snapshot):
        condition = RollbackConditionDefinition(
            metric="error_rate", operator=ComparisonOperator.GT, threshold=0.05
        )

        breaches = engine.evaluate_conditions(make_snapshot(timestamp=T0, error_rate=0.06), [condition])

        assert len(breaches) == 1
        assert breaches[0].value == 0.06
        assert breaches[0].description == "error_rate > 0.05"

    def test_duration_requires_sustained_breach(self, engine, make_snapshot):
        """Test a duration condition counts only after the streak spans the duration."""
        condition = RollbackConditionDefinition(
            metric="error_rate",
            operator=ComparisonOperator.GT,
            threshold=0.05,
            duration=timedelta(minutes=5),
            description="Error rate exceeds 5% for 5 minutes",
        )

        def check(minute: int, error_rate: float) -> int:
            snapshot = make_snapshot(timestamp=T0 + timedelta(minutes=minute), error_rate=error_rate)
            return len(engine.evaluate_conditions(snapshot, [condition]))

        assert check(0, 0.08) == 0
        assert check(3, 0.08) == 0
        assert check(4, 0.01) == 0  # streak reset
        assert check(6, 0.08) == 0
        assert check(11, 0.08) == 1

    def test_reset_conditions(self, engine, make_snapshot):
        condition = RollbackConditionDefinition(
            metric="error_rate",
            operator=ComparisonOperator.GT,
            threshold=0.05,
            duration=timedelta(minutes=1),
        )
        engine.evaluate_conditions(make_snapshot(timestamp=T0, error_rate=0.08), [condition])
        engine.reset_conditions()

        breaches = engine.evaluate_conditions(
            make_snapshot(timestamp=T0 + timedelta(minutes=2), error_rate=0.08), [condition]
        )

        assert breaches == []
