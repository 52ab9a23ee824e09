"""
Unit tests for PhaseOrchestrator.

Each test runs a small plan end to end against the in-memory store with
millisecond phase windows.
"""

import asyncio
from datetime import timedelta
from pathlib import Path

import pytest

from phasedrollout.config import OrchestratorConfig
from phasedrollout.engine import SCHEMA_VERSION_FIELD
from phasedrollout.exceptions import TimeoutFailure
from phasedrollout.models import (
    Environment,
    MigrationState,
    PhaseStatus,
    RollbackExecution,
    RollbackExecutionStatus,
    StepStatus,
)
from phasedrollout.orchestrator import PhaseOrchestrator, RollbackCause
from phasedrollout.plan import PhaseCriteria, ProgressionCriteria
from phasedrollout.preflight import ValidatorConfig
from phasedrollout.status import PhasedMigrationStatus

QUIET = {"enable_tracing": False, "enable_metrics": False}

# =============================================================================
# Helpers
# =============================================================================


class StubEngine:
    """MigrationEngine whose phase work is supplied by the test."""

    def __init__(self, work):
        self._work = work
        self.stopped = False

    async def check_compatibility(self, plan):
        return []

    async def run_phase(self, phase, plan):
        return await self._work(phase)

    async def stop(self):
        self.stopped = True

    def backup(self):
        return None


def _versions(store):
    return [doc[SCHEMA_VERSION_FIELD] for doc in store.dump()["users"].values()]


def _alert_count(orchestrator, category):
    return sum(1 for alert in orchestrator.status.alerts if alert.category == category)


# =============================================================================
# Completion
# =============================================================================


class TestSuccessfulRollout:
    """Tests for rollouts that reach COMPLETED."""

    @pytest.mark.asyncio
    async def test_healthy_rollout_completes(self, plan, make_context, seeded_store, status_store, tracer):
        orchestrator = PhaseOrchestrator(make_context(plan))

        status = await orchestrator.run()

        assert status.status == MigrationState.COMPLETED
        assert status.overall_progress == 100.0
        assert [p.status for p in status.phases] == [PhaseStatus.COMPLETED] * 3
        assert status.preflight["readiness"] == "ready"
        assert status.rollback_executions == []
        assert _versions(seeded_store).count("2.0.0") == 30
        saved = await status_store.load("mig-test")
        assert saved.status == MigrationState.COMPLETED
        assert tracer.span_names.count("phasedrollout.orchestrator.phase") == 3

    @pytest.mark.asyncio
    async def test_phase_metrics_recorded(self, plan, make_context):
        status = await PhaseOrchestrator(make_context(plan)).run()

        first = status.phase(1)
        assert first.metrics.documents_processed == 10
        assert first.started_at is not None
        assert first.ended_at is not None
        assert status.health is not None

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, make_plan, make_context, seeded_store):
        """Test a dry run skips windows and approvals and leaves documents alone."""
        plan = make_plan(duration=timedelta(hours=1), manual_approval_required=True)
        context = make_context(plan, config=OrchestratorConfig(dry_run=True, **QUIET))

        status = await asyncio.wait_for(PhaseOrchestrator(context).run(), timeout=5)

        assert status.status == MigrationState.COMPLETED
        assert set(_versions(seeded_store)) == {"1.0.0"}

    @pytest.mark.asyncio
    async def test_terminal_status_is_not_rerun(self, plan, make_context, status_store, seeded_store):
        finished = PhasedMigrationStatus.for_plan(plan)
        finished.status = MigrationState.COMPLETED
        await status_store.save_atomic(finished)

        status = await PhaseOrchestrator(make_context(plan)).run()

        assert status.status == MigrationState.COMPLETED
        assert set(_versions(seeded_store)) == {"1.0.0"}


# =============================================================================
# Rollback
# =============================================================================


class TestRollback:
    """Tests for rollbacks started by triggers, failures and operators."""

    @pytest.mark.asyncio
    async def test_error_rate_trigger_rolls_back(self, plan, make_context, provider, seeded_store, status_store):
        provider.set_error_rate(0.08)

        status = await PhaseOrchestrator(make_context(plan)).run()

        assert status.status == MigrationState.ROLLED_BACK
        assert status.phase(1).status == PhaseStatus.ROLLED_BACK
        assert status.phase(2).status == PhaseStatus.PENDING
        [execution] = status.rollback_executions
        assert execution.status == RollbackExecutionStatus.COMPLETED
        assert execution.triggered_by == "error_rate_critical"
        [event] = status.rollback_history
        assert event.trigger == "error_rate_critical"
        assert event.automatic is True
        assert event.success is True
        assert set(_versions(seeded_store)) == {"1.0.0"}
        assert (await status_store.load("mig-test")).status == MigrationState.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_rollback_alerts_dispatched(self, plan, make_context, provider):
        provider.set_error_rate(0.08)
        orchestrator = PhaseOrchestrator(make_context(plan))

        await orchestrator.run()

        assert _alert_count(orchestrator, "rollback_trigger") == 1
        assert _alert_count(orchestrator, "rollback_started") == 1
        assert _alert_count(orchestrator, "migration_rolled_back") == 1

    @pytest.mark.asyncio
    async def test_failing_work_rolls_back(self, plan, make_context):
        async def work(phase):
            raise RuntimeError("disk full")

        engine = StubEngine(work)

        status = await PhaseOrchestrator(make_context(plan, engine=engine)).run()

        assert status.status == MigrationState.ROLLED_BACK
        assert status.rollback_history[0].trigger == "phase_execution_failed"
        assert "disk full" in status.failure_reason
        assert engine.stopped is True

    @pytest.mark.asyncio
    async def test_unfinished_work_times_out(self, plan, make_context):
        """Test work still running when the window closes causes a rollback."""

        async def work(phase):
            await asyncio.sleep(10)

        status = await PhaseOrchestrator(make_context(plan, engine=StubEngine(work))).run()

        assert status.status == MigrationState.ROLLED_BACK
        assert status.rollback_history[0].trigger == "operation_timeout"

    @pytest.mark.asyncio
    async def test_emergency_stop_during_phase(self, make_plan, make_context, wait_until):
        plan = make_plan(duration=timedelta(seconds=2))
        context = make_context(plan)
        orchestrator = PhaseOrchestrator(context)

        task = asyncio.create_task(orchestrator.run())
        await wait_until(lambda: orchestrator.status.phase(1).status == PhaseStatus.RUNNING)
        context.control.request_emergency("bad deploy")
        status = await asyncio.wait_for(task, timeout=5)

        assert status.status == MigrationState.ROLLED_BACK
        [event] = status.rollback_history
        assert event.trigger == "emergency_stop"
        assert event.reason == "bad deploy"
        assert event.automatic is False

    @pytest.mark.asyncio
    async def test_emergency_before_any_phase_pauses(self, plan, make_context):
        context = make_context(plan)
        context.control.request_emergency()

        status = await PhaseOrchestrator(context).run()

        assert status.status == MigrationState.PAUSED
        assert status.rollback_executions == []
        assert "before any phase" in status.failure_reason

    @pytest.mark.asyncio
    async def test_paused_rollback_is_resumed(self, plan, make_context, status_store, seeded_store):
        context = make_context(plan)
        stored = PhasedMigrationStatus.for_plan(plan)
        stored.status = MigrationState.PAUSED
        stored.current_phase = 1
        stored.phase(1).transition_to(PhaseStatus.RUNNING)
        execution = RollbackExecution.for_plan(
            context.rollback_plan, "error_rate_critical", "error rate 8%"
        )
        execution.status = RollbackExecutionStatus.PAUSED
        stored.rollback_executions.append(execution)
        await status_store.save_atomic(stored)

        status = await PhaseOrchestrator(context).run()

        assert status.status == MigrationState.ROLLED_BACK
        assert status.rollback_executions[0].status == RollbackExecutionStatus.COMPLETED
        assert status.phase(1).status == PhaseStatus.ROLLED_BACK
        assert status.rollback_history[0].reason == "error rate 8%"

    @pytest.mark.asyncio
    async def test_rollback_interrupted_mid_step_is_resumed(self, plan, make_context, status_store):
        """Test a rollback left RUNNING by a crash finishes instead of rerunning the phase."""

        async def work(phase):
            raise AssertionError("phase work must not run while a rollback is unfinished")

        engine = StubEngine(work)
        context = make_context(plan, engine=engine)
        stored = PhasedMigrationStatus.for_plan(plan)
        stored.status = MigrationState.RUNNING
        stored.current_phase = 1
        stored.phase(1).transition_to(PhaseStatus.RUNNING)
        execution = RollbackExecution.for_plan(
            context.rollback_plan, "error_rate_critical", "error rate 8%"
        )
        execution.status = RollbackExecutionStatus.RUNNING
        execution.step_results[0].status = StepStatus.COMPLETED
        execution.step_results[1].status = StepStatus.COMPLETED
        execution.step_results[2].status = StepStatus.RUNNING
        execution.advance_to(2)
        stored.rollback_executions.append(execution)
        await status_store.save_atomic(stored)

        status = await PhaseOrchestrator(context).run()

        assert status.status == MigrationState.ROLLED_BACK
        assert status.phase(1).status == PhaseStatus.ROLLED_BACK
        assert [p.status for p in status.phases[1:]] == [PhaseStatus.PENDING] * 2
        [resumed] = status.rollback_executions
        assert resumed.status == RollbackExecutionStatus.COMPLETED
        assert [r.status for r in resumed.step_results] == [StepStatus.COMPLETED] * 5
        assert engine.stopped is False
        assert status.rollback_history[0].automatic is True

    @pytest.mark.asyncio
    async def test_trigger_state_persisted(self, plan, make_context, provider, status_store):
        provider.set_error_rate(0.08)

        await PhaseOrchestrator(make_context(plan)).run()

        saved = await status_store.load("mig-test")
        state = saved.trigger_state["error_rate_critical"]
        assert state["trigger_count"] == 1
        assert state["last_triggered"] is not None


class TestRollbackCause:
    def test_from_trigger_error_uses_code(self):
        cause = RollbackCause.from_error(TimeoutFailure("phase 1 work", 60.0))

        assert cause.trigger == "operation_timeout"
        assert cause.automatic is True


# =============================================================================
# Validation, gate and approval
# =============================================================================


class TestValidationAndProgression:
    """Tests for pre-flight, readiness, the progression gate and approvals."""

    @pytest.mark.asyncio
    async def test_blocked_preflight_stops_before_phases(self, plan, make_context, seeded_store):
        context = make_context(
            plan,
            validator_config=ValidatorConfig.for_environment(
                Environment.STAGING, security_rules_path=Path("/nonexistent/firestore.rules")
            ),
        )

        status = await PhaseOrchestrator(context).run()

        assert status.status == MigrationState.BLOCKED
        assert "security: Security Rules Validation" in status.failure_reason
        assert status.preflight["readiness"] == "blocked"
        assert all(p.status == PhaseStatus.PENDING for p in status.phases)
        assert set(_versions(seeded_store)) == {"1.0.0"}

    @pytest.mark.asyncio
    async def test_skip_validation(self, plan, make_context):
        context = make_context(
            plan,
            config=OrchestratorConfig(skip_validation=True, **QUIET),
            validator_config=ValidatorConfig.for_environment(
                Environment.STAGING, security_rules_path=Path("/nonexistent/firestore.rules")
            ),
        )

        status = await PhaseOrchestrator(context).run()

        assert status.status == MigrationState.COMPLETED
        assert status.preflight is None

    @pytest.mark.asyncio
    async def test_readiness_failure_fails_rollout(self, make_plan, make_context, provider):
        provider.set_error_rate(0.03)
        plan = make_plan(criteria=PhaseCriteria(required=("error_rate_below_1_percent",)))

        status = await PhaseOrchestrator(make_context(plan)).run()

        assert status.status == MigrationState.FAILED
        assert status.phase(1).status == PhaseStatus.FAILED
        assert "error_rate_below_1_percent" in status.failure_reason
        assert status.rollback_executions == []

    @pytest.mark.asyncio
    async def test_closed_gate_pauses(self, make_plan, make_context, provider):
        provider.set_error_rate(0.03)
        plan = make_plan(
            progression_criteria=ProgressionCriteria(
                minimum_duration=timedelta(0), maximum_error_rate=0.01
            )
        )
        orchestrator = PhaseOrchestrator(make_context(plan))

        status = await orchestrator.run()

        assert status.status == MigrationState.PAUSED
        assert status.failure_reason == "progression gate closed after phase 1"
        assert status.phase(1).status == PhaseStatus.COMPLETED
        assert status.phase(2).status == PhaseStatus.PENDING
        assert _alert_count(orchestrator, "progression_blocked") == 1

    @pytest.mark.asyncio
    async def test_closed_gate_rechecked_on_resume(self, make_plan, make_context, provider):
        """Test a run paused on the gate only continues once the gate opens."""
        provider.set_error_rate(0.03)
        plan = make_plan(
            progression_criteria=ProgressionCriteria(
                minimum_duration=timedelta(0), maximum_error_rate=0.01
            )
        )

        paused = await PhaseOrchestrator(make_context(plan)).run()
        assert paused.status == MigrationState.PAUSED
        assert paused.gate_pending is True

        still_closed = await PhaseOrchestrator(make_context(plan)).run()
        assert still_closed.status == MigrationState.PAUSED
        assert still_closed.gate_pending is True
        assert still_closed.phase(2).status == PhaseStatus.PENDING

        provider.set_error_rate(0.0)
        status = await PhaseOrchestrator(make_context(plan)).run()

        assert status.status == MigrationState.COMPLETED
        assert status.gate_pending is False
        assert [p.status for p in status.phases] == [PhaseStatus.COMPLETED] * 3

    @pytest.mark.asyncio
    async def test_pause_before_start(self, plan, make_context):
        context = make_context(plan)
        context.control.request_pause()

        status = await PhaseOrchestrator(context).run()

        assert status.status == MigrationState.PAUSED
        assert status.failure_reason == "paused before phase 1"

    @pytest.mark.asyncio
    async def test_manual_approval_between_phases(self, make_plan, make_context, wait_until):
        plan = make_plan(manual_approval_required=True)
        context = make_context(plan)
        orchestrator = PhaseOrchestrator(context)

        task = asyncio.create_task(orchestrator.run())
        for expected in (1, 2):
            await wait_until(
                lambda n=expected: _alert_count(orchestrator, "approval_required") == n
            )
            assert orchestrator.status.awaiting_approval is True
            context.control.approve()
        status = await asyncio.wait_for(task, timeout=5)

        assert status.status == MigrationState.COMPLETED
        assert status.awaiting_approval is False

    @pytest.mark.asyncio
    async def test_pause_during_approval_then_resume(self, make_plan, make_context, status_store, wait_until):
        plan = make_plan(manual_approval_required=True)
        context = make_context(plan)
        orchestrator = PhaseOrchestrator(context)

        task = asyncio.create_task(orchestrator.run())
        await wait_until(lambda: _alert_count(orchestrator, "approval_required") == 1)
        context.control.request_pause()
        paused = await asyncio.wait_for(task, timeout=5)

        assert paused.status == MigrationState.PAUSED
        assert paused.awaiting_approval is True
        assert paused.failure_reason == "awaiting approval after phase 1"

        resumed = make_context(plan, config=OrchestratorConfig(force=True, **QUIET))
        status = await PhaseOrchestrator(resumed).run()

        assert status.status == MigrationState.COMPLETED
        assert [p.status for p in status.phases] == [PhaseStatus.COMPLETED] * 3
        assert status.phase(1).started_at == paused.phase(1).started_at

    @pytest.mark.asyncio
    async def test_approval_timeout_pauses(self, make_plan, make_context):
        plan = make_plan(manual_approval_required=True)
        config = OrchestratorConfig(approval_timeout=timedelta(milliseconds=20), **QUIET)

        status = await PhaseOrchestrator(make_context(plan, config=config)).run()

        assert status.status == MigrationState.PAUSED
        assert status.awaiting_approval is True
        assert status.phase(2).status == PhaseStatus.PENDING


# =============================================================================
# Phase ordering
# =============================================================================


def _running_phase_violations(history):
    """Saved records in which a phase is RUNNING while an earlier one is not COMPLETED."""
    violations = []
    for index, record in enumerate(history):
        statuses = [p["status"] for p in record["phases"]]
        for position, status in enumerate(statuses):
            if status == "running" and any(s != "completed" for s in statuses[:position]):
                violations.append((index, statuses))
    return violations


class TestPhaseOrdering:
    """Every saved record keeps earlier phases COMPLETED while a later one runs."""

    @pytest.mark.asyncio
    async def test_completed_rollout(self, plan, make_context, status_store):
        await PhaseOrchestrator(make_context(plan)).run()

        running = [
            [p["status"] for p in record["phases"]].index("running")
            for record in status_store.history
            if "running" in [p["status"] for p in record["phases"]]
        ]
        assert sorted(set(running)) == [0, 1, 2]
        assert _running_phase_violations(status_store.history) == []

    @pytest.mark.asyncio
    async def test_gate_paused_and_resumed_rollout(self, make_plan, make_context, provider, status_store):
        provider.set_error_rate(0.03)
        plan = make_plan(
            progression_criteria=ProgressionCriteria(
                minimum_duration=timedelta(0), maximum_error_rate=0.01
            )
        )
        await PhaseOrchestrator(make_context(plan)).run()
        provider.set_error_rate(0.0)
        await PhaseOrchestrator(make_context(plan)).run()

        assert _running_phase_violations(status_store.history) == []

    @pytest.mark.asyncio
    async def test_rolled_back_rollout(self, plan, make_context, provider, status_store):
        provider.set_error_rate(0.08)
        await PhaseOrchestrator(make_context(plan)).run()

        assert len(status_store.history) > 1
        assert _running_phase_violations(status_store.history) == []
