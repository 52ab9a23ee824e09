"""
PhaseOrchestrator - drives a MigrationPlan through its phases.

The orchestrator is the only component that changes the status record.
For each phase it:

    1. Checks phase readiness against a fresh health snapshot
    2. Starts the migration work and, concurrently, the monitor loop
       (collect a snapshot, dispatch threshold alerts, evaluate rollback
       triggers and phase conditions) at the phase's monitoring interval
    3. Waits until the phase window has elapsed and the work is done, or
       until a rollback cause or emergency signal arrives; the losing tasks
       are cancelled as a unit
    4. On a normal finish runs one last trigger evaluation (a firing
       trigger always wins), completes the phase and asks the progression
       gate
    5. On any rollback cause runs the rollback plan and stops

Between phases it may wait for operator approval. The status record is
saved after every transition and every terminal state is alerted.

A resumed run first finishes any rollback an earlier process left PAUSED
or RUNNING, and re-evaluates a progression gate it paused on before the
next phase starts.

State machine (overall):
    PENDING -> RUNNING -> COMPLETED | FAILED | ROLLED_BACK
    RUNNING <-> PAUSED
    PENDING -> BLOCKED
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from phasedrollout.context import OrchestratorContext
from phasedrollout.engine import PhaseWorkResult
from phasedrollout.exceptions import (
    PhaseExecutionFailure,
    RollbackTriggerFired,
    RolloutError,
    StatusStoreError,
    SystemFailure,
    TimeoutFailure,
    ValidationFailure,
)
from phasedrollout.gate import evaluate_readiness
from phasedrollout.models import (
    Alert,
    AlertSeverity,
    HealthSnapshot,
    HealthSummary,
    MigrationState,
    PhaseStatus,
    RollbackEvent,
    RollbackExecution,
    RollbackExecutionStatus,
)
from phasedrollout.observability import (
    ATTR_DRY_RUN,
    ATTR_ENVIRONMENT,
    ATTR_MIGRATION_ID,
    ATTR_MIGRATION_STATE,
    ATTR_PHASE_NUMBER,
    ATTR_PHASE_PERCENTAGE,
    ATTR_PHASE_STATUS,
)
from phasedrollout.preflight import Readiness
from phasedrollout.rollback import RollbackExecutor
from phasedrollout.status import Phase, PhasedMigrationStatus

logger = logging.getLogger(__name__)

EMERGENCY_STOP_TRIGGER = "emergency_stop"

_TERMINAL_ALERTS = {
    MigrationState.COMPLETED: AlertSeverity.INFO,
    MigrationState.PAUSED: AlertSeverity.WARNING,
    MigrationState.ROLLED_BACK: AlertSeverity.ERROR,
    MigrationState.FAILED: AlertSeverity.CRITICAL,
    MigrationState.BLOCKED: AlertSeverity.CRITICAL,
}


@dataclass(frozen=True)
class RollbackCause:
    """
    Why a rollback was started.

    Attributes:
        trigger: Trigger id, or a cause code such as ``emergency_stop``
        reason: Human-readable description
        automatic: False for operator-initiated rollbacks
    """

    trigger: str
    reason: str
    automatic: bool = True

    @classmethod
    def from_error(cls, error: RolloutError) -> RollbackCause:
        if isinstance(error, RollbackTriggerFired):
            return cls(trigger=error.trigger_id, reason=error.message)
        return cls(trigger=error.error_code.lower(), reason=error.message)


class _Approval(Enum):
    APPROVED = "approved"
    PAUSED = "paused"
    EMERGENCY = "emergency"


class PhaseOrchestrator:
    """
    Runs a phased rollout to a final state.

    Example:
        >>> context = OrchestratorContext.build(plan, store, engine)
        >>> status = await PhaseOrchestrator(context).run()
        >>> status.status
        <MigrationState.COMPLETED: 'completed'>
    """

    def __init__(self, context: OrchestratorContext) -> None:
        self._ctx = context
        self._plan = context.plan
        self._config = context.config
        self._control = context.control
        self._tracer = context.tracer
        self._enable_tracing = self._tracer.enabled
        self._executor = RollbackExecutor(
            on_progress=self._persist_rollback,
            on_alert=self._dispatch,
            pause_requested=context.control.pause,
            step_timeout_factor=context.config.executor.step_timeout_factor,
            metrics=context.metrics,
            tracer=context.tracer,
        )
        self.status: PhasedMigrationStatus = PhasedMigrationStatus.for_plan(self._plan)

    @property
    def executor(self) -> RollbackExecutor:
        return self._executor

    # =========================================================================
    # Persistence and alerts
    # =========================================================================

    async def _persist(self) -> None:
        self.status.trigger_state = self._ctx.trigger_engine.export_state()
        self.status.recompute_progress()
        self.status.touch(self._ctx.clock())
        await self._ctx.status_store.save_atomic(self.status)

    async def _persist_rollback(self, execution: RollbackExecution) -> None:
        await self._persist()

    async def _dispatch(self, alert: Alert) -> None:
        alert.details.setdefault("migration_id", self._plan.migration_id)
        self.status.alerts.append(alert)
        overflow = len(self.status.alerts) - self._plan.monitoring.max_alert_history
        if overflow > 0:
            del self.status.alerts[:overflow]
        await self._ctx.dispatcher.dispatch(alert)

    async def _alert(
        self,
        severity: AlertSeverity,
        category: str,
        message: str,
        **details: Any,
    ) -> None:
        await self._dispatch(
            Alert(
                severity=severity,
                source="orchestrator",
                category=category,
                message=message,
                details=details,
            )
        )

    async def _finish(
        self,
        state: MigrationState,
        reason: str | None = None,
        *,
        awaiting_approval: bool = False,
        gate_pending: bool = False,
    ) -> None:
        """Move the rollout to a resting state, alert and persist it."""
        self.status.status = state
        self.status.failure_reason = reason
        self.status.awaiting_approval = awaiting_approval
        self.status.gate_pending = gate_pending
        if state.is_terminal:
            self.status.completed_at = self._ctx.clock()
        self.status.recompute_progress()
        message = f"Migration {self._plan.migration_id} {state.value}"
        if reason:
            message = f"{message}: {reason}"
        logger.log(_TERMINAL_ALERTS[state].log_level, "%s", message)
        await self._alert(
            _TERMINAL_ALERTS[state],
            f"migration_{state.value}",
            message,
            progress=self.status.overall_progress,
        )
        await self._persist()

    # =========================================================================
    # Run
    # =========================================================================

    async def run(self) -> PhasedMigrationStatus:
        """
        Execute (or resume) the rollout.

        Returns:
            The status record in its final state for this process
        """
        with self._tracer.span(
            "phasedrollout.orchestrator.run",
            {
                ATTR_MIGRATION_ID: self._plan.migration_id,
                ATTR_ENVIRONMENT: self._plan.environment.value,
                ATTR_DRY_RUN: self._config.dry_run,
            },
        ) as span:
            try:
                await self._run()
            except Exception as e:
                failure = SystemFailure(
                    f"Unexpected error in control loop: {e}",
                    migration_id=self._plan.migration_id,
                )
                logger.error("%s", failure, exc_info=True)
                try:
                    await self._finish(MigrationState.FAILED, failure.message)
                except StatusStoreError as persist_error:
                    logger.error("Could not persist failed state: %s", persist_error)
            if span is not None:
                span.set_attribute(ATTR_MIGRATION_STATE, self.status.status.value)
            return self.status

    async def _run(self) -> None:
        stored = await self._ctx.status_store.load(self._plan.migration_id)
        if stored is not None:
            if stored.status.is_terminal:
                logger.info(
                    "Migration %s already %s; nothing to do",
                    self._plan.migration_id,
                    stored.status.value,
                )
                self.status = stored
                return
            logger.info(
                "Resuming migration %s from %s (phase %d)",
                self._plan.migration_id,
                stored.status.value,
                stored.current_phase,
            )
            self.status = stored
            self._ctx.trigger_engine.restore_state(stored.trigger_state)
            if await self._resume_rollback():
                return
        else:
            logger.info(
                "Starting migration %s (%s, %d phases)%s",
                self._plan.migration_id,
                self._plan.environment.value,
                len(self._plan.phases),
                " [dry run]" if self._config.dry_run else "",
            )
            if not await self._preflight():
                return

        resume_approval = self.status.awaiting_approval
        resume_gate = self.status.gate_pending
        self.status.status = MigrationState.RUNNING
        await self._persist()

        for phase in self.status.phases:
            if phase.status == PhaseStatus.COMPLETED:
                continue

            if resume_gate:
                resume_gate = False
                if not await self._recheck_gate(self.status.phase(phase.number - 1)):
                    return

            if resume_approval:
                resume_approval = False
                if (
                    self._plan.requires_approval
                    and not self._config.force
                    and not self._config.dry_run
                    and not await self._handle_approval(phase.number - 1)
                ):
                    return

            if self._control.emergency.is_set():
                await self._handle_emergency_between_phases()
                return
            if self._control.pause.is_set():
                await self._finish(MigrationState.PAUSED, f"paused before phase {phase.number}")
                return

            if not await self._run_phase(phase):
                return

            if phase.number == self.status.total_phases:
                break
            if not await self._advance_after(phase):
                return

        await self._finish(MigrationState.COMPLETED)

    async def _preflight(self) -> bool:
        if self._config.skip_validation:
            logger.warning("Pre-flight validation skipped")
            return True
        report = await self._ctx.validator.validate(self._plan)
        self.status.preflight = report.to_dict()

        if report.readiness == Readiness.BLOCKED or (
            report.readiness == Readiness.NOT_READY and not self._config.force
        ):
            failure = ValidationFailure(
                f"Pre-flight validation {report.readiness.value}",
                failed_checks=[c.name for c in report.failed_checks],
                migration_id=self._plan.migration_id,
            )
            reason = failure.message
            if report.blockers:
                reason = f"{reason}: {'; '.join(report.blockers)}"
            await self._finish(MigrationState.BLOCKED, reason)
            return False

        if report.readiness != Readiness.READY:
            await self._alert(
                AlertSeverity.WARNING,
                "preflight",
                f"Pre-flight validation {report.readiness.value}; proceeding",
                failed_checks=[c.name for c in report.failed_checks],
                recommendations=report.recommendations,
            )
        return True

    # =========================================================================
    # Phases
    # =========================================================================

    async def _run_phase(self, phase: Phase) -> bool:
        """Run one phase; return True if it completed."""
        with self._tracer.span(
            "phasedrollout.orchestrator.phase",
            {ATTR_PHASE_NUMBER: phase.number, ATTR_PHASE_PERCENTAGE: phase.percentage},
        ) as span:
            self.status.current_phase = phase.number

            if phase.status == PhaseStatus.PENDING:
                snapshot = await self._observe_health(phase)
                readiness = evaluate_readiness(phase, snapshot, self._ctx.dispatcher.open_alerts)
                if not readiness:
                    failure = ValidationFailure(
                        f"Phase {phase.number} readiness failed: {'; '.join(readiness.failures)}",
                        failed_checks=readiness.failures,
                        migration_id=self._plan.migration_id,
                        phase_number=phase.number,
                    )
                    phase.failure_reason = failure.message
                    phase.transition_to(PhaseStatus.FAILED, self._ctx.clock())
                    await self._finish(MigrationState.FAILED, failure.message)
                    return False
                phase.transition_to(PhaseStatus.RUNNING, self._ctx.clock())
                await self._persist()
                logger.info(
                    "Phase %d (%s) started: %.0f%%, %d documents",
                    phase.number,
                    phase.name,
                    phase.percentage,
                    phase.target_documents,
                )
                await self._alert(
                    AlertSeverity.INFO,
                    "phase_started",
                    f"Phase {phase.number} ({phase.name}) started",
                    phase=phase.number,
                )

            self._ctx.trigger_engine.reset_conditions()
            cause, result = await self._run_phase_unit(phase)

            if cause is None and result is not None:
                phase.metrics.record_work(result.processed, result.failed, result.elapsed_seconds)
                self._ctx.metrics.record_documents_migrated(result.processed, phase.number)
                # Final trigger evaluation: a firing trigger wins over the gate
                cause = await self._evaluate(phase, await self._observe_health(phase))

            if cause is not None:
                await self._rollback(phase, cause)
                if span is not None:
                    span.set_attribute(ATTR_PHASE_STATUS, phase.status.value)
                return False

            phase.transition_to(PhaseStatus.COMPLETED, self._ctx.clock())
            self._ctx.metrics.record_phase_duration(
                phase.number, phase.elapsed().total_seconds(), phase.status.value
            )
            await self._persist()
            logger.info(
                "Phase %d completed (%d/%d)",
                phase.number,
                self.status.completed_phases,
                self.status.total_phases,
            )
            if span is not None:
                span.set_attribute(ATTR_PHASE_STATUS, phase.status.value)
            return True

    def _remaining_window(self, phase: Phase) -> float:
        # A phase resumed after its window already ran out gets a full window.
        remaining = phase.duration - phase.elapsed(self._ctx.clock())
        if remaining.total_seconds() <= 0:
            return phase.duration.total_seconds()
        return remaining.total_seconds()

    async def _run_phase_unit(
        self,
        phase: Phase,
    ) -> tuple[RollbackCause | None, PhaseWorkResult | None]:
        """
        Run work, monitor, window timer and emergency waiter together.

        Returns:
            (cause, None) when a rollback is needed, else (None, work result)
        """
        work = asyncio.create_task(self._ctx.engine.run_phase(phase, self._plan))
        monitor = asyncio.create_task(self._monitor(phase))
        emergency = asyncio.create_task(self._control.emergency.wait())
        timer: asyncio.Task[None] | None = None
        if not self._config.dry_run:
            timer = asyncio.create_task(asyncio.sleep(self._remaining_window(phase)))
        tasks: set[asyncio.Task[Any]] = {work, monitor, emergency}
        if timer is not None:
            tasks.add(timer)

        try:
            pending = set(tasks)
            while True:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)

                if emergency in done:
                    return self._emergency_cause(), None

                if monitor in done:
                    return monitor.result(), None

                if work in done and work.exception() is not None:
                    error = work.exception()
                    if not isinstance(error, RolloutError):
                        error = PhaseExecutionFailure(
                            f"Migration work failed: {error}",
                            migration_id=self._plan.migration_id,
                            phase_number=phase.number,
                        )
                    logger.error("Phase %d work failed: %s", phase.number, error)
                    return RollbackCause.from_error(error), None

                window_over = timer is None or timer.done()
                if window_over and not work.done():
                    failure = TimeoutFailure(
                        f"phase {phase.number} work",
                        phase.duration.total_seconds(),
                        migration_id=self._plan.migration_id,
                        phase_number=phase.number,
                    )
                    logger.error("%s", failure)
                    return RollbackCause.from_error(failure), None

                if window_over and work.done():
                    return None, work.result()
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            for task in tasks:
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    def _emergency_cause(self) -> RollbackCause:
        return RollbackCause(
            trigger=EMERGENCY_STOP_TRIGGER,
            reason=self._control.emergency_reason or "operator emergency stop",
            automatic=False,
        )

    # =========================================================================
    # Monitoring
    # =========================================================================

    async def _monitor(self, phase: Phase) -> RollbackCause:
        interval = phase.monitoring_interval.total_seconds()
        while True:
            await asyncio.sleep(interval)
            snapshot = await self._observe_health(phase)
            cause = await self._evaluate(phase, snapshot)
            if cause is not None:
                return cause

    async def _observe_health(self, phase: Phase) -> HealthSnapshot:
        snapshot = await self._ctx.collector.collect()
        attempted = phase.metrics.documents_processed + phase.metrics.documents_failed
        integrity = (
            100.0 * phase.metrics.documents_processed / attempted if attempted else 100.0
        )
        self.status.latest_snapshot = snapshot
        self.status.health = HealthSummary.from_snapshot(snapshot, integrity)
        self._ctx.metrics.record_health_score(snapshot.health_score)
        for alert in self._ctx.analyzer.analyze(snapshot):
            await self._dispatch(alert)
        return snapshot

    async def _evaluate(self, phase: Phase, snapshot: HealthSnapshot) -> RollbackCause | None:
        if phase.status == PhaseStatus.RUNNING:
            phase.metrics.observe(snapshot)
        fired = self._ctx.trigger_engine.evaluate(snapshot)
        breaches = self._ctx.trigger_engine.evaluate_conditions(snapshot, phase.rollback_conditions)
        await self._persist()

        if fired:
            for trigger in fired:
                self._ctx.metrics.record_trigger_fire(trigger.id)
                await self._alert(
                    trigger.severity.alert_severity,
                    "rollback_trigger",
                    f"Rollback trigger fired: {trigger.name} ({trigger.condition})",
                    trigger_id=trigger.id,
                    value=snapshot.metric(trigger.metric),
                    phase=phase.number,
                )
            return RollbackCause.from_error(
                RollbackTriggerFired(
                    fired,
                    migration_id=self._plan.migration_id,
                    phase_number=phase.number,
                )
            )
        if breaches:
            descriptions = "; ".join(b.description for b in breaches)
            return RollbackCause.from_error(
                RollbackTriggerFired(
                    [],
                    reason=f"Phase condition breached: {descriptions}",
                    migration_id=self._plan.migration_id,
                    phase_number=phase.number,
                )
            )
        return None

    # =========================================================================
    # Progression and approval
    # =========================================================================

    async def _advance_after(self, phase: Phase) -> bool:
        """Decide whether to start the next phase; False if the run stops here."""
        decision = self._ctx.gate.evaluate(
            phase,
            self._plan.progression_criteria,
            self.status.latest_snapshot,
            self._ctx.clock(),
        )
        needs_approval = self._plan.requires_approval and not self._config.force

        if not decision:
            await self._alert(
                AlertSeverity.WARNING,
                "progression_blocked",
                f"Progression gate closed after phase {phase.number}: "
                f"{'; '.join(decision.failures)}",
                phase=phase.number,
                failures=list(decision.failures),
            )
            if not needs_approval:
                await self._finish(
                    MigrationState.PAUSED,
                    f"progression gate closed after phase {phase.number}",
                    gate_pending=True,
                )
                return False

        if not needs_approval or self._config.dry_run:
            return True
        return await self._handle_approval(phase.number)

    async def _recheck_gate(self, phase: Phase) -> bool:
        """Evaluate the gate again, on fresh health, for a run that paused on it."""
        logger.info("Re-evaluating progression gate after phase %d", phase.number)
        self.status.gate_pending = False
        await self._observe_health(phase)
        return await self._advance_after(phase)

    async def _handle_approval(self, after_phase: int) -> bool:
        outcome = await self._await_approval(after_phase)
        if outcome == _Approval.APPROVED:
            return True
        if outcome == _Approval.PAUSED:
            await self._finish(
                MigrationState.PAUSED,
                f"awaiting approval after phase {after_phase}",
                awaiting_approval=True,
            )
            return False
        await self._handle_emergency_between_phases()
        return False

    async def _await_approval(self, after_phase: int) -> _Approval:
        self.status.status = MigrationState.PAUSED
        self.status.awaiting_approval = True
        await self._persist()
        await self._alert(
            AlertSeverity.INFO,
            "approval_required",
            f"Phase {after_phase} complete; approval required to continue",
            phase=after_phase,
        )
        logger.info("Waiting for approval after phase %d", after_phase)

        waiters = {
            asyncio.create_task(self._control.approval.wait()): _Approval.APPROVED,
            asyncio.create_task(self._control.pause.wait()): _Approval.PAUSED,
            asyncio.create_task(self._control.emergency.wait()): _Approval.EMERGENCY,
        }
        timeout = (
            self._config.approval_timeout.total_seconds()
            if self._config.approval_timeout is not None
            else None
        )
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in waiters:
                task.cancel()
            for task in waiters:
                with contextlib.suppress(asyncio.CancelledError):
                    await task

        outcomes = {waiters[task] for task in done}
        if _Approval.EMERGENCY in outcomes:
            return _Approval.EMERGENCY
        if _Approval.PAUSED in outcomes or not outcomes:
            return _Approval.PAUSED

        self._control.consume_approval()
        self.status.status = MigrationState.RUNNING
        self.status.awaiting_approval = False
        await self._persist()
        logger.info("Approved; continuing after phase %d", after_phase)
        return _Approval.APPROVED

    # =========================================================================
    # Rollback
    # =========================================================================

    async def _handle_emergency_between_phases(self) -> None:
        started = [p for p in self.status.phases if p.status != PhaseStatus.PENDING]
        if not started:
            await self._finish(
                MigrationState.PAUSED,
                "emergency stop requested before any phase started",
            )
            return
        await self._rollback(started[-1], self._emergency_cause())

    async def _rollback(self, phase: Phase, cause: RollbackCause) -> None:
        logger.warning(
            "Rolling back migration %s in phase %d: %s",
            self._plan.migration_id,
            phase.number,
            cause.reason,
        )
        phase.metrics.rollbacks_triggered += 1
        self.status.status = MigrationState.RUNNING
        await self._alert(
            AlertSeverity.CRITICAL,
            "rollback_started",
            f"Rollback started in phase {phase.number}: {cause.reason}",
            phase=phase.number,
            trigger=cause.trigger,
        )

        execution = RollbackExecution.for_plan(self._ctx.rollback_plan, cause.trigger, cause.reason)
        self.status.rollback_executions.append(execution)
        execution = await self._executor.execute(
            self._ctx.rollback_plan,
            execution,
            migration_id=self._plan.migration_id,
        )
        await self._conclude_rollback(phase, cause, execution)

    async def _resume_rollback(self) -> bool:
        """
        Finish a rollback an earlier run did not finish; True if one existed.

        A PAUSED execution was stopped on request. A RUNNING one belongs to
        a process that died mid-rollback; it resumes from ``current_step``
        and the step that was in flight runs again. No phase runs forward
        while such an execution exists.
        """
        unfinished = [e for e in self.status.rollback_executions if not e.status.is_terminal]
        if not unfinished:
            return False
        execution = unfinished[-1]
        phase = self.status.phase(self.status.current_phase or 1)
        cause = RollbackCause(
            trigger=execution.triggered_by,
            reason=execution.reason,
            automatic=execution.triggered_by != EMERGENCY_STOP_TRIGGER,
        )
        if execution.status == RollbackExecutionStatus.RUNNING:
            logger.warning(
                "Rollback %s was interrupted at step %d; resuming",
                execution.id,
                execution.current_step,
            )
        else:
            logger.warning("Resuming paused rollback %s", execution.id)
        self.status.status = MigrationState.RUNNING
        execution = await self._executor.execute(
            self._ctx.rollback_plan,
            execution,
            migration_id=self._plan.migration_id,
        )
        await self._conclude_rollback(phase, cause, execution)
        return True

    async def _conclude_rollback(
        self,
        phase: Phase,
        cause: RollbackCause,
        execution: RollbackExecution,
    ) -> None:
        if execution.status == RollbackExecutionStatus.PAUSED:
            await self._finish(MigrationState.PAUSED, f"rollback {execution.id} paused")
            return

        success = execution.status == RollbackExecutionStatus.COMPLETED
        self.status.rollback_history.append(
            RollbackEvent(
                phase=phase.number,
                trigger=cause.trigger,
                reason=cause.reason,
                automatic=cause.automatic,
                success=success,
                documents_affected=execution.metrics.documents_reverted,
                execution_id=execution.id,
                timestamp=self._ctx.clock(),
            )
        )
        now = self._ctx.clock()
        if success:
            if phase.status == PhaseStatus.RUNNING:
                phase.failure_reason = cause.reason
                phase.transition_to(PhaseStatus.ROLLED_BACK, now)
            await self._finish(MigrationState.ROLLED_BACK, cause.reason)
        else:
            if phase.status == PhaseStatus.RUNNING:
                phase.failure_reason = f"rollback failed after: {cause.reason}"
                phase.transition_to(PhaseStatus.FAILED, now)
            await self._finish(
                MigrationState.FAILED,
                f"rollback {execution.id} failed; manual intervention required",
            )
        if phase.started_at is not None:
            self._ctx.metrics.record_phase_duration(
                phase.number, phase.elapsed(now).total_seconds(), phase.status.value
            )


__all__ = [
    "EMERGENCY_STOP_TRIGGER",
    "RollbackCause",
    "PhaseOrchestrator",
]
