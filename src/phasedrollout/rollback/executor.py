"""
RollbackExecutor - runs a RollbackPlan step by step.

Steps run strictly in plan order:

    1. If a pause was requested, the execution stops as PAUSED before the
       next step (the step in flight always finishes).
    2. A step whose dependencies are not all COMPLETED is SKIPPED.
    3. Otherwise the step is RUNNING while its action runs, bounded by
       ``estimated_time * step_timeout_factor``, then COMPLETED or FAILED.
    4. A step passes only if its action returns and reports every one of
       the step's validations as passed; a validation the action does not
       report counts as failed.
    5. A FAILED ``emergency_stop`` step halts the execution as FAILED; the
       remaining steps stay PENDING and a CRITICAL alert asks for manual
       intervention. Other failures are recorded and the run continues.
    6. Once every step has run, the plan-level validations run. The
       execution is COMPLETED unless a critical validation failed.

The execution is persisted after every step transition through the
``on_progress`` callback. Only one execution may be RUNNING at a time; a
second request is rejected with RollbackInProgressError.

A PAUSED execution, or one left RUNNING by a crashed process, can be passed
back to ``execute`` to resume. Steps that already finished are not run
again; a step left RUNNING runs again from the start.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from phasedrollout.exceptions import RollbackInProgressError, RollbackStepFailure
from phasedrollout.metrics import RolloutMetrics
from phasedrollout.models import (
    Alert,
    AlertSeverity,
    RollbackContext,
    RollbackExecution,
    RollbackExecutionStatus,
    RollbackPlan,
    RollbackStep,
    StepResult,
    StepStatus,
    ValidationResult,
)
from phasedrollout.observability import (
    ATTR_ROLLBACK_EXECUTION_ID,
    ATTR_ROLLBACK_STATUS,
    ATTR_ROLLBACK_STEP,
    Tracer,
    create_tracer,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[RollbackExecution], Awaitable[None]]
AlertCallback = Callable[[Alert], Awaitable[None]]

_FINISHED = (StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED)


class RollbackExecutor:
    """
    Executes rollback plans.

    Example:
        >>> executor = RollbackExecutor(on_progress=persist, on_alert=dispatcher.dispatch)
        >>> execution = RollbackExecution.for_plan(plan, "error_rate_critical", "error rate 8%")
        >>> execution = await executor.execute(plan, execution, migration_id="mig-42")
        >>> execution.status
        <RollbackExecutionStatus.COMPLETED: 'completed'>
    """

    def __init__(
        self,
        *,
        on_progress: ProgressCallback | None = None,
        on_alert: AlertCallback | None = None,
        pause_requested: asyncio.Event | None = None,
        step_timeout_factor: float = 2.0,
        metrics: RolloutMetrics | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the executor.

        Args:
            on_progress: Awaited after every step transition with the execution
            on_alert: Awaited with alerts raised by the executor
            pause_requested: When set, the execution pauses before the next step
            step_timeout_factor: Multiplier applied to each step's estimated_time
            metrics: Optional rollout metrics
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        if step_timeout_factor <= 0:
            raise ValueError(f"step_timeout_factor must be positive, got {step_timeout_factor}")
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._on_progress = on_progress
        self._on_alert = on_alert
        self._pause_requested = pause_requested or asyncio.Event()
        self._step_timeout_factor = step_timeout_factor
        self._metrics = metrics
        self._active: RollbackExecution | None = None

    @property
    def active(self) -> RollbackExecution | None:
        """The execution currently RUNNING, if any."""
        return self._active

    async def _persist(self, execution: RollbackExecution, started: float) -> None:
        execution.metrics.time_elapsed_seconds = time.monotonic() - started
        if self._on_progress is not None:
            await self._on_progress(execution)

    async def _alert(self, alert: Alert) -> None:
        if self._on_alert is not None:
            await self._on_alert(alert)

    async def execute(
        self,
        plan: RollbackPlan,
        execution: RollbackExecution,
        *,
        migration_id: str = "",
    ) -> RollbackExecution:
        """
        Run (or resume) a rollback execution.

        Args:
            plan: The rollback plan
            execution: Execution created with RollbackExecution.for_plan, or a
                PAUSED execution to resume
            migration_id: Rollout being reverted

        Returns:
            The execution in its final state (COMPLETED, FAILED or PAUSED)

        Raises:
            RollbackInProgressError: If another execution is RUNNING
        """
        if self._active is not None:
            raise RollbackInProgressError(self._active.id, migration_id=migration_id or None)

        self._active = execution
        execution.status = RollbackExecutionStatus.RUNNING
        started = time.monotonic()
        context = RollbackContext(execution=execution, migration_id=migration_id)

        with self._tracer.span(
            "phasedrollout.rollback.execute",
            {ATTR_ROLLBACK_EXECUTION_ID: execution.id},
        ) as span:
            try:
                logger.warning(
                    "Starting rollback %s (%s): %s",
                    execution.id,
                    execution.triggered_by,
                    execution.reason,
                )
                halted = False
                for index, step in enumerate(plan.steps):
                    if index < execution.current_step:
                        continue
                    result = execution.step_results[index]
                    if result.status in _FINISHED:
                        continue
                    if self._pause_requested.is_set():
                        execution.status = RollbackExecutionStatus.PAUSED
                        logger.warning("Rollback %s paused before step '%s'", execution.id, step.name)
                        await self._persist(execution, started)
                        return execution

                    execution.advance_to(index)
                    await self._run_step(step, result, execution, context, started)

                    if result.status == StepStatus.FAILED and step.emergency_stop:
                        halted = True
                        break

                if halted:
                    execution.status = RollbackExecutionStatus.FAILED
                    failed = execution.step_results[execution.current_step]
                    failure = RollbackStepFailure(
                        failed.step_name,
                        failed.error or "unknown error",
                        emergency_stop=True,
                        migration_id=migration_id or None,
                    )
                    logger.critical("%s", failure)
                    await self._alert(
                        Alert(
                            severity=AlertSeverity.CRITICAL,
                            source="rollback_executor",
                            category="rollback_failed",
                            message=f"{failure.message}. {failure.suggested_action}",
                            details={
                                **failure.to_dict(),
                                "execution_id": execution.id,
                                "migration_id": migration_id,
                            },
                        )
                    )
                else:
                    critical_failed = await self._run_validations(plan, execution, context)
                    execution.status = (
                        RollbackExecutionStatus.FAILED
                        if critical_failed
                        else RollbackExecutionStatus.COMPLETED
                    )

                execution.ended_at = datetime.now(UTC)
                await self._persist(execution, started)
                if self._metrics is not None:
                    self._metrics.record_rollback(
                        execution.status.value, execution.metrics.time_elapsed_seconds
                    )
                if span is not None:
                    span.set_attribute(ATTR_ROLLBACK_STATUS, execution.status.value)
                logger.warning(
                    "Rollback %s finished: %s (%d documents reverted)",
                    execution.id,
                    execution.status.value,
                    execution.metrics.documents_reverted,
                )
                return execution
            finally:
                self._active = None

    async def _run_step(
        self,
        step: RollbackStep,
        result: StepResult,
        execution: RollbackExecution,
        context: RollbackContext,
        started: float,
    ) -> None:
        unmet = [
            name
            for name in step.dependencies
            if execution.result_for(name).status != StepStatus.COMPLETED
        ]
        if unmet:
            result.status = StepStatus.SKIPPED
            result.error = f"Dependencies not met: {', '.join(unmet)}"
            logger.warning("Skipping rollback step '%s': %s", step.name, result.error)
            await self._persist(execution, started)
            return

        with self._tracer.span(
            "phasedrollout.rollback.step",
            {ATTR_ROLLBACK_EXECUTION_ID: execution.id, ATTR_ROLLBACK_STEP: step.name},
        ):
            if result.status == StepStatus.RUNNING:
                logger.warning("Re-running interrupted rollback step '%s'", step.name)
            result.status = StepStatus.RUNNING
            result.started_at = datetime.now(UTC)
            result.error = None
            result.validations.clear()
            await self._persist(execution, started)

            timeout = step.estimated_time.total_seconds() * self._step_timeout_factor
            outcome: dict | None = None
            error: str | None = None
            try:
                outcome = await asyncio.wait_for(step.action(context), timeout=timeout)
            except TimeoutError:
                error = f"Step timed out after {timeout:.1f}s"
            except Exception as e:
                logger.error("Rollback step '%s' raised: %s", step.name, e, exc_info=True)
                error = str(e) or type(e).__name__

            result.ended_at = datetime.now(UTC)
            if error is not None:
                result.status = StepStatus.FAILED
                result.error = error
                execution.metrics.error_count += 1
                logger.error("Rollback step '%s' failed: %s", step.name, error)
            else:
                outcome = outcome or {}
                self._merge(outcome, execution)
                failed_checks = self._check_step(step, outcome, result, execution)
                if failed_checks:
                    result.status = StepStatus.FAILED
                    result.error = f"Validation failed: {', '.join(failed_checks)}"
                    execution.metrics.error_count += 1
                    logger.error("Rollback step '%s' failed: %s", step.name, result.error)
                else:
                    result.status = StepStatus.COMPLETED
                    logger.info("Rollback step '%s' completed", step.name)
            await self._persist(execution, started)

    @staticmethod
    def _check_step(
        step: RollbackStep,
        outcome: dict,
        result: StepResult,
        execution: RollbackExecution,
    ) -> list[str]:
        """Record the step's post-condition checks; return the names that failed."""
        checks = outcome.get("validations", {})
        failed: list[str] = []
        for name in step.validations:
            if name not in checks:
                passed, message = False, "not reported by the step action"
            else:
                passed, message = bool(checks[name]), ""
            result.validations.append(ValidationResult(name=name, passed=passed, message=message))
            if passed:
                execution.metrics.validations_passed += 1
            else:
                execution.metrics.validations_failed += 1
                failed.append(name)
        return failed

    @staticmethod
    def _merge(outcome: dict, execution: RollbackExecution) -> None:
        execution.metrics.documents_reverted += int(outcome.get("documents_reverted", 0))
        execution.metrics.collections_affected += int(outcome.get("collections_affected", 0))

    async def _run_validations(
        self,
        plan: RollbackPlan,
        execution: RollbackExecution,
        context: RollbackContext,
    ) -> bool:
        """Run plan-level validations; return True if a critical one failed."""
        execution.validations.clear()
        critical_failed = False
        for validation in plan.validations:
            message = ""
            try:
                passed = await asyncio.wait_for(
                    validation.check(context),
                    timeout=validation.timeout.total_seconds(),
                )
            except TimeoutError:
                passed, message = False, "timed out"
            except Exception as e:
                passed, message = False, str(e)
            if passed:
                execution.metrics.validations_passed += 1
            else:
                execution.metrics.validations_failed += 1
                logger.warning("Rollback validation '%s' failed %s", validation.name, message)
                if validation.critical:
                    critical_failed = True
            execution.validations.append(
                ValidationResult(
                    name=validation.name,
                    passed=passed,
                    message=message,
                    critical=validation.critical,
                )
            )
        return critical_failed


__all__ = [
    "ProgressCallback",
    "AlertCallback",
    "RollbackExecutor",
]
