"""
Exceptions raised by the phased rollout orchestrator.

Exception Hierarchy:
    RolloutError (base)
    +-- PlanError
    +-- ValidationFailure
    +-- PhaseExecutionFailure
    |   +-- TimeoutFailure
    +-- RollbackTriggerFired
    +-- RollbackStepFailure
    +-- RestoreError
    +-- RollbackInProgressError
    +-- InvalidTransitionError
    +-- StatusStoreError
    +-- SystemFailure

Error Classification:
    Every exception carries an ErrorClassification with:
    - ErrorSeverity: CRITICAL, ERROR, WARNING, INFO levels
    - ErrorRecoverability: RECOVERABLE, TRANSIENT, FATAL categories
    - An error code and an operator-facing suggested action

The orchestrator converts phase-level failures into rollback decisions
and everything it cannot classify into SystemFailure.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from phasedrollout.models import PhaseStatus, RollbackTrigger


class ErrorSeverity(Enum):
    """
    Severity level of rollout errors.

    Attributes:
        CRITICAL: Requires immediate operator attention (e.g. failed rollback).
        ERROR: Significant failure that stopped the rollout.
        WARNING: Issue that halted progress but left the system consistent.
        INFO: Informational condition, not a failure.
    """

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def should_alert(self) -> bool:
        """True for CRITICAL and ERROR levels."""
        return self in (ErrorSeverity.CRITICAL, ErrorSeverity.ERROR)

    @property
    def log_level(self) -> int:
        """
        Get the corresponding Python logging level.

        Returns:
            Python logging level constant.
        """
        level_map = {
            ErrorSeverity.CRITICAL: logging.CRITICAL,
            ErrorSeverity.ERROR: logging.ERROR,
            ErrorSeverity.WARNING: logging.WARNING,
            ErrorSeverity.INFO: logging.INFO,
        }
        return level_map[self]


class ErrorRecoverability(Enum):
    """
    Recoverability classification for rollout errors.

    Attributes:
        RECOVERABLE: The rollout can be restarted once an operator fixes the cause.
        TRANSIENT: Temporary condition; retrying later may succeed.
        FATAL: Manual intervention is required before anything else runs.
    """

    RECOVERABLE = "recoverable"
    TRANSIENT = "transient"
    FATAL = "fatal"

    @property
    def should_retry(self) -> bool:
        return self == ErrorRecoverability.TRANSIENT

    @property
    def should_abort(self) -> bool:
        return self == ErrorRecoverability.FATAL


@dataclass(frozen=True)
class ErrorClassification:
    """
    Metadata describing how an error should be handled.

    Attributes:
        severity: The severity level of the error.
        recoverability: How the error can be recovered from.
        error_code: Unique error code for programmatic handling.
        category: Error category for grouping related errors.
        suggested_action: Human-readable guidance for operators.
        metrics_labels: Labels for metrics instrumentation.
    """

    severity: ErrorSeverity
    recoverability: ErrorRecoverability
    error_code: str
    category: str
    suggested_action: str
    metrics_labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "severity": self.severity.value,
            "recoverability": self.recoverability.value,
            "error_code": self.error_code,
            "category": self.category,
            "suggested_action": self.suggested_action,
        }
        if self.metrics_labels:
            result["metrics_labels"] = self.metrics_labels
        return result


class RolloutError(Exception):
    """
    Base exception for all rollout errors.

    Attributes:
        message: Human-readable error description.
        migration_id: The rollout the error belongs to, if known.
        phase_number: The phase the error belongs to, if any.
        suggested_action: Overrides the classification's suggested action.
    """

    _default_classification: ErrorClassification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ROLLOUT_ERROR",
        category="general",
        suggested_action="Review rollout logs and the status record",
    )

    def __init__(
        self,
        message: str,
        *,
        migration_id: str | None = None,
        phase_number: int | None = None,
        suggested_action: str | None = None,
    ) -> None:
        self.message = message
        self.migration_id = migration_id
        self.phase_number = phase_number
        self._suggested_action = suggested_action
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.migration_id:
            parts.append(f"migration_id={self.migration_id}")
        if self.phase_number is not None:
            parts.append(f"phase={self.phase_number}")
        return " ".join(parts)

    @property
    def classification(self) -> ErrorClassification:
        """
        Get the error classification for this exception.

        Subclasses override _default_classification.
        """
        return self._default_classification

    @property
    def severity(self) -> ErrorSeverity:
        return self.classification.severity

    @property
    def recoverability(self) -> ErrorRecoverability:
        return self.classification.recoverability

    @property
    def error_code(self) -> str:
        return self.classification.error_code

    @property
    def suggested_action(self) -> str:
        return self._suggested_action or self.classification.suggested_action

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for the status record and alerts.

        Returns:
            Dictionary representation of the error.
        """
        return {
            "message": self.message,
            "migration_id": self.migration_id,
            "phase_number": self.phase_number,
            "error_code": self.error_code,
            "suggested_action": self.suggested_action,
            "classification": self.classification.to_dict(),
        }


class PlanError(RolloutError):
    """Raised when a migration plan cannot be loaded or is invalid."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="PLAN_INVALID",
        category="configuration",
        suggested_action="Fix the migration plan document and rerun",
    )


class ValidationFailure(RolloutError):
    """
    Raised when pre-flight or phase-readiness validation fails.

    Attributes:
        failed_checks: Names of the checks that failed.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="VALIDATION_FAILED",
        category="validation",
        suggested_action="Resolve the failed checks before starting the rollout",
    )

    def __init__(
        self,
        message: str,
        *,
        failed_checks: Sequence[str] = (),
        migration_id: str | None = None,
        phase_number: int | None = None,
    ) -> None:
        self.failed_checks = list(failed_checks)
        super().__init__(message, migration_id=migration_id, phase_number=phase_number)


class PhaseExecutionFailure(RolloutError):
    """Raised when the migration work of a phase fails."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="PHASE_EXECUTION_FAILED",
        category="phase",
        suggested_action="Inspect the migration engine error; the phase was rolled back",
    )


class TimeoutFailure(PhaseExecutionFailure):
    """
    Raised when an operation exceeds its time bound.

    Attributes:
        timeout_seconds: The bound that was exceeded.
        operation: What timed out.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="OPERATION_TIMEOUT",
        category="timeout",
        suggested_action="Increase the phase duration or reduce the phase target size",
    )

    def __init__(
        self,
        operation: str,
        timeout_seconds: float,
        *,
        migration_id: str | None = None,
        phase_number: int | None = None,
    ) -> None:
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"{operation} timed out after {timeout_seconds:.1f}s",
            migration_id=migration_id,
            phase_number=phase_number,
        )


class RollbackTriggerFired(RolloutError):
    """
    Signals that one or more rollback triggers fired.

    This is a state transition cause rather than a defect.

    Attributes:
        triggers: The triggers that fired.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ROLLBACK_TRIGGERED",
        category="rollback",
        suggested_action="Investigate the breached metric before retrying the rollout",
    )

    def __init__(
        self,
        triggers: Sequence[RollbackTrigger],
        *,
        reason: str | None = None,
        migration_id: str | None = None,
        phase_number: int | None = None,
    ) -> None:
        self.triggers = list(triggers)
        names = ", ".join(trigger.name for trigger in self.triggers)
        super().__init__(
            reason or f"Rollback triggered by: {names}",
            migration_id=migration_id,
            phase_number=phase_number,
        )

    @property
    def trigger_id(self) -> str:
        return self.triggers[0].id if self.triggers else "phase_condition"


class RollbackStepFailure(RolloutError):
    """
    Raised when a rollback step fails.

    Attributes:
        step_name: The failed step.
        emergency_stop: Whether the step halts the whole rollback.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="ROLLBACK_STEP_FAILED",
        category="rollback",
        suggested_action="Manual intervention required: complete the rollback by hand",
    )

    def __init__(
        self,
        step_name: str,
        cause: str,
        *,
        emergency_stop: bool = False,
        migration_id: str | None = None,
    ) -> None:
        self.step_name = step_name
        self.emergency_stop = emergency_stop
        super().__init__(
            f"Rollback step '{step_name}' failed: {cause}",
            migration_id=migration_id,
        )


class RestoreError(RolloutError):
    """
    Raised when a restore backend cannot restore a backup.

    Attributes:
        location: The backup location that failed to restore.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="RESTORE_FAILED",
        category="rollback",
        suggested_action="Restore the backup manually and verify data integrity",
    )

    def __init__(self, location: str, cause: str, *, migration_id: str | None = None) -> None:
        self.location = location
        super().__init__(f"Restore from {location} failed: {cause}", migration_id=migration_id)


class RollbackInProgressError(RolloutError):
    """Raised when a rollback is requested while another is still running."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.WARNING,
        recoverability=ErrorRecoverability.RECOVERABLE,
        error_code="ROLLBACK_IN_PROGRESS",
        category="rollback",
        suggested_action="Wait for the running rollback to finish",
    )

    def __init__(self, execution_id: str, *, migration_id: str | None = None) -> None:
        self.execution_id = execution_id
        super().__init__(
            f"Rollback already in progress: {execution_id}",
            migration_id=migration_id,
        )


class InvalidTransitionError(RolloutError):
    """
    Raised when a phase status transition is not allowed.

    Attributes:
        current: Status the phase is in.
        target: Status that was requested.
    """

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.FATAL,
        error_code="INVALID_PHASE_TRANSITION",
        category="state",
        suggested_action="This indicates a bug in the orchestrator; report it",
    )

    def __init__(
        self,
        current: PhaseStatus,
        target: PhaseStatus,
        *,
        phase_number: int | None = None,
    ) -> None:
        self.current = current
        self.target = target
        super().__init__(
            f"Invalid phase transition: {current.value} -> {target.value}",
            phase_number=phase_number,
        )


class StatusStoreError(RolloutError):
    """Raised when the status record cannot be loaded or saved."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.ERROR,
        recoverability=ErrorRecoverability.TRANSIENT,
        error_code="STATUS_STORE_ERROR",
        category="persistence",
        suggested_action="Check the status directory or database is writable",
    )


class SystemFailure(RolloutError):
    """Raised for unexpected errors inside the control loop."""

    _default_classification = ErrorClassification(
        severity=ErrorSeverity.CRITICAL,
        recoverability=ErrorRecoverability.FATAL,
        error_code="SYSTEM_FAILURE",
        category="system",
        suggested_action="Inspect the orchestrator logs; the rollout state may need manual review",
    )


__all__ = [
    "ErrorSeverity",
    "ErrorRecoverability",
    "ErrorClassification",
    "RolloutError",
    "PlanError",
    "ValidationFailure",
    "PhaseExecutionFailure",
    "TimeoutFailure",
    "RollbackTriggerFired",
    "RollbackStepFailure",
    "RestoreError",
    "RollbackInProgressError",
    "InvalidTransitionError",
    "StatusStoreError",
    "SystemFailure",
]
