"""
Runtime configuration for a rollout.

This module provides:
- OrchestratorConfig: Switches that change how a plan is executed
- ExecutorConfig: Rollback executor tuning

Plan content (phases, thresholds, triggers) lives in MigrationPlan; these
classes only hold what the operator chooses when starting a run.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

ENV_STATUS_DIR = "PHASEDROLLOUT_STATUS_DIR"


@dataclass(frozen=True)
class ExecutorConfig:
    """
    Rollback executor tuning.

    Attributes:
        step_timeout_factor: Multiplier applied to each step's estimated time
            to obtain its timeout
        performance_baseline_ms: P95 latency accepted by the Performance
            Baseline validation
        restore_batch_size: Documents per batch when restoring a JSON backup
        import_command: Command used to restore bulk exports; ``{location}``
            is replaced by the backup location
    """

    step_timeout_factor: float = 2.0
    performance_baseline_ms: float = 2000.0
    restore_batch_size: int = 500
    import_command: tuple[str, ...] = ("gcloud", "firestore", "import", "{location}")

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.step_timeout_factor <= 0:
            raise ValueError(
                f"step_timeout_factor must be positive, got {self.step_timeout_factor}. "
                "Use 2.0 (default) to allow each step twice its estimate."
            )
        if self.restore_batch_size < 1:
            raise ValueError(
                f"restore_batch_size must be positive, got {self.restore_batch_size}"
            )
        if not any("{location}" in part for part in self.import_command):
            raise ValueError("import_command must contain a '{location}' placeholder")


@dataclass(frozen=True)
class OrchestratorConfig:
    """
    Operator switches for one run.

    Attributes:
        dry_run: Run the full state machine without writing documents; phase
            windows and approval waits are skipped
        force: Ignore manual approval and a NOT_READY pre-flight verdict
            (BLOCKED still stops the run)
        skip_validation: Do not run pre-flight validation
        status_dir: Directory for the status file (in-memory status if None)
        enable_tracing: Whether components emit OpenTelemetry spans
        enable_metrics: Whether components record OpenTelemetry metrics
        approval_timeout: Give up waiting for approval after this long and
            pause (wait forever if None)
        executor: Rollback executor tuning
    """

    dry_run: bool = False
    force: bool = False
    skip_validation: bool = False
    status_dir: Path | None = None
    enable_tracing: bool = True
    enable_metrics: bool = True
    approval_timeout: timedelta | None = None
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)

    def __post_init__(self) -> None:
        """Validate configuration values."""
        if self.approval_timeout is not None and self.approval_timeout <= timedelta(0):
            raise ValueError(
                f"approval_timeout must be positive, got {self.approval_timeout}. "
                "Use None to wait for approval indefinitely."
            )

    @classmethod
    def from_env(cls, **overrides: object) -> OrchestratorConfig:
        """
        Build a config, taking ``status_dir`` from PHASEDROLLOUT_STATUS_DIR
        unless given explicitly.
        """
        if "status_dir" not in overrides and os.environ.get(ENV_STATUS_DIR):
            overrides["status_dir"] = Path(os.environ[ENV_STATUS_DIR])
        return cls(**overrides)  # type: ignore[arg-type]


__all__ = [
    "ENV_STATUS_DIR",
    "ExecutorConfig",
    "OrchestratorConfig",
]
