"""
phasedrollout - Phased migration deployment orchestrator.

This library provides:
- Migration plans with percentage-based phases, triggers and criteria
- Health snapshots with a 0-100 score and threshold alerts
- Automatic rollback triggers with sustained-breach cooldowns
- A step-based rollback executor with restore backends
- Pre-flight validation with readiness verdicts
- Alert dispatch to log, webhook and Slack channels
- Durable status records (file, in-memory, SQLAlchemy)
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("phasedrollout")
except PackageNotFoundError:
    # Package not installed (running from source without install)
    __version__ = "0.0.0.dev0"

# Alerting
from phasedrollout.alerts import (
    AlertChannel,
    AlertDispatcher,
    LogChannel,
    SlackChannel,
    WebhookChannel,
    build_channels,
)

# Configuration
from phasedrollout.config import ExecutorConfig, OrchestratorConfig

# Orchestration
from phasedrollout.context import OrchestratorContext, RolloutControl
from phasedrollout.engine import DocumentMigrationEngine, MigrationEngine, PhaseWorkResult

# Exceptions
from phasedrollout.exceptions import (
    InvalidTransitionError,
    PhaseExecutionFailure,
    PlanError,
    RestoreError,
    RollbackInProgressError,
    RollbackStepFailure,
    RollbackTriggerFired,
    RolloutError,
    StatusStoreError,
    SystemFailure,
    TimeoutFailure,
    ValidationFailure,
)
from phasedrollout.gate import GateDecision, ProgressionGate, evaluate_readiness

# Health monitoring
from phasedrollout.health import (
    HealthAlertAnalyzer,
    HealthSnapshotCollector,
    MetricsProvider,
    ProcessMetricsProvider,
    compute_health_score,
)
from phasedrollout.metrics import RolloutMetrics

# Core models
from phasedrollout.models import (
    Alert,
    AlertSeverity,
    Environment,
    HealthSnapshot,
    HealthStatus,
    MigrationState,
    PhaseStatus,
    RollbackExecution,
    RollbackPlan,
    RollbackTrigger,
    Severity,
)
from phasedrollout.orchestrator import PhaseOrchestrator

# Plans
from phasedrollout.plan import MigrationPlan, create_default_plan, load_plan

# Pre-flight validation
from phasedrollout.preflight import PreFlightReport, PreFlightValidator, Readiness

# Status persistence
from phasedrollout.repositories import (
    FileStatusStore,
    InMemoryStatusStore,
    SQLAlchemyStatusStore,
    StatusStore,
)

# Rollback
from phasedrollout.rollback import RollbackExecutor, build_rollback_plan
from phasedrollout.status import Phase, PhasedMigrationStatus

# Document stores
from phasedrollout.stores import DocumentStore, InMemoryDocumentStore
from phasedrollout.triggers import RollbackTriggerEngine

__all__ = [
    "__version__",
    # Models
    "Alert",
    "AlertSeverity",
    "Environment",
    "HealthSnapshot",
    "HealthStatus",
    "MigrationState",
    "PhaseStatus",
    "RollbackExecution",
    "RollbackPlan",
    "RollbackTrigger",
    "Severity",
    # Plans
    "MigrationPlan",
    "create_default_plan",
    "load_plan",
    # Status
    "Phase",
    "PhasedMigrationStatus",
    "StatusStore",
    "InMemoryStatusStore",
    "FileStatusStore",
    "SQLAlchemyStatusStore",
    # Stores
    "DocumentStore",
    "InMemoryDocumentStore",
    # Health
    "HealthAlertAnalyzer",
    "HealthSnapshotCollector",
    "MetricsProvider",
    "ProcessMetricsProvider",
    "compute_health_score",
    # Triggers and gate
    "RollbackTriggerEngine",
    "GateDecision",
    "ProgressionGate",
    "evaluate_readiness",
    # Rollback
    "RollbackExecutor",
    "build_rollback_plan",
    # Pre-flight
    "PreFlightReport",
    "PreFlightValidator",
    "Readiness",
    # Alerting
    "AlertChannel",
    "AlertDispatcher",
    "LogChannel",
    "SlackChannel",
    "WebhookChannel",
    "build_channels",
    # Orchestration
    "DocumentMigrationEngine",
    "MigrationEngine",
    "PhaseWorkResult",
    "OrchestratorConfig",
    "ExecutorConfig",
    "OrchestratorContext",
    "RolloutControl",
    "PhaseOrchestrator",
    "RolloutMetrics",
    # Exceptions
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
