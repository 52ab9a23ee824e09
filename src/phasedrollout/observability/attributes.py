"""
Standard span and metric attributes for phasedrollout.

Attribute constants used across components for consistent span naming and
metric labelling.

Example:
    >>> from phasedrollout.observability.attributes import (
    ...     ATTR_MIGRATION_ID,
    ...     ATTR_PHASE_NUMBER,
    ... )
    >>>
    >>> with tracer.span(
    ...     "phasedrollout.orchestrator.phase",
    ...     {ATTR_MIGRATION_ID: plan.migration_id, ATTR_PHASE_NUMBER: 1},
    ... ):
    ...     pass
"""

# =============================================================================
# Rollout Attributes
# =============================================================================

ATTR_MIGRATION_ID = "phasedrollout.migration.id"
"""Rollout identifier from the migration plan."""

ATTR_ENVIRONMENT = "phasedrollout.environment"
"""Target environment (staging or production)."""

ATTR_MIGRATION_STATE = "phasedrollout.migration.state"
"""Overall rollout state."""

ATTR_PHASE_NUMBER = "phasedrollout.phase.number"
"""1-based phase number (integer)."""

ATTR_PHASE_PERCENTAGE = "phasedrollout.phase.percentage"
"""Fleet percentage of the phase (float)."""

ATTR_PHASE_STATUS = "phasedrollout.phase.status"

ATTR_DOCUMENT_COUNT = "phasedrollout.documents.count"
"""Number of documents touched by an operation (integer)."""

ATTR_DRY_RUN = "phasedrollout.dry_run"

# =============================================================================
# Health Attributes
# =============================================================================

ATTR_HEALTH_SCORE = "phasedrollout.health.score"
"""Composite health score in [0, 100]."""

ATTR_HEALTH_STATUS = "phasedrollout.health.status"

ATTR_HEALTH_DEGRADED = "phasedrollout.health.degraded"
"""True when the snapshot was produced from a failed collection."""

# =============================================================================
# Trigger / Rollback Attributes
# =============================================================================

ATTR_TRIGGER_ID = "phasedrollout.trigger.id"

ATTR_TRIGGER_COUNT = "phasedrollout.trigger.count"
"""Number of triggers evaluated or fired (integer)."""

ATTR_ROLLBACK_EXECUTION_ID = "phasedrollout.rollback.execution_id"

ATTR_ROLLBACK_STEP = "phasedrollout.rollback.step"

ATTR_ROLLBACK_STATUS = "phasedrollout.rollback.status"

# =============================================================================
# Validation Attributes
# =============================================================================

ATTR_CHECK_NAME = "phasedrollout.check.name"

ATTR_CHECK_CATEGORY = "phasedrollout.check.category"

ATTR_READINESS = "phasedrollout.preflight.readiness"
"""Overall pre-flight readiness (ready, conditional, not_ready, blocked)."""

# =============================================================================
# Alert Attributes
# =============================================================================

ATTR_ALERT_SEVERITY = "phasedrollout.alert.severity"

ATTR_ALERT_CATEGORY = "phasedrollout.alert.category"

ATTR_CHANNEL_NAME = "phasedrollout.channel.name"

# =============================================================================
# Database Attributes (OpenTelemetry semantic conventions)
# =============================================================================

ATTR_DB_SYSTEM = "db.system"

ATTR_DB_OPERATION = "db.operation"

ATTR_HTTP_URL = "http.url"

__all__ = [
    "ATTR_MIGRATION_ID",
    "ATTR_ENVIRONMENT",
    "ATTR_MIGRATION_STATE",
    "ATTR_PHASE_NUMBER",
    "ATTR_PHASE_PERCENTAGE",
    "ATTR_PHASE_STATUS",
    "ATTR_DOCUMENT_COUNT",
    "ATTR_DRY_RUN",
    "ATTR_HEALTH_SCORE",
    "ATTR_HEALTH_STATUS",
    "ATTR_HEALTH_DEGRADED",
    "ATTR_TRIGGER_ID",
    "ATTR_TRIGGER_COUNT",
    "ATTR_ROLLBACK_EXECUTION_ID",
    "ATTR_ROLLBACK_STEP",
    "ATTR_ROLLBACK_STATUS",
    "ATTR_CHECK_NAME",
    "ATTR_CHECK_CATEGORY",
    "ATTR_READINESS",
    "ATTR_ALERT_SEVERITY",
    "ATTR_ALERT_CATEGORY",
    "ATTR_CHANNEL_NAME",
    "ATTR_DB_SYSTEM",
    "ATTR_DB_OPERATION",
    "ATTR_HTTP_URL",
]
