"""
Observability utilities for phasedrollout.

Tracing follows a composition pattern: every component accepts an optional
``tracer`` and an ``enable_tracing`` flag and builds its tracer with
``create_tracer``.

Example:
    >>> from phasedrollout.observability import create_tracer
    >>>
    >>> class MyComponent:
    ...     def __init__(self, tracer=None, enable_tracing: bool = True):
    ...         self._tracer = tracer or create_tracer(__name__, enable_tracing)
    ...         self._enable_tracing = self._tracer.enabled
"""

from phasedrollout.observability.attributes import (
    ATTR_ALERT_CATEGORY,
    ATTR_ALERT_SEVERITY,
    ATTR_CHANNEL_NAME,
    ATTR_CHECK_CATEGORY,
    ATTR_CHECK_NAME,
    ATTR_DB_OPERATION,
    ATTR_DB_SYSTEM,
    ATTR_DOCUMENT_COUNT,
    ATTR_DRY_RUN,
    ATTR_ENVIRONMENT,
    ATTR_HEALTH_DEGRADED,
    ATTR_HEALTH_SCORE,
    ATTR_HEALTH_STATUS,
    ATTR_HTTP_URL,
    ATTR_MIGRATION_ID,
    ATTR_MIGRATION_STATE,
    ATTR_PHASE_NUMBER,
    ATTR_PHASE_PERCENTAGE,
    ATTR_PHASE_STATUS,
    ATTR_READINESS,
    ATTR_ROLLBACK_EXECUTION_ID,
    ATTR_ROLLBACK_STATUS,
    ATTR_ROLLBACK_STEP,
    ATTR_TRIGGER_COUNT,
    ATTR_TRIGGER_ID,
)
from phasedrollout.observability.tracer import (
    MockTracer,
    NullTracer,
    OpenTelemetryTracer,
    SpanKindEnum,
    Tracer,
    create_tracer,
)

__all__ = [
    # Tracer
    "Tracer",
    "NullTracer",
    "OpenTelemetryTracer",
    "MockTracer",
    "SpanKindEnum",
    "create_tracer",
    # Attributes
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
