"""
Health snapshot collection and scoring.

The HealthSnapshotCollector is invoked once per monitoring interval. It
gathers host, application and store metrics, derives a composite health
score and a coarse status, and keeps a time-ordered history of snapshots
bounded by a retention window.

Scoring starts at 100 and subtracts fixed penalties for each breached
threshold (see ``compute_health_score``); the result is clamped to [0, 100].
A collection failure never raises: the collector logs it and returns a
degraded snapshot (score 0, CRITICAL) so the trigger engine still sees a
signal.

Usage:
    >>> collector = HealthSnapshotCollector(store, ProcessMetricsProvider())
    >>> snapshot = await collector.collect()
    >>> snapshot.health_score, snapshot.status

See Also:
    - phasedrollout.triggers: Consumes snapshots
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable

import psutil

from phasedrollout.models import (
    Alert,
    AlertSeverity,
    ApplicationMetrics,
    HealthSnapshot,
    HealthStatus,
    ResponseTimeMetrics,
    StoreMetrics,
    SystemMetrics,
)
from phasedrollout.observability import (
    ATTR_HEALTH_DEGRADED,
    ATTR_HEALTH_SCORE,
    ATTR_HEALTH_STATUS,
    Tracer,
    create_tracer,
)
from phasedrollout.plan import HealthThresholds
from phasedrollout.stores import DocumentStore

logger = logging.getLogger(__name__)

MAINTENANCE_ENV_VAR = "PHASEDROLLOUT_MAINTENANCE_MODE"


@dataclass(frozen=True)
class ScoreThresholds:
    """
    Thresholds and penalties used by ``compute_health_score``.

    Attributes:
        memory_mb: Process memory above which the score drops by memory_penalty
        cpu_percent: CPU utilisation above which the score drops by cpu_penalty
        disk_percent: Disk utilisation above which the score drops by disk_penalty
        error_rate: Error rate above which the score drops by error_penalty
        response_p95_ms: Application P95 above which the score drops by latency_penalty
        connection_pool: Pool utilisation above which the score drops by pool_penalty
        query_p95_ms: Store query P95 above which the score drops by query_penalty
    """

    memory_mb: float = 1024.0
    cpu_percent: float = 80.0
    disk_percent: float = 90.0
    error_rate: float = 0.05
    response_p95_ms: float = 2000.0
    connection_pool: float = 0.9
    query_p95_ms: float = 1000.0
    memory_penalty: float = 10.0
    cpu_penalty: float = 15.0
    disk_penalty: float = 20.0
    error_penalty: float = 25.0
    latency_penalty: float = 15.0
    pool_penalty: float = 10.0
    query_penalty: float = 15.0


def compute_health_score(
    system: SystemMetrics,
    application: ApplicationMetrics,
    store: StoreMetrics,
    thresholds: ScoreThresholds | None = None,
    degradation_penalty: float = 0.0,
) -> float:
    """
    Compute the composite health score.

    Pure function: identical inputs always give the identical score.

    Args:
        system: Host metrics
        application: Application metrics
        store: Store metrics
        thresholds: Score thresholds (defaults to ScoreThresholds())
        degradation_penalty: External degradation signal (>= 0) subtracted as-is

    Returns:
        Score in [0, 100]
    """
    t = thresholds or ScoreThresholds()
    score = 100.0
    if system.memory_mb > t.memory_mb:
        score -= t.memory_penalty
    if system.cpu_percent > t.cpu_percent:
        score -= t.cpu_penalty
    if system.disk_percent > t.disk_percent:
        score -= t.disk_penalty
    if application.error_rate > t.error_rate:
        score -= t.error_penalty
    if application.response_time.p95 > t.response_p95_ms:
        score -= t.latency_penalty
    if store.connection_pool_utilization > t.connection_pool:
        score -= t.pool_penalty
    if store.query_latency.p95 > t.query_p95_ms:
        score -= t.query_penalty
    score -= max(0.0, degradation_penalty)
    return max(0.0, min(100.0, score))


def derive_status(
    score: float,
    open_alerts: Sequence[Alert] = (),
    maintenance: bool = False,
) -> HealthStatus:
    """
    Classify a health score.

    Args:
        score: Composite health score
        open_alerts: Alerts that are neither acknowledged nor resolved
        maintenance: Maintenance mode flag (overrides everything)

    Returns:
        The health status
    """
    if maintenance:
        return HealthStatus.MAINTENANCE
    critical = sum(1 for a in open_alerts if a.severity == AlertSeverity.CRITICAL)
    errors = sum(1 for a in open_alerts if a.severity == AlertSeverity.ERROR)
    if critical > 0 or score < 50:
        return HealthStatus.CRITICAL
    if errors > 2 or score < 70:
        return HealthStatus.WARNING
    return HealthStatus.HEALTHY


def maintenance_from_env() -> bool:
    """Read the maintenance flag from the environment."""
    return os.environ.get(MAINTENANCE_ENV_VAR, "").lower() in ("1", "true", "yes", "on")


@runtime_checkable
class MetricsProvider(Protocol):
    """Source of host, application and store load metrics."""

    async def system_metrics(self) -> SystemMetrics: ...

    async def application_metrics(self) -> ApplicationMetrics: ...

    async def store_load(self) -> tuple[float, float]:
        """Return (connection pool utilisation, store operations per second)."""
        ...


class ProcessMetricsProvider:
    """
    MetricsProvider backed by psutil and an in-process request window.

    Host metrics come from psutil. Application metrics are computed from
    requests recorded with ``record_request`` (the migration engine records
    each batch write) over a sliding window.

    Example:
        >>> provider = ProcessMetricsProvider(window=timedelta(seconds=60))
        >>> provider.record_request(12.5, success=True)
        >>> metrics = await provider.application_metrics()
    """

    def __init__(
        self,
        *,
        window: timedelta = timedelta(seconds=60),
        disk_path: str = "/",
        pool_size: int = 10,
    ) -> None:
        self._window = window.total_seconds()
        self._disk_path = disk_path
        self._pool_size = pool_size
        self._process = psutil.Process()
        self._started = time.monotonic()
        self._requests: deque[tuple[float, float, bool]] = deque()
        self._in_flight = 0

    def record_request(self, latency_ms: float, success: bool) -> None:
        self._requests.append((time.monotonic(), latency_ms, success))

    def request_started(self) -> None:
        self._in_flight += 1

    def request_finished(self) -> None:
        self._in_flight = max(0, self._in_flight - 1)

    def _prune(self) -> None:
        cutoff = time.monotonic() - self._window
        while self._requests and self._requests[0][0] < cutoff:
            self._requests.popleft()

    def _sample_system(self) -> SystemMetrics:
        memory = self._process.memory_info().rss / (1024 * 1024)
        return SystemMetrics(
            memory_mb=memory,
            cpu_percent=psutil.cpu_percent(interval=None),
            disk_percent=psutil.disk_usage(self._disk_path).percent,
            uptime_seconds=time.monotonic() - self._started,
        )

    async def system_metrics(self) -> SystemMetrics:
        return await asyncio.to_thread(self._sample_system)

    async def application_metrics(self) -> ApplicationMetrics:
        self._prune()
        if not self._requests:
            return ApplicationMetrics()
        latencies = [latency for _, latency, _ in self._requests]
        failures = sum(1 for _, _, ok in self._requests if not ok)
        return ApplicationMetrics(
            request_rate=len(self._requests) / self._window,
            response_time=ResponseTimeMetrics.from_samples(latencies),
            error_rate=failures / len(self._requests),
        )

    async def store_load(self) -> tuple[float, float]:
        self._prune()
        utilisation = min(1.0, self._in_flight / self._pool_size) if self._pool_size else 0.0
        return utilisation, len(self._requests) / self._window


class HealthSnapshotCollector:
    """
    Produces HealthSnapshots and keeps their history.

    Each ``collect`` call samples the store with a bounded scan (the latency
    feeds the query latency distribution), asks the metrics provider for
    host and application metrics, scores the result and appends the
    snapshot to the history. Snapshots older than ``retention`` (relative
    to the newest one) are discarded oldest first.

    Example:
        >>> collector = HealthSnapshotCollector(
        ...     store,
        ...     provider,
        ...     sample_collection="users",
        ...     retention=timedelta(hours=1),
        ... )
        >>> snapshot = await collector.collect()
    """

    def __init__(
        self,
        store: DocumentStore,
        provider: MetricsProvider,
        *,
        sample_collection: str | None = None,
        sample_limit: int = 10,
        score_thresholds: ScoreThresholds | None = None,
        retention: timedelta = timedelta(hours=1),
        max_history: int = 10_000,
        sample_window: int = 20,
        maintenance: Callable[[], bool] = maintenance_from_env,
        open_alerts: Callable[[], Sequence[Alert]] | None = None,
        degradation_signal: Callable[[], float] | None = None,
        clock: Callable[[], datetime] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the collector.

        Args:
            store: Backing store to sample
            provider: Source of host/application/store-load metrics
            sample_collection: Collection to sample (first collection if None)
            sample_limit: Documents read by each sample scan
            score_thresholds: Thresholds for the health score
            retention: How long snapshots are kept
            max_history: Hard cap on retained snapshots
            sample_window: Number of sample latencies kept for percentiles
            maintenance: Returns the maintenance flag
            open_alerts: Returns alerts that are still open
            degradation_signal: Returns an additional score penalty
            clock: Time source (defaults to datetime.now(UTC))
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._store = store
        self._provider = provider
        self._sample_collection = sample_collection
        self._sample_limit = sample_limit
        self._score_thresholds = score_thresholds or ScoreThresholds()
        self._retention = retention
        self._history: deque[HealthSnapshot] = deque(maxlen=max_history)
        self._sample_latencies: deque[float] = deque(maxlen=sample_window)
        self._maintenance = maintenance
        self._open_alerts = open_alerts or (lambda: ())
        self._degradation_signal = degradation_signal or (lambda: 0.0)
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def history(self) -> list[HealthSnapshot]:
        """Retained snapshots, oldest first."""
        return list(self._history)

    @property
    def latest(self) -> HealthSnapshot | None:
        return self._history[-1] if self._history else None

    async def _sample_store(self) -> StoreMetrics:
        collection = self._sample_collection
        if collection is None:
            names = await self._store.collections()
            collection = names[0] if names else None
        document_count = 0
        if collection is not None:
            started = time.perf_counter()
            docs = await self._store.scan(collection, limit=self._sample_limit)
            self._sample_latencies.append((time.perf_counter() - started) * 1000)
            document_count = len(docs)
        pool, ops = await self._provider.store_load()
        return StoreMetrics(
            query_latency=ResponseTimeMetrics.from_samples(list(self._sample_latencies)),
            connection_pool_utilization=pool,
            operations_per_second=ops,
            document_count=document_count,
        )

    async def collect(self) -> HealthSnapshot:
        """
        Collect, score and record one snapshot.

        Returns:
            The new snapshot (degraded if collection failed)
        """
        with self._tracer.span("phasedrollout.health.collect") as span:
            now = self._clock()
            try:
                system = await self._provider.system_metrics()
                application = await self._provider.application_metrics()
                store = await self._sample_store()
                score = compute_health_score(
                    system,
                    application,
                    store,
                    self._score_thresholds,
                    self._degradation_signal(),
                )
                open_alerts = [a for a in self._open_alerts() if a.is_open]
                snapshot = HealthSnapshot(
                    timestamp=now,
                    system=system,
                    application=application,
                    store=store,
                    health_score=score,
                    status=derive_status(score, open_alerts, self._maintenance()),
                )
            except Exception as e:
                logger.error("Health collection failed: %s", e, exc_info=True)
                snapshot = self.degraded_snapshot(now, str(e))

            if span is not None:
                span.set_attribute(ATTR_HEALTH_SCORE, snapshot.health_score)
                span.set_attribute(ATTR_HEALTH_STATUS, snapshot.status.value)
                span.set_attribute(ATTR_HEALTH_DEGRADED, snapshot.degraded)

            self._record(snapshot)
            return snapshot

    def degraded_snapshot(self, now: datetime, error: str) -> HealthSnapshot:
        return HealthSnapshot(
            timestamp=now,
            system=SystemMetrics(),
            application=ApplicationMetrics(),
            store=StoreMetrics(),
            health_score=0.0,
            status=HealthStatus.CRITICAL,
            degraded=True,
            error=error,
        )

    def _record(self, snapshot: HealthSnapshot) -> None:
        self._history.append(snapshot)
        cutoff = snapshot.timestamp - self._retention
        while self._history and self._history[0].timestamp < cutoff:
            self._history.popleft()


class HealthAlertAnalyzer:
    """
    Turns threshold breaches in a snapshot into alerts.

    Checks application P95 latency (warning and critical), error rate,
    health score and memory against the plan's HealthThresholds.
    """

    def __init__(self, thresholds: HealthThresholds, source: str = "health_monitor") -> None:
        self._thresholds = thresholds
        self._source = source

    def analyze(self, snapshot: HealthSnapshot) -> list[Alert]:
        t = self._thresholds
        alerts: list[Alert] = []
        p95 = snapshot.application.response_time.p95
        if p95 > t.response_time.critical:
            alerts.append(
                self._alert(
                    AlertSeverity.CRITICAL,
                    "performance",
                    f"Critical response time: P95 {p95:.0f}ms",
                    {"p95_ms": p95, "threshold": t.response_time.critical},
                )
            )
        elif p95 > t.response_time.warning:
            alerts.append(
                self._alert(
                    AlertSeverity.WARNING,
                    "performance",
                    f"High response time: P95 {p95:.0f}ms",
                    {"p95_ms": p95, "threshold": t.response_time.warning},
                )
            )
        error_rate = snapshot.application.error_rate
        if error_rate > t.error_rate.critical:
            alerts.append(
                self._alert(
                    AlertSeverity.CRITICAL,
                    "error_rate",
                    f"Critical error rate: {error_rate:.2%}",
                    {"error_rate": error_rate, "threshold": t.error_rate.critical},
                )
            )
        if snapshot.health_score < t.health_score.critical:
            alerts.append(
                self._alert(
                    AlertSeverity.CRITICAL,
                    "health",
                    f"Critical health score: {snapshot.health_score:.0f}",
                    {"health_score": snapshot.health_score, "degraded": snapshot.degraded},
                )
            )
        if snapshot.system.memory_mb > t.memory_usage.critical:
            alerts.append(
                self._alert(
                    AlertSeverity.ERROR,
                    "resources",
                    f"High memory usage: {snapshot.system.memory_mb:.0f}MB",
                    {"memory_mb": snapshot.system.memory_mb},
                )
            )
        return alerts

    def _alert(self, severity: AlertSeverity, category: str, message: str, details: dict) -> Alert:
        return Alert(
            severity=severity,
            source=self._source,
            category=category,
            message=message,
            details=details,
        )


__all__ = [
    "MAINTENANCE_ENV_VAR",
    "ScoreThresholds",
    "compute_health_score",
    "derive_status",
    "maintenance_from_env",
    "MetricsProvider",
    "ProcessMetricsProvider",
    "HealthSnapshotCollector",
    "HealthAlertAnalyzer",
]
