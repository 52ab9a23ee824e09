"""
Pre-flight validation.

PreFlightValidator runs a fixed battery of read-only checks before a
rollout starts and folds them into a readiness verdict:

    - infrastructure: Store Connectivity, System Resources
    - data: Schema Compatibility, Migration Compatibility
    - security: Security Rules Validation
    - performance: Performance Benchmark
    - business: Backup Freshness, Rollback Plan Present

Each check runs under a timeout. A CRITICAL failure blocks the rollout;
otherwise the failures are turned into a risk level and a
READY / CONDITIONAL / NOT_READY verdict. Nothing is retried.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from phasedrollout.engine import MigrationEngine
from phasedrollout.health import MetricsProvider
from phasedrollout.models import Environment, ResponseTimeMetrics, RollbackPlan, Severity
from phasedrollout.observability import (
    ATTR_CHECK_CATEGORY,
    ATTR_CHECK_NAME,
    ATTR_MIGRATION_ID,
    ATTR_READINESS,
    Tracer,
    create_tracer,
)
from phasedrollout.plan import MigrationPlan
from phasedrollout.stores import DocumentStore

logger = logging.getLogger(__name__)

SchemaPredicate = Callable[[dict[str, Any]], bool]


class CheckStatus(Enum):
    PASSED = "passed"
    FAILED = "failed"
    WARNING = "warning"
    SKIPPED = "skipped"


class CheckCategory(Enum):
    INFRASTRUCTURE = "infrastructure"
    DATA = "data"
    SECURITY = "security"
    PERFORMANCE = "performance"
    BUSINESS = "business"


class Readiness(Enum):
    """Overall pre-flight verdict."""

    READY = "ready"
    """No check failed."""

    CONDITIONAL = "conditional"
    """Some checks failed; the rollout may proceed with care."""

    NOT_READY = "not_ready"
    """More than three checks failed."""

    BLOCKED = "blocked"
    """A critical check failed; the rollout must not start."""


@dataclass(frozen=True)
class ValidatorConfig:
    """
    Thresholds and switches for pre-flight validation.

    Use ``for_environment`` for the usual staging/production defaults.
    """

    max_response_time_ms: float = 2000.0
    """Store scan latency (and benchmark P95) must stay below this."""

    max_memory_mb: float = 1024.0
    """Process memory must stay below this."""

    schema_collections: tuple[str, ...] = ()
    """Collections sampled by the schema compatibility check."""

    schema_sample_size: int = 100
    """Documents sampled per collection."""

    min_schema_compatibility: float = 0.95
    """Share of sampled documents the schema predicate must accept."""

    security_rules_path: Path | None = None
    """Security rules file that must exist (check skipped if None)."""

    max_backup_age: timedelta = timedelta(hours=72)
    """Newest backup must be younger than this."""

    benchmark_runs: int = 5
    """Number of bounded scans in the performance benchmark."""

    check_timeout: timedelta = timedelta(minutes=5)
    """Upper bound for a single check."""

    disabled_categories: frozenset[CheckCategory] = frozenset()
    """Categories whose checks are reported as SKIPPED."""

    required_approvals: tuple[str, ...] = ("tech-lead",)
    """Roles that must sign off (informational)."""

    def __post_init__(self) -> None:
        if not 0.0 <= self.min_schema_compatibility <= 1.0:
            raise ValueError(
                f"min_schema_compatibility must be within [0, 1], got {self.min_schema_compatibility}"
            )
        if self.benchmark_runs < 1:
            raise ValueError(f"benchmark_runs must be >= 1, got {self.benchmark_runs}")
        if self.check_timeout <= timedelta(0):
            raise ValueError("check_timeout must be positive")

    @classmethod
    def for_environment(cls, environment: Environment, **overrides: Any) -> ValidatorConfig:
        if environment.is_production:
            defaults: dict[str, Any] = {
                "max_response_time_ms": 1000.0,
                "max_backup_age": timedelta(hours=24),
                "required_approvals": ("engineering-manager", "database-admin"),
            }
        else:
            defaults = {
                "disabled_categories": frozenset({CheckCategory.BUSINESS}),
            }
        defaults.update(overrides)
        return cls(**defaults)


@dataclass
class CheckResult:
    """
    Result of one pre-flight check.

    Attributes:
        name: Check name
        category: Check category
        status: Outcome
        severity: Impact of a failure (LOW when passed)
        message: Human-readable summary
        details: Structured context
        metrics: Numbers measured by the check
        execution_time_ms: How long the check took
        automated_fix: Command or action that may fix a failure
        requirements: What must be true for the check to pass
    """

    name: str
    category: CheckCategory
    status: CheckStatus
    severity: Severity = Severity.LOW
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)
    metrics: dict[str, float] = field(default_factory=dict)
    execution_time_ms: float = 0.0
    automated_fix: str | None = None
    requirements: tuple[str, ...] = ()

    @property
    def failed(self) -> bool:
        return self.status == CheckStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "category": self.category.value,
            "status": self.status.value,
            "severity": self.severity.value,
            "message": self.message,
            "details": self.details,
            "metrics": self.metrics,
            "executionTimeMs": self.execution_time_ms,
            "automatedFix": self.automated_fix,
            "requirements": list(self.requirements),
        }


@dataclass(frozen=True)
class ApprovalRequirement:
    role: str
    required: bool = True
    obtained: bool = False
    conditions: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "required": self.required,
            "obtained": self.obtained,
            "conditions": list(self.conditions),
        }


@dataclass
class PreFlightReport:
    """Aggregated pre-flight verdict."""

    migration_id: str
    environment: str
    readiness: Readiness
    risk_level: Severity
    checks: list[CheckResult] = field(default_factory=list)
    blockers: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    approvals: list[ApprovalRequirement] = field(default_factory=list)
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    duration_seconds: float = 0.0

    @property
    def failed_checks(self) -> list[CheckResult]:
        return [c for c in self.checks if c.failed]

    def to_dict(self) -> dict[str, Any]:
        return {
            "migrationId": self.migration_id,
            "environment": self.environment,
            "readiness": self.readiness.value,
            "riskLevel": self.risk_level.value,
            "checks": [c.to_dict() for c in self.checks],
            "blockers": list(self.blockers),
            "recommendations": list(self.recommendations),
            "approvals": [a.to_dict() for a in self.approvals],
            "startedAt": self.started_at.isoformat(),
            "durationSeconds": self.duration_seconds,
        }


@dataclass(frozen=True)
class _Outcome:
    passed: bool
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    metrics: dict[str, float] = field(default_factory=dict)
    warning: bool = False
    skipped: bool = False


@dataclass(frozen=True)
class _Check:
    name: str
    category: CheckCategory
    run: Callable[[MigrationPlan], Awaitable[_Outcome]]
    critical: bool = False
    severity: Severity | None = None
    automated_fix: str | None = None
    requirements: tuple[str, ...] = ()

    def failure_severity(self) -> Severity:
        if self.severity is not None:
            return self.severity
        if self.category in (CheckCategory.INFRASTRUCTURE, CheckCategory.SECURITY):
            return Severity.CRITICAL if self.critical else Severity.HIGH
        return Severity.MEDIUM


class PreFlightValidator:
    """
    Validates that a rollout may start.

    Example:
        >>> validator = PreFlightValidator(
        ...     store,
        ...     provider,
        ...     ValidatorConfig.for_environment(plan.environment),
        ...     engine=engine,
        ...     rollback_plan=rollback_plan,
        ... )
        >>> report = await validator.validate(plan)
        >>> report.readiness
        <Readiness.READY: 'ready'>
    """

    def __init__(
        self,
        store: DocumentStore,
        provider: MetricsProvider,
        config: ValidatorConfig | None = None,
        *,
        engine: MigrationEngine | None = None,
        schema_predicate: SchemaPredicate | None = None,
        latest_backup: Callable[[], Awaitable[datetime | None]] | None = None,
        rollback_plan: RollbackPlan | None = None,
        clock: Callable[[], datetime] | None = None,
        tracer: Tracer | None = None,
        enable_tracing: bool = True,
    ) -> None:
        """
        Initialize the validator.

        Args:
            store: Backing store (only read)
            provider: Host metrics source
            config: Thresholds and switches
            engine: Migration engine asked for compatibility problems
            schema_predicate: Returns True for documents the migration can handle
            latest_backup: Returns the time of the newest backup
            rollback_plan: Rollback plan prepared for this rollout
            clock: Time source (defaults to datetime.now(UTC))
            tracer: Optional custom Tracer instance
            enable_tracing: Whether to enable OpenTelemetry tracing
        """
        self._tracer = tracer or create_tracer(__name__, enable_tracing)
        self._enable_tracing = self._tracer.enabled
        self._store = store
        self._provider = provider
        self.config = config or ValidatorConfig()
        self._engine = engine
        self._schema_predicate = schema_predicate
        self._latest_backup = latest_backup
        self._rollback_plan = rollback_plan
        self._clock = clock or (lambda: datetime.now(UTC))

    def _checks(self) -> list[_Check]:
        return [
            _Check(
                "Store Connectivity",
                CheckCategory.INFRASTRUCTURE,
                self._check_connectivity,
                critical=True,
                requirements=("Document store reachable", "Scan latency within limit"),
            ),
            _Check(
                "System Resources",
                CheckCategory.INFRASTRUCTURE,
                self._check_resources,
                requirements=("Process memory below limit",),
            ),
            _Check(
                "Schema Compatibility",
                CheckCategory.DATA,
                self._check_schema,
                requirements=("Sampled documents accepted by the schema predicate",),
            ),
            _Check(
                "Migration Compatibility",
                CheckCategory.DATA,
                self._check_migration,
                requirements=("Migration engine reports no problems",),
            ),
            _Check(
                "Security Rules Validation",
                CheckCategory.SECURITY,
                self._check_security_rules,
                critical=True,
                automated_fix="firebase deploy --only firestore:rules",
                requirements=("Security rules file present",),
            ),
            _Check(
                "Performance Benchmark",
                CheckCategory.PERFORMANCE,
                self._check_performance,
                requirements=("Benchmark P95 below limit",),
            ),
            _Check(
                "Backup Freshness",
                CheckCategory.BUSINESS,
                self._check_backup,
                severity=Severity.HIGH,
                automated_fix="gcloud firestore export",
                requirements=("Recent backup available",),
            ),
            _Check(
                "Rollback Plan Present",
                CheckCategory.BUSINESS,
                self._check_rollback_plan,
                requirements=("Rollback plan with at least one step",),
            ),
        ]

    async def validate(self, plan: MigrationPlan) -> PreFlightReport:
        """
        Run every check and aggregate the verdict.

        Never raises: an unexpected error yields a BLOCKED report.
        """
        started_at = self._clock()
        start = time.monotonic()
        with self._tracer.span(
            "phasedrollout.preflight.validate",
            {ATTR_MIGRATION_ID: plan.migration_id},
        ) as span:
            try:
                results = [await self._run_check(check, plan) for check in self._checks()]
                report = self._aggregate(plan, results, started_at)
            except Exception as e:
                logger.error("Pre-flight validation failed unexpectedly: %s", e, exc_info=True)
                report = PreFlightReport(
                    migration_id=plan.migration_id,
                    environment=plan.environment.value,
                    readiness=Readiness.BLOCKED,
                    risk_level=Severity.CRITICAL,
                    blockers=[f"System: validation error: {e}"],
                    started_at=started_at,
                )
            report.duration_seconds = time.monotonic() - start
            if span is not None:
                span.set_attribute(ATTR_READINESS, report.readiness.value)
            logger.info(
                "Pre-flight for %s: %s (risk %s, %d of %d checks failed)",
                plan.migration_id,
                report.readiness.value,
                report.risk_level.value,
                len(report.failed_checks),
                len(report.checks),
            )
            return report

    async def _run_check(self, check: _Check, plan: MigrationPlan) -> CheckResult:
        result = CheckResult(
            name=check.name,
            category=check.category,
            status=CheckStatus.SKIPPED,
            requirements=check.requirements,
        )
        if check.category in self.config.disabled_categories:
            result.message = f"{check.category.value} checks disabled"
            return result

        with self._tracer.span(
            "phasedrollout.preflight.check",
            {ATTR_CHECK_NAME: check.name, ATTR_CHECK_CATEGORY: check.category.value},
        ):
            start = time.perf_counter()
            timeout = self.config.check_timeout.total_seconds()
            try:
                outcome = await asyncio.wait_for(check.run(plan), timeout=timeout)
            except TimeoutError:
                outcome = None
                result.status = CheckStatus.FAILED
                result.severity = Severity.HIGH
                result.message = f"Check timed out after {timeout:.0f}s"
            except Exception as e:
                outcome = None
                logger.warning("Pre-flight check '%s' raised: %s", check.name, e)
                result.status = CheckStatus.FAILED
                result.severity = Severity.HIGH
                result.message = f"Check raised: {e}"
            result.execution_time_ms = (time.perf_counter() - start) * 1000

        if outcome is not None:
            result.message = outcome.message
            result.details = outcome.details
            result.metrics = outcome.metrics
            if outcome.skipped:
                result.status = CheckStatus.SKIPPED
            elif outcome.passed:
                result.status = CheckStatus.WARNING if outcome.warning else CheckStatus.PASSED
            else:
                result.status = CheckStatus.FAILED
                result.severity = check.failure_severity()
        if result.failed:
            result.automated_fix = check.automated_fix
            logger.warning(
                "Pre-flight check '%s' failed (%s): %s",
                check.name,
                result.severity.value,
                result.message,
            )
        return result

    def _aggregate(
        self,
        plan: MigrationPlan,
        results: list[CheckResult],
        started_at: datetime,
    ) -> PreFlightReport:
        failed = [r for r in results if r.failed]
        critical = [r for r in failed if r.severity == Severity.CRITICAL]
        high = [r for r in failed if r.severity == Severity.HIGH]

        if critical:
            readiness, risk = Readiness.BLOCKED, Severity.CRITICAL
        elif len(failed) > 3:
            readiness, risk = Readiness.NOT_READY, Severity.HIGH if high else Severity.MEDIUM
        elif high:
            readiness, risk = Readiness.CONDITIONAL, Severity.HIGH
        elif failed:
            readiness, risk = Readiness.CONDITIONAL, Severity.MEDIUM
        else:
            readiness, risk = Readiness.READY, Severity.LOW

        recommendations = [
            f"Address failed check: {r.name}" + (f" ({r.automated_fix})" if r.automated_fix else "")
            for r in failed
            if r.severity in (Severity.HIGH, Severity.MEDIUM)
        ]
        if any(r.status == CheckStatus.WARNING for r in results):
            recommendations.append("Review checks that passed with warnings")

        approvals = [
            ApprovalRequirement(
                role=role,
                conditions=(
                    ("Backup verified", "Rollback plan reviewed")
                    if role == "database-admin"
                    else ()
                ),
            )
            for role in self.config.required_approvals
        ]

        return PreFlightReport(
            migration_id=plan.migration_id,
            environment=plan.environment.value,
            readiness=readiness,
            risk_level=risk,
            checks=results,
            blockers=[f"{r.category.value}: {r.name}: {r.message}" for r in critical],
            recommendations=recommendations,
            approvals=approvals,
            started_at=started_at,
        )

    # =========================================================================
    # Checks
    # =========================================================================

    async def _sample_collection(self) -> str | None:
        if self.config.schema_collections:
            return self.config.schema_collections[0]
        names = await self._store.collections()
        return names[0] if names else None

    async def _timed_scan(self, collection: str, limit: int) -> float:
        started = time.perf_counter()
        await self._store.scan(collection, limit=limit)
        return (time.perf_counter() - started) * 1000

    async def _check_connectivity(self, plan: MigrationPlan) -> _Outcome:
        collection = await self._sample_collection()
        if collection is None:
            return _Outcome(True, "Store reachable (no collections)", warning=True)
        latency = await self._timed_scan(collection, 1)
        limit = self.config.max_response_time_ms
        return _Outcome(
            latency < limit,
            f"Scan latency {latency:.1f}ms (limit {limit:.0f}ms)",
            details={"collection": collection},
            metrics={"latency_ms": latency},
        )

    async def _check_resources(self, plan: MigrationPlan) -> _Outcome:
        system = await self._provider.system_metrics()
        limit = self.config.max_memory_mb
        return _Outcome(
            system.memory_mb < limit,
            f"Memory {system.memory_mb:.0f}MB (limit {limit:.0f}MB)",
            metrics={"memory_mb": system.memory_mb, "cpu_percent": system.cpu_percent},
        )

    async def _check_schema(self, plan: MigrationPlan) -> _Outcome:
        if self._schema_predicate is None or not self.config.schema_collections:
            return _Outcome(True, "No schema predicate configured", skipped=True)
        sampled = accepted = 0
        per_collection: dict[str, float] = {}
        for collection in self.config.schema_collections:
            docs = await self._store.scan(collection, limit=self.config.schema_sample_size)
            ok = sum(1 for doc in docs if self._schema_predicate(doc.data))
            sampled += len(docs)
            accepted += ok
            per_collection[collection] = ok / len(docs) if docs else 1.0
        ratio = accepted / sampled if sampled else 1.0
        minimum = self.config.min_schema_compatibility
        return _Outcome(
            ratio >= minimum,
            f"{ratio:.1%} of {sampled} sampled documents compatible (minimum {minimum:.0%})",
            details={"collections": per_collection},
            metrics={"compatibility": ratio, "sampled": float(sampled)},
        )

    async def _check_migration(self, plan: MigrationPlan) -> _Outcome:
        if self._engine is None:
            return _Outcome(True, "No migration engine configured", skipped=True)
        problems = await self._engine.check_compatibility(plan)
        if problems:
            return _Outcome(False, "; ".join(problems), details={"problems": problems})
        return _Outcome(True, "Migration engine ready")

    async def _check_security_rules(self, plan: MigrationPlan) -> _Outcome:
        path = self.config.security_rules_path
        if path is None:
            return _Outcome(True, "No security rules file configured", skipped=True)
        exists = await asyncio.to_thread(path.is_file)
        return _Outcome(
            exists,
            f"Security rules {'found' if exists else 'missing'} at {path}",
            details={"path": str(path)},
        )

    async def _check_performance(self, plan: MigrationPlan) -> _Outcome:
        collection = await self._sample_collection()
        if collection is None:
            return _Outcome(True, "No collection to benchmark", skipped=True)
        samples = [
            await self._timed_scan(collection, self.config.schema_sample_size)
            for _ in range(self.config.benchmark_runs)
        ]
        distribution = ResponseTimeMetrics.from_samples(samples)
        limit = self.config.max_response_time_ms
        return _Outcome(
            distribution.p95 < limit,
            f"Benchmark P95 {distribution.p95:.1f}ms (limit {limit:.0f}ms)",
            metrics=distribution.to_dict(),
        )

    async def _check_backup(self, plan: MigrationPlan) -> _Outcome:
        if self._latest_backup is None:
            return _Outcome(False, "No backup source configured")
        newest = await self._latest_backup()
        if newest is None:
            return _Outcome(False, "No backup found")
        age = self._clock() - newest
        limit = self.config.max_backup_age
        return _Outcome(
            age < limit,
            f"Newest backup is {age.total_seconds() / 3600:.1f}h old "
            f"(limit {limit.total_seconds() / 3600:.0f}h)",
            details={"newest_backup": newest.isoformat()},
            metrics={"age_hours": age.total_seconds() / 3600},
        )

    async def _check_rollback_plan(self, plan: MigrationPlan) -> _Outcome:
        if self._rollback_plan is None or not self._rollback_plan.steps:
            return _Outcome(False, "No rollback plan prepared")
        return _Outcome(
            True,
            f"Rollback plan {self._rollback_plan.id} with {len(self._rollback_plan.steps)} steps",
        )


def summarize(report: PreFlightReport) -> str:
    """One line per check, for CLI output."""
    lines = [f"Pre-flight: {report.readiness.value} (risk {report.risk_level.value})"]
    for check in report.checks:
        lines.append(f"  [{check.status.value:>7}] {check.name}: {check.message}")
    return "\n".join(lines)


__all__ = [
    "CheckStatus",
    "CheckCategory",
    "Readiness",
    "ValidatorConfig",
    "CheckResult",
    "ApprovalRequirement",
    "PreFlightReport",
    "PreFlightValidator",
    "SchemaPredicate",
    "summarize",
]
