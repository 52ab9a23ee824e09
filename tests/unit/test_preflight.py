"""
Unit tests for pre-flight validation.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from phasedrollout.engine import DocumentMigrationEngine
from phasedrollout.models import Environment, Severity
from phasedrollout.preflight import (
    CheckCategory,
    CheckStatus,
    PreFlightValidator,
    Readiness,
    ValidatorConfig,
    summarize,
)

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


class SlowEngine:
    """Engine whose compatibility check never finishes in time."""

    async def check_compatibility(self, plan):
        await asyncio.sleep(1)
        return []


def _checks(report):
    return {c.name: c for c in report.checks}


class TestValidatorConfig:
    def test_staging_disables_business_checks(self):
        config = ValidatorConfig.for_environment(Environment.STAGING)
        assert config.disabled_categories == frozenset({CheckCategory.BUSINESS})

    def test_production_is_stricter(self):
        config = ValidatorConfig.for_environment(Environment.PRODUCTION)
        assert config.max_response_time_ms == 1000.0
        assert config.max_backup_age == timedelta(hours=24)
        assert config.disabled_categories == frozenset()

    def test_overrides(self):
        config = ValidatorConfig.for_environment(Environment.STAGING, benchmark_runs=2)
        assert config.benchmark_runs == 2

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"min_schema_compatibility": 1.5},
            {"benchmark_runs": 0},
            {"check_timeout": timedelta(0)},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            ValidatorConfig(**kwargs)


class TestPreFlightValidator:
    """Tests for PreFlightValidator.validate."""

    @pytest.mark.asyncio
    async def test_staging_ready(self, plan, seeded_store, provider, tracer):
        validator = PreFlightValidator(
            seeded_store,
            provider,
            ValidatorConfig.for_environment(Environment.STAGING),
            engine=DocumentMigrationEngine(seeded_store, ["users"], enable_tracing=False),
            tracer=tracer,
        )

        report = await validator.validate(plan)

        assert report.readiness == Readiness.READY
        assert report.risk_level == Severity.LOW
        assert len(report.checks) == 8
        checks = _checks(report)
        assert checks["Store Connectivity"].status == CheckStatus.PASSED
        assert checks["Migration Compatibility"].status == CheckStatus.PASSED
        assert checks["Backup Freshness"].status == CheckStatus.SKIPPED
        assert checks["Security Rules Validation"].status == CheckStatus.SKIPPED
        assert tracer.span_names.count("phasedrollout.preflight.check") == 6

    @pytest.mark.asyncio
    async def test_missing_security_rules_blocks(self, plan, seeded_store, provider):
        """Test a critical check failure yields BLOCKED with a blocker entry."""
        validator = PreFlightValidator(
            seeded_store,
            provider,
            ValidatorConfig.for_environment(
                Environment.STAGING, security_rules_path=Path("/nonexistent/firestore.rules")
            ),
            enable_tracing=False,
        )

        report = await validator.validate(plan)

        assert report.readiness == Readiness.BLOCKED
        assert report.risk_level == Severity.CRITICAL
        assert report.blockers == [
            "security: Security Rules Validation: Security rules missing at "
            "/nonexistent/firestore.rules"
        ]
        check = _checks(report)["Security Rules Validation"]
        assert check.automated_fix == "firebase deploy --only firestore:rules"

    @pytest.mark.asyncio
    async def test_present_security_rules_pass(self, plan, seeded_store, provider, tmp_path):
        rules = tmp_path / "firestore.rules"
        rules.write_text("rules_version = '2';")
        validator = PreFlightValidator(
            seeded_store,
            provider,
            ValidatorConfig.for_environment(Environment.STAGING, security_rules_path=rules),
            enable_tracing=False,
        )

        report = await validator.validate(plan)

        assert _checks(report)["Security Rules Validation"].status == CheckStatus.PASSED

    @pytest.mark.asyncio
    async def test_check_timeout_is_high_failure(self, plan, seeded_store, provider):
        """Test a check exceeding its timeout fails with HIGH severity."""
        validator = PreFlightValidator(
            seeded_store,
            provider,
            ValidatorConfig.for_environment(
                Environment.STAGING, check_timeout=timedelta(milliseconds=20)
            ),
            engine=SlowEngine(),
            enable_tracing=False,
        )

        report = await validator.validate(plan)

        check = _checks(report)["Migration Compatibility"]
        assert check.status == CheckStatus.FAILED
        assert check.severity == Severity.HIGH
        assert check.message.startswith("Check timed out")
        assert report.readiness == Readiness.CONDITIONAL
        assert report.risk_level == Severity.HIGH

    @pytest.mark.asyncio
    async def test_check_exception_is_high_failure(self, plan, seeded_store, provider):
        provider.fail_with = RuntimeError("psutil unavailable")
        validator = PreFlightValidator(seeded_store, provider, enable_tracing=False)

        report = await validator.validate(plan)

        check = _checks(report)["System Resources"]
        assert check.status == CheckStatus.FAILED
        assert check.severity == Severity.HIGH
        assert "psutil unavailable" in check.message

    @pytest.mark.asyncio
    async def test_many_failures_not_ready(self, make_plan, seeded_store, provider):
        """Test more than three non-critical failures give NOT_READY."""
        config = ValidatorConfig.for_environment(
            Environment.PRODUCTION,
            max_memory_mb=64,
            schema_collections=("users",),
        )
        validator = PreFlightValidator(
            seeded_store,
            provider,
            config,
            engine=DocumentMigrationEngine(seeded_store, ["ghosts"], enable_tracing=False),
            schema_predicate=lambda doc: False,
            enable_tracing=False,
        )

        report = await validator.validate(make_plan(environment="production"))

        failed = {c.name for c in report.failed_checks}
        assert failed == {
            "System Resources",
            "Schema Compatibility",
            "Migration Compatibility",
            "Backup Freshness",
            "Rollback Plan Present",
        }
        assert report.readiness == Readiness.NOT_READY
        assert report.risk_level == Severity.HIGH
        assert report.blockers == []
        assert "Address failed check: Backup Freshness (gcloud firestore export)" in (
            report.recommendations
        )

    @pytest.mark.asyncio
    async def test_backup_freshness(self, make_plan, seeded_store, provider):
        backup_time = NOW - timedelta(hours=2)

        async def latest_backup():
            return backup_time

        validator = PreFlightValidator(
            seeded_store,
            provider,
            ValidatorConfig.for_environment(Environment.PRODUCTION),
            latest_backup=latest_backup,
            clock=lambda: NOW,
            enable_tracing=False,
        )
        plan = make_plan(environment="production")

        fresh = _checks(await validator.validate(plan))["Backup Freshness"]
        backup_time = NOW - timedelta(hours=30)
        stale = _checks(await validator.validate(plan))["Backup Freshness"]

        assert fresh.status == CheckStatus.PASSED
        assert fresh.metrics["age_hours"] == pytest.approx(2.0)
        assert stale.status == CheckStatus.FAILED
        assert stale.severity == Severity.HIGH

    @pytest.mark.asyncio
    async def test_production_approvals(self, make_plan, seeded_store, provider):
        validator = PreFlightValidator(
            seeded_store,
            provider,
            ValidatorConfig.for_environment(Environment.PRODUCTION),
            enable_tracing=False,
        )

        report = await validator.validate(make_plan(environment="production"))

        roles = {a.role: a for a in report.approvals}
        assert set(roles) == {"engineering-manager", "database-admin"}
        assert roles["database-admin"].conditions == ("Backup verified", "Rollback plan reviewed")

    @pytest.mark.asyncio
    async def test_report_serialization_and_summary(self, plan, seeded_store, provider):
        report = await PreFlightValidator(seeded_store, provider, enable_tracing=False).validate(plan)

        data = report.to_dict()
        assert data["migrationId"] == "mig-test"
        assert len(data["checks"]) == 8

        text = summarize(report)
        assert text.splitlines()[0].startswith("Pre-flight: ")
        assert "Store Connectivity" in text
