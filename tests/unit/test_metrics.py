"""
Unit tests for RolloutMetrics.
"""

import pytest
from opentelemetry import metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from phasedrollout.metrics import METER_NAME, RolloutMetrics


@pytest.fixture(scope="module")
def metric_reader():
    """Install an SDK meter provider backed by an in-memory reader."""
    if isinstance(metrics.get_meter_provider(), MeterProvider):
        pytest.skip("a meter provider is already installed")
    reader = InMemoryMetricReader()
    metrics.set_meter_provider(MeterProvider(metric_readers=[reader]))
    return reader


def _points(reader, name):
    data = reader.get_metrics_data()
    for resource_metrics in data.resource_metrics:
        for scope_metrics in resource_metrics.scope_metrics:
            if scope_metrics.scope.name != METER_NAME:
                continue
            for metric in scope_metrics.metrics:
                if metric.name == name:
                    return list(metric.data.data_points)
    return []


class TestRolloutMetricsSnapshot:
    """Tests for the in-process snapshot."""

    def test_records_everything(self):
        m = RolloutMetrics("mig-1", "staging", enable_metrics=False)

        m.record_documents_migrated(10, phase_number=1)
        m.record_documents_migrated(0, phase_number=2)
        m.record_health_score(92.5)
        m.record_trigger_fire("error_rate_critical")
        m.record_trigger_fire("error_rate_critical")
        m.record_rollback("completed", 1.5)
        m.record_alert("critical")
        m.record_phase_duration(1, 60.0, "completed")

        snapshot = m.get_snapshot()
        assert snapshot.documents_migrated == 10
        assert snapshot.health_score == 92.5
        assert snapshot.trigger_fires == {"error_rate_critical": 2}
        assert snapshot.rollbacks == {"completed": 1}
        assert snapshot.alerts == {"critical": 1}
        assert snapshot.to_dict()["phase_durations"] == {"1": 60.0}

    def test_snapshot_is_a_copy(self):
        m = RolloutMetrics("mig-1", "staging", enable_metrics=False)
        snapshot = m.get_snapshot()

        m.record_alert("info")

        assert snapshot.alerts == {}


class TestRolloutMetricsExport:
    """Tests for instruments exported through the OpenTelemetry SDK."""

    def test_counter_carries_labels(self, metric_reader):
        m = RolloutMetrics("mig-export", "production")

        m.record_documents_migrated(25, phase_number=2)

        points = [
            p for p in _points(metric_reader, "phasedrollout.documents.migrated")
            if p.attributes.get("migration_id") == "mig-export"
        ]
        assert len(points) == 1
        assert points[0].value == 25
        assert points[0].attributes["environment"] == "production"
        assert points[0].attributes["phase"] == "2"

    def test_health_gauge_observed(self, metric_reader):
        m = RolloutMetrics("mig-gauge", "staging")
        m.record_health_score(61.0)

        values = [
            p.value
            for p in _points(metric_reader, "phasedrollout.health.score")
            if p.attributes.get("migration_id") == "mig-gauge"
        ]
        assert values == [61.0]
