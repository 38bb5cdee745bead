# tests/ab_testing/test_metrics_aggregator.py
"""MetricsAggregator の単体テスト

検証観点:
- イベント0件の集計はゼロ値（例外・ゼロ除算なし）
- 未知の実験/バリアントの参照は InvalidReferenceError
- 集計は常に生イベントから再計算される
- 時系列バケットは NaN を含まない
"""

import math
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest

from src.ab_testing.metrics_aggregator import EventSummary, MetricsAggregator
from src.ab_testing.repository import (
    InMemoryAssignmentRepository,
    InMemoryExperimentRepository,
    InMemoryMetricEventRepository,
)
from src.models.errors import ConfigurationError, InvalidReferenceError
from src.models.experiment import (
    Assignment,
    Experiment,
    ExperimentStatus,
    MetricEvent,
    Variant,
)


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def experiment():
    return Experiment(
        id="exp-1",
        name="checkout",
        variants=[
            Variant(id="control", name="control", allocation=0.5),
            Variant(id="treatment", name="treatment", allocation=0.5),
        ],
        status=ExperimentStatus.ACTIVE,
    )


@pytest.fixture
def assignments():
    return InMemoryAssignmentRepository()


@pytest.fixture
def aggregator(experiment, assignments):
    return MetricsAggregator(
        InMemoryExperimentRepository([experiment]),
        InMemoryMetricEventRepository(),
        assignments,
    )


def _event(variant, subject, event_type="conversion", value=1.0, timestamp=None):
    return MetricEvent(
        experiment_id="exp-1",
        variant_id=variant,
        subject_id=subject,
        event_type=event_type,
        value=value,
        timestamp=timestamp or datetime(2026, 3, 1, 12, 0),
    )


# ============================================================================
# record / aggregate
# ============================================================================


class TestRecord:
    """record のテスト"""

    def test_unknown_experiment_raises(self, aggregator):
        with pytest.raises(InvalidReferenceError):
            aggregator.record(MetricEvent("missing", "control", "s1", "click"))

    def test_unknown_variant_raises(self, aggregator):
        with pytest.raises(InvalidReferenceError):
            aggregator.record(_event("ghost", "s1"))

    def test_values_are_not_range_checked(self, aggregator):
        aggregator.record(_event("control", "s1", "revenue", value=-5.0))
        assert aggregator.summary("exp-1", "control", "revenue").total == -5.0


class TestAggregate:
    """aggregate のテスト"""

    def test_zero_events(self, aggregator):
        result = aggregator.aggregate("exp-1")
        assert result == {"control": {}, "treatment": {}}
        assert aggregator.summary("exp-1", "control", "click") == EventSummary()

    def test_summary_values(self, aggregator):
        aggregator.record(_event("control", "s1", "latency", 100.0))
        aggregator.record(_event("control", "s1", "latency", 300.0))
        aggregator.record(_event("control", "s2", "latency", 200.0))

        summary = aggregator.summary("exp-1", "control", "latency")

        assert summary.count == 3
        assert summary.distinct_subjects == 2
        assert summary.total == 600.0
        assert summary.mean == 200.0
        assert summary.min_value == 100.0
        assert summary.max_value == 300.0

    def test_recomputed_after_new_events(self, aggregator):
        aggregator.record(_event("treatment", "s1", "click"))
        assert aggregator.summary("exp-1", "treatment", "click").count == 1
        aggregator.record(_event("treatment", "s2", "click"))
        assert aggregator.summary("exp-1", "treatment", "click").count == 2

    def test_concurrent_records_are_all_counted(self, aggregator):
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(
                lambda i: aggregator.record(_event("control", f"s{i}", "click")),
                range(500),
            ))
        assert aggregator.summary("exp-1", "control", "click").count == 500


# ============================================================================
# variant_metrics
# ============================================================================


class TestVariantMetrics:
    """コンバージョン率のテスト"""

    def test_sample_size_from_assignments(self, aggregator, assignments):
        for i in range(4):
            assignments.create(Assignment("exp-1", f"s{i}", "control"))
        aggregator.record(_event("control", "s0"))
        aggregator.record(_event("control", "s0"))  # 同じ被験者は1回

        metrics = aggregator.variant_metrics("exp-1")

        assert metrics["control"].sample_size == 4
        assert metrics["control"].conversions == 1
        assert metrics["control"].conversion_rate == 0.25
        assert metrics["treatment"].sample_size == 0
        assert metrics["treatment"].conversion_rate == 0.0

    def test_sample_size_falls_back_to_active_subjects(self, aggregator):
        aggregator.record(_event("treatment", "s1", "view"))
        aggregator.record(_event("treatment", "s2", "view"))
        aggregator.record(_event("treatment", "s2", "conversion"))

        metrics = aggregator.variant_metrics("exp-1")

        assert metrics["treatment"].sample_size == 2
        assert metrics["treatment"].conversion_rate == 0.5

    def test_values_by_variant(self, aggregator):
        aggregator.record(_event("control", "s1", "revenue", 10.0))
        aggregator.record(_event("treatment", "s2", "revenue", 12.5))
        assert aggregator.values("exp-1", "revenue") == {
            "control": [10.0],
            "treatment": [12.5],
        }


# ============================================================================
# time_series
# ============================================================================


class TestTimeSeries:
    """time_series のテスト"""

    def test_hourly_buckets(self, aggregator):
        start = datetime(2026, 3, 1, 0, 0)
        aggregator.record(_event("control", "s1", "latency", 100.0, start + timedelta(minutes=5)))
        aggregator.record(_event("control", "s2", "latency", 300.0, start + timedelta(minutes=50)))
        aggregator.record(_event("treatment", "s3", "latency", 80.0, start + timedelta(hours=2)))

        series = aggregator.time_series("exp-1", start, start + timedelta(hours=2), "hourly")

        assert len(series.dates) == 3
        assert series.metrics["control"] == [200.0, 0.0, 0.0]
        assert series.metrics["treatment"] == [0.0, 0.0, 80.0]

    def test_empty_range_has_no_nan(self, aggregator):
        start = datetime(2026, 3, 1)
        series = aggregator.time_series("exp-1", start, start + timedelta(days=6), "daily")
        assert len(series.dates) == 7
        for values in series.metrics.values():
            assert not any(math.isnan(v) for v in values)

    def test_unknown_granularity_raises(self, aggregator):
        now = datetime.now()
        with pytest.raises(ConfigurationError):
            aggregator.time_series("exp-1", now, now, "monthly")

    def test_inverted_range_raises(self, aggregator):
        now = datetime.now()
        with pytest.raises(ConfigurationError):
            aggregator.time_series("exp-1", now, now - timedelta(hours=1))
