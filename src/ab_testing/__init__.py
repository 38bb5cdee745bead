# A/B Testing Module
"""
A/Bテスト実験モジュール

設計方針:
- (実験, 被験者) ごとの冪等なバリアント割り当て（SHA-256 による決定論的選択）
- 生イベントからの都度集計（事前集計カウンターを持たない）
- 2標本比率の z 検定による統計的有意性分析
"""

from src.ab_testing.assignment import (
    AssignmentStrategy,
    VariantAssignmentService,
    bucket_for,
    select_variant,
)
from src.ab_testing.experiment_service import ExperimentService, VariantAssignment
from src.ab_testing.metrics_aggregator import (
    EventSummary,
    MetricsAggregator,
    TimeSeriesMetrics,
    VariantMetrics,
)
from src.ab_testing.significance import (
    MeanComparisonResult,
    ProportionSample,
    SignificanceCalculator,
    SignificanceResult,
    normal_cdf,
)

__all__ = [
    "AssignmentStrategy",
    "VariantAssignmentService",
    "bucket_for",
    "select_variant",
    "ExperimentService",
    "VariantAssignment",
    "EventSummary",
    "MetricsAggregator",
    "TimeSeriesMetrics",
    "VariantMetrics",
    "MeanComparisonResult",
    "ProportionSample",
    "SignificanceCalculator",
    "SignificanceResult",
    "normal_cdf",
]
