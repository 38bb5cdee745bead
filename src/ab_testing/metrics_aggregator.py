# メトリクス集計
"""
MetricsAggregator: 結果イベントを記録し、バリアントごとの集計を都度再計算する

設計方針:
- 追記専用: record() はイベントを追加するだけで既存値を更新しない
- 再計算: aggregate() は常に生イベントから計算する。事前集計カウンターを
  持たないため、並行書き込みでもカウンターのずれが起きない
- 検証: 実験/バリアント参照の構造検証のみ行い、値の範囲は検証しない
- ゼロ除算なし: イベントが0件でも0値の集計を返す
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Set

from src.ab_testing.repository import (
    AssignmentRepository,
    ExperimentRepository,
    InMemoryAssignmentRepository,
    InMemoryMetricEventRepository,
    MetricEventRepository,
)
from src.config.experimentation_config import (
    TIME_SERIES_GRANULARITY,
    ExperimentationConfig,
)
from src.models.errors import ConfigurationError, InvalidReferenceError
from src.models.experiment import Experiment, MetricEvent


logger = logging.getLogger(__name__)


@dataclass
class EventSummary:
    """(バリアント, イベント種別) ごとの集計"""
    count: int = 0
    distinct_subjects: int = 0
    total: float = 0.0
    mean: float = 0.0
    min_value: float = 0.0
    max_value: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "count": self.count,
            "distinct_subjects": self.distinct_subjects,
            "total": self.total,
            "mean": self.mean,
            "min_value": self.min_value,
            "max_value": self.max_value,
        }


@dataclass
class VariantMetrics:
    """バリアントのコンバージョン指標"""
    variant_id: str
    sample_size: int = 0
    conversions: int = 0
    conversion_rate: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "conversion_rate": self.conversion_rate,
            "sample_size": self.sample_size,
            "conversions": self.conversions,
        }


@dataclass
class TimeSeriesMetrics:
    """期間バケットごとのバリアント平均値"""
    dates: List[datetime] = field(default_factory=list)
    metrics: Dict[str, List[float]] = field(default_factory=dict)


class MetricsAggregator:
    """メトリクス集計クラス

    使用例:
        aggregator = MetricsAggregator(experiments, events, assignments)
        aggregator.record(MetricEvent("exp-1", "control", "s-1", "click", 1.0))
        summary = aggregator.aggregate("exp-1")
        summary["control"]["click"].count  # 1

    Attributes:
        experiments: 実験リポジトリ（参照検証用）
        events: イベントリポジトリ
        assignments: 割り当てリポジトリ（サンプルサイズ算出用）
    """

    def __init__(
        self,
        experiments: ExperimentRepository,
        events: Optional[MetricEventRepository] = None,
        assignments: Optional[AssignmentRepository] = None,
        config: Optional[ExperimentationConfig] = None,
    ):
        self.experiments = experiments
        self.events = events or InMemoryMetricEventRepository()
        self.assignments = assignments or InMemoryAssignmentRepository()
        self.config = config or ExperimentationConfig()

    def record(self, event: MetricEvent) -> None:
        """イベントを記録

        Raises:
            InvalidReferenceError: 未知の実験またはバリアントを参照している場合
        """
        experiment = self._experiment(event.experiment_id)
        if experiment.get_variant(event.variant_id) is None:
            raise InvalidReferenceError(
                f"Unknown variant '{event.variant_id}' for experiment "
                f"{event.experiment_id}. Valid variants: {experiment.variant_ids}"
            )
        self.events.append(event)

    def aggregate(self, experiment_id: str) -> Dict[str, Dict[str, EventSummary]]:
        """バリアント × イベント種別の集計を生イベントから再計算

        実験の全バリアントをキーに含む。イベントのないバリアントは空辞書。

        Raises:
            InvalidReferenceError: 未知の実験の場合
        """
        experiment = self._experiment(experiment_id)
        grouped: Dict[str, Dict[str, List[MetricEvent]]] = {
            variant_id: defaultdict(list) for variant_id in experiment.variant_ids
        }
        for event in self.events.list_for_experiment(experiment_id):
            if event.variant_id not in grouped:
                logger.warning(
                    f"未知のバリアントのイベントを無視: experiment={experiment_id}, "
                    f"variant={event.variant_id}"
                )
                continue
            grouped[event.variant_id][event.event_type].append(event)

        return {
            variant_id: {
                event_type: self._summarize(events)
                for event_type, events in by_type.items()
            }
            for variant_id, by_type in grouped.items()
        }

    def summary(
        self, experiment_id: str, variant_id: str, event_type: str
    ) -> EventSummary:
        """単一の (バリアント, イベント種別) の集計。イベントがなければ0値"""
        aggregated = self.aggregate(experiment_id)
        if variant_id not in aggregated:
            raise InvalidReferenceError(
                f"Unknown variant '{variant_id}' for experiment {experiment_id}"
            )
        return aggregated[variant_id].get(event_type, EventSummary())

    def variant_metrics(
        self,
        experiment_id: str,
        conversion_event: Optional[str] = None,
    ) -> Dict[str, VariantMetrics]:
        """バリアントごとのコンバージョン率とサンプルサイズ

        sample_size は割り当て数。割り当てが記録されていない実験では
        イベントを送った被験者数で代用する。conversions はコンバージョン
        イベントを送った被験者数（sample_size が上限）。
        """
        experiment = self._experiment(experiment_id)
        conversion_event = (
            conversion_event
            or experiment.primary_metric
            or self.config.default_conversion_event
        )

        assigned: Dict[str, Set[str]] = {v: set() for v in experiment.variant_ids}
        for assignment in self.assignments.list_for_experiment(experiment_id):
            if assignment.variant_id in assigned:
                assigned[assignment.variant_id].add(assignment.subject_id)

        active: Dict[str, Set[str]] = {v: set() for v in experiment.variant_ids}
        converted: Dict[str, Set[str]] = {v: set() for v in experiment.variant_ids}
        for event in self.events.list_for_experiment(experiment_id):
            if event.variant_id not in active:
                continue
            active[event.variant_id].add(event.subject_id)
            if event.event_type == conversion_event:
                converted[event.variant_id].add(event.subject_id)

        results: Dict[str, VariantMetrics] = {}
        for variant_id in experiment.variant_ids:
            population = assigned[variant_id] or active[variant_id]
            sample_size = len(population)
            conversions = min(len(converted[variant_id]), sample_size)
            results[variant_id] = VariantMetrics(
                variant_id=variant_id,
                sample_size=sample_size,
                conversions=conversions,
                conversion_rate=conversions / sample_size if sample_size > 0 else 0.0,
            )
        return results

    def values(self, experiment_id: str, event_type: str) -> Dict[str, List[float]]:
        """バリアントごとの生の値（連続値メトリクスの検定用）"""
        experiment = self._experiment(experiment_id)
        result: Dict[str, List[float]] = {v: [] for v in experiment.variant_ids}
        for event in self.events.list_for_experiment(experiment_id):
            if event.event_type == event_type and event.variant_id in result:
                result[event.variant_id].append(float(event.value))
        return result

    def time_series(
        self,
        experiment_id: str,
        start: datetime,
        end: datetime,
        granularity: str = "daily",
    ) -> TimeSeriesMetrics:
        """期間バケットごとのバリアント平均値

        空のバケットは 0.0（NaN にしない）。

        Raises:
            ConfigurationError: 粒度が不明、または start > end の場合
        """
        if granularity not in TIME_SERIES_GRANULARITY:
            raise ConfigurationError(
                f"Unknown granularity '{granularity}'. "
                f"Valid: {list(TIME_SERIES_GRANULARITY.keys())}"
            )
        if start > end:
            raise ConfigurationError(f"start {start} is after end {end}")

        experiment = self._experiment(experiment_id)
        step = timedelta(seconds=TIME_SERIES_GRANULARITY[granularity])
        events = [
            e for e in self.events.list_for_experiment(experiment_id)
            if start <= e.timestamp <= end
        ]

        series = TimeSeriesMetrics(
            metrics={variant_id: [] for variant_id in experiment.variant_ids}
        )
        current = start
        while current <= end:
            bucket_end = current + step
            series.dates.append(current)
            for variant_id in experiment.variant_ids:
                bucket_values = [
                    e.value for e in events
                    if e.variant_id == variant_id and current <= e.timestamp < bucket_end
                ]
                series.metrics[variant_id].append(
                    sum(bucket_values) / len(bucket_values) if bucket_values else 0.0
                )
            current = bucket_end
        return series

    def _experiment(self, experiment_id: str) -> Experiment:
        experiment = self.experiments.get(experiment_id)
        if experiment is None:
            raise InvalidReferenceError(f"Unknown experiment {experiment_id}")
        return experiment

    @staticmethod
    def _summarize(events: List[MetricEvent]) -> EventSummary:
        if not events:
            return EventSummary()
        values = [float(e.value) for e in events]
        return EventSummary(
            count=len(values),
            distinct_subjects=len({e.subject_id for e in events}),
            total=sum(values),
            mean=sum(values) / len(values),
            min_value=min(values),
            max_value=max(values),
        )
