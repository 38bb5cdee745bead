# 実験サービス（コラボレーター向けファサード）
"""
ExperimentService: ルーティング/検証層に公開する実験操作

公開操作:
- create_experiment / activate / pause / resume / complete: ライフサイクル
- assign_variant(subject_id, experiment_id) -> VariantAssignment
- track_event(experiment_id, variant_id, subject_id, event_type, value)
- compute_metrics(experiment_id) -> {variant_id: {conversion_rate, sample_size}}
- compute_significance(experiment_id) -> SignificanceResult

リクエストの解析・認証・永続化I/Oは呼び出し側の責務。
エラーは呼び出し側にそのまま伝播し、レスポンスへの変換も呼び出し側が行う。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from src.ab_testing.assignment import AssignmentStrategy, VariantAssignmentService
from src.ab_testing.metrics_aggregator import MetricsAggregator
from src.ab_testing.repository import (
    AssignmentRepository,
    ExperimentRepository,
    InMemoryAssignmentRepository,
    InMemoryExperimentRepository,
    InMemoryMetricEventRepository,
    MetricEventRepository,
)
from src.ab_testing.significance import (
    MeanComparisonResult,
    ProportionSample,
    SignificanceCalculator,
    SignificanceResult,
)
from src.config.experimentation_config import ExperimentationConfig
from src.models.errors import ComputationError, ExperimentStateError
from src.models.experiment import (
    Experiment,
    ExperimentStatus,
    MetricEvent,
    Variant,
)


logger = logging.getLogger(__name__)


# 許可される状態遷移
_TRANSITIONS: Dict[ExperimentStatus, List[ExperimentStatus]] = {
    ExperimentStatus.DRAFT: [ExperimentStatus.PENDING, ExperimentStatus.ACTIVE],
    ExperimentStatus.PENDING: [ExperimentStatus.ACTIVE],
    ExperimentStatus.ACTIVE: [ExperimentStatus.PAUSED, ExperimentStatus.COMPLETED],
    ExperimentStatus.PAUSED: [ExperimentStatus.ACTIVE, ExperimentStatus.COMPLETED],
    ExperimentStatus.COMPLETED: [],
}


@dataclass(frozen=True)
class VariantAssignment:
    """assign_variant の結果"""
    variant_id: str
    weights: Dict[str, float] = field(default_factory=dict)


class ExperimentService:
    """実験サービス

    使用例:
        service = ExperimentService()
        experiment = service.create_experiment(
            name="ranking_weights",
            variants=[
                {"id": "control", "allocation": 0.5},
                {"id": "boosted", "allocation": 0.5, "weights": {"title": 2.0}},
            ],
        )
        service.activate(experiment.id)

        assignment = service.assign_variant("session-1", experiment.id)
        service.track_event(experiment.id, assignment.variant_id, "session-1", "conversion")
        result = service.compute_significance(experiment.id)

    Attributes:
        experiments: 実験リポジトリ
        assigner: バリアント割り当てサービス
        aggregator: メトリクス集計
        calculator: 有意性計算
    """

    def __init__(
        self,
        experiments: Optional[ExperimentRepository] = None,
        assignments: Optional[AssignmentRepository] = None,
        events: Optional[MetricEventRepository] = None,
        config: Optional[ExperimentationConfig] = None,
        strategy: Optional[AssignmentStrategy] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config or ExperimentationConfig()
        self.experiments = experiments or InMemoryExperimentRepository()
        assignments = assignments or InMemoryAssignmentRepository()
        events = events or InMemoryMetricEventRepository()
        self._clock = clock

        self.assigner = VariantAssignmentService(
            assignments, self.config, strategy=strategy, clock=clock
        )
        self.aggregator = MetricsAggregator(
            self.experiments, events, assignments, self.config
        )
        self.calculator = SignificanceCalculator(self.config)

    # ===== ライフサイクル =====

    def create_experiment(
        self,
        name: str,
        variants: List[Dict[str, Any]],
        experiment_id: Optional[str] = None,
        description: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        status: ExperimentStatus = ExperimentStatus.DRAFT,
        primary_metric: Optional[str] = None,
    ) -> Experiment:
        """実験を作成

        Raises:
            ConfigurationError: 配分合計が 1 ± tolerance でない場合など
        """
        experiment = Experiment(
            id=experiment_id or str(uuid4()),
            name=name,
            variants=[Variant.from_dict(v) for v in variants],
            status=status,
            description=description,
            start_date=start_date,
            end_date=end_date,
            primary_metric=primary_metric or self.config.default_conversion_event,
            allocation_tolerance=self.config.allocation_tolerance,
        )
        self.experiments.save(experiment)
        logger.info(
            f"実験を作成: id={experiment.id}, name={name}, "
            f"variants={experiment.variant_ids}"
        )
        return experiment

    def get_experiment(self, experiment_id: str) -> Experiment:
        """実験を取得

        Raises:
            NotFoundError: 実験が存在しない場合
        """
        return self.experiments.require(experiment_id)

    def activate(self, experiment_id: str) -> Experiment:
        return self._transition(experiment_id, ExperimentStatus.ACTIVE)

    def pause(self, experiment_id: str) -> Experiment:
        return self._transition(experiment_id, ExperimentStatus.PAUSED)

    def resume(self, experiment_id: str) -> Experiment:
        experiment = self.experiments.require(experiment_id)
        if experiment.status != ExperimentStatus.PAUSED:
            raise ExperimentStateError(
                f"Cannot resume experiment in '{experiment.status.value}' status. "
                f"Only 'paused' experiments can be resumed."
            )
        return self._transition(experiment_id, ExperimentStatus.ACTIVE)

    def complete(self, experiment_id: str) -> Experiment:
        return self._transition(experiment_id, ExperimentStatus.COMPLETED)

    # ===== コラボレーター向け操作 =====

    def assign_variant(self, subject_id: str, experiment_id: str) -> VariantAssignment:
        """被験者にバリアントを割り当てる

        Raises:
            NotFoundError: 実験が存在しない、または ACTIVE でない場合
            ConflictError: 既存割り当てと矛盾する場合
        """
        experiment = self.experiments.require(experiment_id)
        assignment = self.assigner.assign(subject_id, experiment)
        variant = experiment.get_variant(assignment.variant_id)
        return VariantAssignment(
            variant_id=assignment.variant_id,
            weights=dict(variant.weights) if variant else {},
        )

    def track_event(
        self,
        experiment_id: str,
        variant_id: str,
        subject_id: str,
        event_type: str,
        value: float = 1.0,
        timestamp: Optional[datetime] = None,
    ) -> MetricEvent:
        """結果イベントを記録

        Raises:
            InvalidReferenceError: 未知の実験/バリアントの場合
        """
        event = MetricEvent(
            experiment_id=experiment_id,
            variant_id=variant_id,
            subject_id=subject_id,
            event_type=event_type,
            value=value,
            timestamp=timestamp or self._clock(),
        )
        self.aggregator.record(event)
        return event

    def compute_metrics(self, experiment_id: str) -> Dict[str, Dict[str, float]]:
        """バリアントごとの {conversion_rate, sample_size}"""
        metrics = self.aggregator.variant_metrics(experiment_id)
        return {
            variant_id: {
                "conversion_rate": m.conversion_rate,
                "sample_size": m.sample_size,
            }
            for variant_id, m in metrics.items()
        }

    def compute_significance(self, experiment_id: str) -> SignificanceResult:
        """先頭バリアント（コントロール）と2番目のバリアントの z 検定

        Raises:
            ComputationError: バリアントが2未満、またはサンプルのないバリアントがある場合
        """
        experiment = self.experiments.require(experiment_id)
        if len(experiment.variants) < 2:
            raise ComputationError(
                "Need at least two variants for significance calculation"
            )

        metrics = self.aggregator.variant_metrics(experiment_id)
        control_id, treatment_id = experiment.variant_ids[:2]
        control, treatment = metrics[control_id], metrics[treatment_id]

        result = self.calculator.compute(
            ProportionSample(control.conversions, control.sample_size),
            ProportionSample(treatment.conversions, treatment.sample_size),
        )
        logger.info(
            f"有意性を計算: experiment={experiment_id}, "
            f"{control_id}={control.conversion_rate:.4f} (n={control.sample_size}), "
            f"{treatment_id}={treatment.conversion_rate:.4f} (n={treatment.sample_size}), "
            f"p={result.p_value:.4g}"
        )
        return result

    def compare_metric_means(
        self, experiment_id: str, event_type: str
    ) -> MeanComparisonResult:
        """連続値メトリクス（先頭2バリアント）の t 検定"""
        experiment = self.experiments.require(experiment_id)
        if len(experiment.variants) < 2:
            raise ComputationError(
                "Need at least two variants for a mean comparison"
            )
        values = self.aggregator.values(experiment_id, event_type)
        control_id, treatment_id = experiment.variant_ids[:2]
        return self.calculator.compare_means(values[control_id], values[treatment_id])

    # ===== Private Methods =====

    def _transition(self, experiment_id: str, target: ExperimentStatus) -> Experiment:
        experiment = self.experiments.require(experiment_id)
        if target not in _TRANSITIONS[experiment.status]:
            raise ExperimentStateError(
                f"Cannot move experiment {experiment_id} from "
                f"'{experiment.status.value}' to '{target.value}'"
            )
        experiment.status = target
        self.experiments.save(experiment)
        logger.info(f"実験のステータスを変更: id={experiment_id}, status={target.value}")
        return experiment
