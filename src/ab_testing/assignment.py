# バリアント割り当て
"""
VariantAssignmentService: (実験, 被験者) ごとに安定したバリアントを割り当てる

設計方針:
- 冪等性: 既存の割り当てがあれば変更せずに返す
- 決定論的割り当て: "<experiment_id>:<subject_id>" の SHA-256 先頭バイトを
  [0, 1) に正規化し、累積配分で選択する（再起動後も同じ結果）
- 重み付きランダム（初回アクセス時）: 一様乱数で同じ累積配分選択を行う
- 同時初回アクセス: 一意制約違反を検出した側が再読込し、勝者の値を返す
"""

import hashlib
import logging
import random
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from src.ab_testing.repository import AssignmentRepository, InMemoryAssignmentRepository
from src.config.experimentation_config import ExperimentationConfig
from src.models.errors import (
    ConfigurationError,
    ConflictError,
    DuplicateAssignmentError,
    NotFoundError,
)
from src.models.experiment import Assignment, Experiment, Variant


logger = logging.getLogger(__name__)


class AssignmentStrategy(str, Enum):
    """割り当て戦略"""
    DETERMINISTIC = "deterministic"
    WEIGHTED_RANDOM = "weighted_random"


def bucket_for(experiment_id: str, subject_id: str, prefix_bytes: int = 8) -> float:
    """(実験, 被験者) から [0, 1) のバケット値を計算"""
    digest = hashlib.sha256(f"{experiment_id}:{subject_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:prefix_bytes], "big") / float(2 ** (8 * prefix_bytes))


def select_variant(experiment: Experiment, bucket: float) -> Variant:
    """累積配分でバケット値を含むバリアントを選択

    浮動小数点誤差で該当がない場合は最後のバリアントを返す。
    """
    cumulative = 0.0
    for variant in experiment.variants:
        cumulative += variant.allocation
        if bucket < cumulative:
            return variant
    return experiment.variants[-1]


class VariantAssignmentService:
    """バリアント割り当てサービス

    使用例:
        service = VariantAssignmentService(InMemoryAssignmentRepository())
        assignment = service.assign("session-123", experiment)
        assignment.variant_id  # 同じ入力なら常に同じ値

    Attributes:
        repository: 割り当ての保存先（一意性を保証する）
        strategy: 新規割り当ての戦略
    """

    def __init__(
        self,
        repository: Optional[AssignmentRepository] = None,
        config: Optional[ExperimentationConfig] = None,
        strategy: Optional[AssignmentStrategy] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Args:
            repository: 割り当てリポジトリ。Noneの場合はインメモリ実装。
            config: 設定。Noneの場合はデフォルト設定。
            strategy: 割り当て戦略。Noneの場合は config.assignment_strategy。
            rng: 重み付きランダム戦略で使う乱数生成器（テスト時に固定可能）
            clock: 現在時刻の取得関数
        """
        self.repository = repository or InMemoryAssignmentRepository()
        self.config = config or ExperimentationConfig()
        try:
            self.strategy = AssignmentStrategy(
                strategy or self.config.assignment_strategy
            )
        except ValueError as e:
            raise ConfigurationError(
                f"Unknown assignment strategy: {strategy or self.config.assignment_strategy}"
            ) from e
        self._rng = rng or random.Random()
        self._clock = clock

    def assign(self, subject_id: str, experiment: Experiment) -> Assignment:
        """被験者にバリアントを割り当てる（冪等）

        Args:
            subject_id: 被験者ID（セッションIDまたはユーザーID）
            experiment: 読み込み済みの実験

        Returns:
            Assignment: 既存または新規の割り当て

        Raises:
            NotFoundError: 実験が ACTIVE でない、または期間外で新規割り当てが必要な場合
            ConflictError: 既存割り当てのバリアントが実験に存在しない場合
        """
        existing = self.repository.get(experiment.id, subject_id)
        if existing is not None:
            return self._verify(existing, experiment)

        if not experiment.is_assignable(self._clock()):
            raise NotFoundError(
                f"Experiment {experiment.id} is not active "
                f"(status={experiment.status.value})"
            )

        variant = self._choose(subject_id, experiment)
        assignment = Assignment(
            experiment_id=experiment.id,
            subject_id=subject_id,
            variant_id=variant.id,
            strategy=self.strategy.value,
            assigned_at=self._clock(),
        )

        try:
            self.repository.create(assignment)
        except DuplicateAssignmentError:
            # 同時初回アクセスで負けた側: 勝者の割り当てを返す
            winner = self.repository.get(experiment.id, subject_id)
            if winner is None:
                raise ConflictError(
                    f"Assignment for subject {subject_id} in experiment "
                    f"{experiment.id} vanished after uniqueness violation"
                )
            logger.debug(
                f"割り当て競合を解決: experiment={experiment.id}, "
                f"subject={subject_id}, winner={winner.variant_id}"
            )
            return self._verify(winner, experiment)

        logger.debug(
            f"バリアントを割り当て: experiment={experiment.id}, "
            f"subject={subject_id}, variant={variant.id}, strategy={self.strategy.value}"
        )
        return assignment

    def bucket(self, experiment_id: str, subject_id: str) -> float:
        return bucket_for(experiment_id, subject_id, self.config.hash_prefix_bytes)

    def _choose(self, subject_id: str, experiment: Experiment) -> Variant:
        if self.strategy == AssignmentStrategy.DETERMINISTIC:
            value = self.bucket(experiment.id, subject_id)
        else:
            value = self._rng.random()
        return select_variant(experiment, value)

    def _verify(self, assignment: Assignment, experiment: Experiment) -> Assignment:
        """保存済み割り当てのバリアントが実験に存在することを確認"""
        if experiment.get_variant(assignment.variant_id) is None:
            raise ConflictError(
                f"Subject {assignment.subject_id} is assigned to variant "
                f"'{assignment.variant_id}' which is not part of experiment "
                f"{experiment.id}"
            )
        return assignment
