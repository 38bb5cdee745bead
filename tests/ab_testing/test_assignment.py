# tests/ab_testing/test_assignment.py
"""VariantAssignmentService の単体テスト

検証観点:
- 冪等性: 同じ (実験, 被験者) は常に同じバリアント
- 決定論: 新しいサービス・リポジトリでも同じ結果
- 配分: 大量の被験者で配分比率に近い分布になる
- 同時初回アクセス: 並行実行でも割り当ては1件、全員が同じ値を受け取る
- 異常系: 非アクティブ実験、矛盾する既存割り当て
"""

import random
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from src.ab_testing.assignment import (
    AssignmentStrategy,
    VariantAssignmentService,
    bucket_for,
    select_variant,
)
from src.ab_testing.repository import InMemoryAssignmentRepository
from src.config.experimentation_config import ExperimentationConfig
from src.models.errors import (
    ConfigurationError,
    ConflictError,
    DuplicateAssignmentError,
    NotFoundError,
)
from src.models.experiment import Assignment, Experiment, ExperimentStatus, Variant


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def experiment():
    """70/30 のアクティブ実験"""
    return Experiment(
        id="exp-ranking",
        name="ranking",
        variants=[
            Variant(id="control", name="control", allocation=0.7),
            Variant(id="treatment", name="treatment", allocation=0.3, weights={"boost": 1.5}),
        ],
        status=ExperimentStatus.ACTIVE,
    )


@pytest.fixture
def repository():
    return InMemoryAssignmentRepository()


@pytest.fixture
def service(repository):
    return VariantAssignmentService(repository)


# ============================================================================
# ハッシュとバリアント選択
# ============================================================================


class TestBucket:
    """bucket_for / select_variant のテスト"""

    def test_bucket_in_unit_interval(self):
        for i in range(1000):
            value = bucket_for("exp", f"subject-{i}")
            assert 0.0 <= value < 1.0

    def test_bucket_is_stable(self):
        assert bucket_for("exp", "s-1") == bucket_for("exp", "s-1")
        assert bucket_for("exp", "s-1") != bucket_for("other", "s-1")

    def test_select_by_cumulative_allocation(self, experiment):
        assert select_variant(experiment, 0.0).id == "control"
        assert select_variant(experiment, 0.6999).id == "control"
        assert select_variant(experiment, 0.7).id == "treatment"
        assert select_variant(experiment, 0.9999).id == "treatment"

    def test_select_falls_back_to_last_variant(self):
        # 許容誤差内で合計が1未満のとき
        experiment = Experiment(
            id="exp", name="exp",
            variants=[
                Variant(id="a", name="a", allocation=0.4995),
                Variant(id="b", name="b", allocation=0.5),
            ],
        )
        assert select_variant(experiment, 0.9999).id == "b"


# ============================================================================
# 割り当て
# ============================================================================


class TestAssign:
    """assign のテスト"""

    def test_assign_is_idempotent(self, service, experiment, repository):
        first = service.assign("session-1", experiment)
        second = service.assign("session-1", experiment)

        assert first == second
        assert len(repository) == 1

    def test_deterministic_across_instances(self, experiment):
        results = {
            VariantAssignmentService(InMemoryAssignmentRepository())
            .assign("session-42", experiment).variant_id
            for _ in range(5)
        }
        assert len(results) == 1

    def test_distribution_matches_allocation(self, experiment):
        service = VariantAssignmentService(InMemoryAssignmentRepository())
        counts = Counter(
            service.assign(f"subject-{i}", experiment).variant_id
            for i in range(100_000)
        )
        assert counts["control"] / 100_000 == pytest.approx(0.7, abs=0.02)
        assert counts["treatment"] / 100_000 == pytest.approx(0.3, abs=0.02)

    def test_weighted_random_strategy(self, experiment):
        service = VariantAssignmentService(
            InMemoryAssignmentRepository(),
            strategy=AssignmentStrategy.WEIGHTED_RANDOM,
            rng=random.Random(7),
        )
        assignment = service.assign("session-1", experiment)
        assert assignment.strategy == "weighted_random"
        # 2回目は保存済みの値
        assert service.assign("session-1", experiment) == assignment

    def test_unknown_strategy_raises(self):
        config = ExperimentationConfig(assignment_strategy="round_robin")
        with pytest.raises(ConfigurationError):
            VariantAssignmentService(config=config)

    def test_inactive_experiment_raises(self, service, experiment):
        experiment.status = ExperimentStatus.DRAFT
        with pytest.raises(NotFoundError):
            service.assign("session-1", experiment)

    def test_existing_assignment_survives_pause(self, service, experiment):
        assignment = service.assign("session-1", experiment)
        experiment.status = ExperimentStatus.PAUSED
        assert service.assign("session-1", experiment) == assignment

    def test_expired_window_blocks_new_assignments(self, repository, experiment):
        experiment.end_date = datetime(2026, 1, 31)
        service = VariantAssignmentService(repository, clock=lambda: datetime(2026, 2, 1))
        with pytest.raises(NotFoundError):
            service.assign("session-1", experiment)

    def test_existing_assignment_with_unknown_variant_conflicts(self, repository, experiment):
        repository.create(Assignment("exp-ranking", "session-1", "removed-variant"))
        service = VariantAssignmentService(repository)
        with pytest.raises(ConflictError):
            service.assign("session-1", experiment)


class TestConcurrentFirstTouch:
    """同時初回アクセスのテスト"""

    def test_parallel_first_touch_yields_single_assignment(self, experiment):
        repository = InMemoryAssignmentRepository()
        service = VariantAssignmentService(
            repository, strategy=AssignmentStrategy.WEIGHTED_RANDOM
        )

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(
                lambda _: service.assign("shared-subject", experiment).variant_id,
                range(64),
            ))

        assert len(set(results)) == 1
        assert len(repository) == 1
        assert repository.get("exp-ranking", "shared-subject").variant_id == results[0]

    def test_race_loser_returns_winner(self, experiment):
        winner = Assignment("exp-ranking", "session-1", "treatment")
        repository = MagicMock()
        repository.get.side_effect = [None, winner]
        repository.create.side_effect = DuplicateAssignmentError("exp-ranking", "session-1")

        result = VariantAssignmentService(repository).assign("session-1", experiment)

        assert result == winner
        assert repository.get.call_count == 2

    def test_vanished_winner_raises_conflict(self, experiment):
        repository = MagicMock()
        repository.get.return_value = None
        repository.create.side_effect = DuplicateAssignmentError("exp-ranking", "session-1")

        with pytest.raises(ConflictError):
            VariantAssignmentService(repository).assign("session-1", experiment)
