# tests/ab_testing/test_experiment_service.py
"""ExperimentService の単体テスト

検証観点:
- ライフサイクル遷移と不正遷移の拒否
- assign_variant / track_event / compute_metrics / compute_significance の一連の流れ
- エラーの伝播（NotFoundError / InvalidReferenceError / ComputationError）
"""

import pytest

from src.ab_testing.experiment_service import ExperimentService, VariantAssignment
from src.models.errors import (
    ComputationError,
    ConfigurationError,
    ExperimentStateError,
    InvalidReferenceError,
    NotFoundError,
)
from src.models.experiment import ExperimentStatus


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def service():
    return ExperimentService()


@pytest.fixture
def experiment(service):
    """50/50 の実験（draft）"""
    return service.create_experiment(
        name="ranking_weights",
        experiment_id="exp-ranking",
        variants=[
            {"id": "control", "allocation": 0.5},
            {"id": "boosted", "allocation": 0.5, "weights": {"title": 2.0}},
        ],
    )


# ============================================================================
# ライフサイクル
# ============================================================================


class TestLifecycle:
    """状態遷移のテスト"""

    def test_create_starts_as_draft(self, service, experiment):
        assert experiment.status == ExperimentStatus.DRAFT
        assert service.get_experiment("exp-ranking") is experiment

    def test_create_rejects_bad_allocation(self, service):
        with pytest.raises(ConfigurationError):
            service.create_experiment(
                name="broken",
                variants=[{"id": "a", "allocation": 0.7}, {"id": "b", "allocation": 0.7}],
            )

    def test_full_lifecycle(self, service, experiment):
        assert service.activate("exp-ranking").status == ExperimentStatus.ACTIVE
        assert service.pause("exp-ranking").status == ExperimentStatus.PAUSED
        assert service.resume("exp-ranking").status == ExperimentStatus.ACTIVE
        assert service.complete("exp-ranking").status == ExperimentStatus.COMPLETED

    def test_resume_requires_paused(self, service, experiment):
        service.activate("exp-ranking")
        with pytest.raises(ExperimentStateError):
            service.resume("exp-ranking")

    def test_completed_is_terminal(self, service, experiment):
        service.activate("exp-ranking")
        service.complete("exp-ranking")
        with pytest.raises(ExperimentStateError):
            service.activate("exp-ranking")

    def test_pause_draft_rejected(self, service, experiment):
        with pytest.raises(ExperimentStateError):
            service.pause("exp-ranking")

    def test_unknown_experiment(self, service):
        with pytest.raises(NotFoundError):
            service.get_experiment("missing")


# ============================================================================
# 割り当て・イベント・集計
# ============================================================================


class TestAssignAndTrack:
    """assign_variant / track_event のテスト"""

    def test_assign_variant_returns_weights(self, service, experiment):
        service.activate("exp-ranking")

        result = service.assign_variant("session-1", "exp-ranking")

        assert isinstance(result, VariantAssignment)
        assert result.variant_id in ("control", "boosted")
        expected = {"title": 2.0} if result.variant_id == "boosted" else {}
        assert result.weights == expected
        assert service.assign_variant("session-1", "exp-ranking") == result

    def test_assign_unknown_experiment(self, service):
        with pytest.raises(NotFoundError):
            service.assign_variant("session-1", "missing")

    def test_assign_draft_experiment(self, service, experiment):
        with pytest.raises(NotFoundError):
            service.assign_variant("session-1", "exp-ranking")

    def test_track_unknown_variant(self, service, experiment):
        with pytest.raises(InvalidReferenceError):
            service.track_event("exp-ranking", "ghost", "s-1", "conversion")

    def test_compute_metrics(self, service, experiment):
        service.activate("exp-ranking")
        subjects = {"control": [], "boosted": []}
        for i in range(40):
            assignment = service.assign_variant(f"s-{i}", "exp-ranking")
            subjects[assignment.variant_id].append(f"s-{i}")
        for subject in subjects["boosted"][:5]:
            service.track_event("exp-ranking", "boosted", subject, "conversion")

        metrics = service.compute_metrics("exp-ranking")

        assert metrics["control"]["sample_size"] == len(subjects["control"])
        assert metrics["control"]["conversion_rate"] == 0.0
        assert metrics["boosted"]["sample_size"] == len(subjects["boosted"])
        assert metrics["boosted"]["conversion_rate"] == pytest.approx(
            5 / len(subjects["boosted"])
        )


class TestSignificance:
    """compute_significance のテスト"""

    def test_first_variant_is_control(self, service, experiment):
        for i in range(1000):
            service.track_event("exp-ranking", "control", f"c-{i}", "view")
            service.track_event("exp-ranking", "boosted", f"b-{i}", "view")
        for i in range(100):
            service.track_event("exp-ranking", "control", f"c-{i}", "conversion")
        for i in range(150):
            service.track_event("exp-ranking", "boosted", f"b-{i}", "conversion")

        result = service.compute_significance("exp-ranking")

        assert result.control_rate == pytest.approx(0.10)
        assert result.treatment_rate == pytest.approx(0.15)
        assert result.significant is True

    def test_no_samples_raises(self, service, experiment):
        with pytest.raises(ComputationError):
            service.compute_significance("exp-ranking")

    def test_single_variant_raises(self, service):
        service.create_experiment(
            name="solo", experiment_id="solo",
            variants=[{"id": "only", "allocation": 1.0}],
        )
        with pytest.raises(ComputationError):
            service.compute_significance("solo")

    def test_compare_metric_means(self, service, experiment):
        for i, value in enumerate([10.0, 11.0, 9.0, 10.5]):
            service.track_event("exp-ranking", "control", f"c-{i}", "revenue", value)
        for i, value in enumerate([20.0, 21.0, 19.5, 20.5]):
            service.track_event("exp-ranking", "boosted", f"b-{i}", "revenue", value)

        result = service.compare_metric_means("exp-ranking", "revenue")

        assert result.significant is True
        assert result.treatment_mean > result.control_mean
