# 実験・適応エンジンの例外階層
"""
例外の分類

- ConfigurationError: 実験・ルール作成時の設定不備（配分合計≠1など）
- NotFoundError: 実験・ルール・割り当てが存在しない
- InvalidReferenceError: イベントが未知の実験/バリアントを参照
- ConflictError: 既存の割り当てと矛盾する結果
- ComputationError: サンプル不足・非有限値など統計計算の失敗
- ExperimentStateError: 不正なライフサイクル遷移
- RuleEvaluationError: 評価対象のルールが全て失敗した

リトライは行わない。リトライ方針は呼び出し側の責務。
"""

from typing import Any, Optional


class ExperimentationError(Exception):
    """実験サブシステムの基底例外"""
    pass


class ConfigurationError(ExperimentationError):
    """設定が不正な場合のエラー"""
    pass


class NotFoundError(ExperimentationError):
    """実験・ルール・割り当てが見つからない場合のエラー"""
    pass


class InvalidReferenceError(NotFoundError):
    """未知の実験/バリアントを参照した場合のエラー"""
    pass


class ConflictError(ExperimentationError):
    """既存の割り当てと矛盾する場合のエラー"""
    pass


class DuplicateAssignmentError(ConflictError):
    """(実験, 被験者) の一意制約違反"""

    def __init__(self, experiment_id: str, subject_id: str):
        super().__init__(
            f"Assignment already exists: experiment={experiment_id}, "
            f"subject={subject_id}"
        )
        self.experiment_id = experiment_id
        self.subject_id = subject_id


class ComputationError(ExperimentationError):
    """統計計算が実行できない場合のエラー"""
    pass


class ExperimentStateError(ExperimentationError):
    """実験の状態が不正な場合のエラー"""
    pass


class RuleEvaluationError(ExperimentationError):
    """評価した全ルールが失敗した場合のエラー

    Attributes:
        report: 失敗した評価パスの EvaluationReport
    """

    def __init__(self, message: str, report: Optional[Any] = None):
        super().__init__(message)
        self.report = report
