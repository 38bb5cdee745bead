# A/Bテスト ストレージ境界
"""
実験・割り当て・メトリクスイベントのリポジトリインターフェース

永続化そのものは外部コラボレーターの責務だが、割り当ての一意性
（(experiment_id, subject_id) の一意制約）はこの境界で保証する。

実装:
- InMemory*Repository: threading.Lock で一意性を保証するインメモリ実装
- src.ab_testing.postgres_repository: PostgreSQL 実装（UNIQUE 制約）
"""

from abc import ABC, abstractmethod
from threading import Lock
from typing import Dict, Iterable, List, Optional, Tuple

from src.models.errors import DuplicateAssignmentError, NotFoundError
from src.models.experiment import Assignment, Experiment, MetricEvent


class ExperimentRepository(ABC):
    """実験定義の保存先"""

    @abstractmethod
    def get(self, experiment_id: str) -> Optional[Experiment]:
        """実験を取得（存在しなければ None）"""

    @abstractmethod
    def save(self, experiment: Experiment) -> None:
        """実験を作成または更新"""

    @abstractmethod
    def list(self) -> List[Experiment]:
        """全実験を取得"""

    def require(self, experiment_id: str) -> Experiment:
        """実験を取得（存在しなければ NotFoundError）"""
        experiment = self.get(experiment_id)
        if experiment is None:
            raise NotFoundError(f"Experiment {experiment_id} not found")
        return experiment


class AssignmentRepository(ABC):
    """割り当ての保存先

    create() は (experiment_id, subject_id) の一意性を保証し、
    既存キーに対しては上書きせず DuplicateAssignmentError を送出する。
    """

    @abstractmethod
    def get(self, experiment_id: str, subject_id: str) -> Optional[Assignment]:
        """割り当てを取得"""

    @abstractmethod
    def create(self, assignment: Assignment) -> Assignment:
        """割り当てを作成

        Raises:
            DuplicateAssignmentError: 同じキーが既に存在する場合
        """

    @abstractmethod
    def list_for_experiment(self, experiment_id: str) -> List[Assignment]:
        """実験の全割り当てを取得"""


class MetricEventRepository(ABC):
    """メトリクスイベントの保存先（追記専用）"""

    @abstractmethod
    def append(self, event: MetricEvent) -> None:
        """イベントを追記"""

    @abstractmethod
    def list_for_experiment(self, experiment_id: str) -> List[MetricEvent]:
        """実験の全イベントを取得"""


class InMemoryExperimentRepository(ExperimentRepository):
    """インメモリ実験リポジトリ"""

    def __init__(self, experiments: Optional[Iterable[Experiment]] = None):
        self._experiments: Dict[str, Experiment] = {}
        self._lock = Lock()
        for experiment in experiments or []:
            self.save(experiment)

    def get(self, experiment_id: str) -> Optional[Experiment]:
        with self._lock:
            return self._experiments.get(experiment_id)

    def save(self, experiment: Experiment) -> None:
        with self._lock:
            self._experiments[experiment.id] = experiment

    def list(self) -> List[Experiment]:
        with self._lock:
            return list(self._experiments.values())


class InMemoryAssignmentRepository(AssignmentRepository):
    """インメモリ割り当てリポジトリ

    スレッドセーフ。create() はロック内で存在確認と挿入を行うため、
    同時の初回アクセスでも1件しか保存されない。
    """

    def __init__(self):
        self._assignments: Dict[Tuple[str, str], Assignment] = {}
        self._lock = Lock()

    def get(self, experiment_id: str, subject_id: str) -> Optional[Assignment]:
        with self._lock:
            return self._assignments.get((experiment_id, subject_id))

    def create(self, assignment: Assignment) -> Assignment:
        key = (assignment.experiment_id, assignment.subject_id)
        with self._lock:
            if key in self._assignments:
                raise DuplicateAssignmentError(*key)
            self._assignments[key] = assignment
            return assignment

    def list_for_experiment(self, experiment_id: str) -> List[Assignment]:
        with self._lock:
            return [
                a for (exp_id, _), a in self._assignments.items()
                if exp_id == experiment_id
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._assignments)


class InMemoryMetricEventRepository(MetricEventRepository):
    """インメモリイベントリポジトリ（追記専用）"""

    def __init__(self):
        self._events: List[MetricEvent] = []
        self._lock = Lock()

    def append(self, event: MetricEvent) -> None:
        with self._lock:
            self._events.append(event)

    def list_for_experiment(self, experiment_id: str) -> List[MetricEvent]:
        with self._lock:
            return [e for e in self._events if e.experiment_id == experiment_id]
