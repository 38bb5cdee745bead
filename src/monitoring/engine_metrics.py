# src/monitoring/engine_metrics.py
"""適応エンジンのメトリクス収集モジュール

Prometheus依存なしの簡易実装。ラベル付きの Counter と Histogram を持ち、
AdaptationMetrics がエンジンの評価パスごとに値を記録する。

収集するメトリクス:
- rules_evaluated: 評価したルール数
- successful_adaptations: 発火して全アクションが成功したルール数
- failed_adaptations: 条件またはアクションが失敗したルール数
- evaluation_seconds: 評価パスの所要時間
"""

from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple


LabelKey = Tuple[str, ...]


class Counter:
    """カウンターメトリクス（単調増加、スレッドセーフ）

    使用例:
        counter = Counter("rules_evaluated_total", "Rules evaluated", ["rule"])
        counter.inc({"rule": "high_error_rate"})
    """

    def __init__(self, name: str, description: str, labels: Optional[List[str]] = None):
        self.name = name
        self.description = description
        self.labels = labels or []
        self._values: Dict[LabelKey, float] = {}
        self._lock = Lock()

    def inc(self, labels: Optional[Dict[str, str]] = None, value: float = 1.0) -> None:
        """カウンターをインクリメント

        Raises:
            ValueError: 負の値が指定された場合
        """
        if value < 0:
            raise ValueError("Counter can only be incremented (value must be >= 0)")
        key = _label_key(self.labels, labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + value

    def get(self, labels: Optional[Dict[str, str]] = None) -> float:
        key = _label_key(self.labels, labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def total(self) -> float:
        """全ラベルの合計"""
        with self._lock:
            return sum(self._values.values())

    def collect(self) -> List[Tuple[Dict[str, str], float]]:
        with self._lock:
            return [
                (dict(zip(self.labels, key)), value)
                for key, value in self._values.items()
            ]


class Histogram:
    """ヒストグラムメトリクス（スレッドセーフ）

    バケット境界ごとの累積件数と、合計・回数・最終観測値を保持する。
    """

    DEFAULT_BUCKETS = (0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0)

    def __init__(
        self,
        name: str,
        description: str,
        buckets: Optional[Tuple[float, ...]] = None,
    ):
        self.name = name
        self.description = description
        self.buckets = tuple(sorted(buckets)) if buckets else self.DEFAULT_BUCKETS
        self._bucket_counts: Dict[float, int] = {b: 0 for b in self.buckets}
        self._sum = 0.0
        self._count = 0
        self._last: Optional[float] = None
        self._lock = Lock()

    def observe(self, value: float) -> None:
        with self._lock:
            for bucket in self.buckets:
                if value <= bucket:
                    self._bucket_counts[bucket] += 1
            self._sum += value
            self._count += 1
            self._last = value

    def get_bucket_counts(self) -> Dict[float, int]:
        with self._lock:
            return dict(self._bucket_counts)

    def get_sum(self) -> float:
        with self._lock:
            return self._sum

    def get_count(self) -> int:
        with self._lock:
            return self._count

    def get_last(self) -> Optional[float]:
        with self._lock:
            return self._last

    def mean(self) -> float:
        """平均値（観測なしなら 0.0）"""
        with self._lock:
            return self._sum / self._count if self._count else 0.0


def _label_key(names: List[str], labels: Optional[Dict[str, str]]) -> LabelKey:
    if not names:
        return ()
    labels = labels or {}
    return tuple(labels.get(name, "") for name in names)


@dataclass(frozen=True)
class AdaptationMetricsSnapshot:
    """AdaptationMetrics のある時点の値"""
    rules_evaluated: int
    successful_adaptations: int
    failed_adaptations: int
    average_evaluation_time: float
    last_evaluation_time: Optional[float]
    last_evaluated_at: Optional[datetime]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rules_evaluated": self.rules_evaluated,
            "successful_adaptations": self.successful_adaptations,
            "failed_adaptations": self.failed_adaptations,
            "average_evaluation_time": self.average_evaluation_time,
            "last_evaluation_time": self.last_evaluation_time,
            "last_evaluated_at": (
                self.last_evaluated_at.isoformat() if self.last_evaluated_at else None
            ),
        }


class AdaptationMetrics:
    """適応エンジンの評価メトリクス

    使用例:
        metrics = AdaptationMetrics()
        metrics.record_pass(evaluated=3, triggered=1, failed=0, duration=0.02)
        metrics.snapshot().average_evaluation_time
    """

    def __init__(self):
        self.rules_evaluated = Counter(
            "rules_evaluated_total", "Total number of evaluated rules"
        )
        self.adaptations = Counter(
            "adaptations_total", "Total number of rule outcomes", ["status"]
        )
        self.evaluation_seconds = Histogram(
            "evaluation_seconds", "Evaluation pass duration in seconds"
        )
        self._last_evaluated_at: Optional[datetime] = None
        self._lock = Lock()

    def record_pass(
        self,
        evaluated: int,
        triggered: int,
        failed: int,
        duration: float,
        timestamp: Optional[datetime] = None,
    ) -> None:
        """1回の評価パスを記録"""
        self.rules_evaluated.inc(value=evaluated)
        self.adaptations.inc({"status": "success"}, triggered)
        self.adaptations.inc({"status": "failure"}, failed)
        self.evaluation_seconds.observe(duration)
        with self._lock:
            self._last_evaluated_at = timestamp or datetime.now()

    def snapshot(self) -> AdaptationMetricsSnapshot:
        with self._lock:
            last_evaluated_at = self._last_evaluated_at
        return AdaptationMetricsSnapshot(
            rules_evaluated=int(self.rules_evaluated.get()),
            successful_adaptations=int(self.adaptations.get({"status": "success"})),
            failed_adaptations=int(self.adaptations.get({"status": "failure"})),
            average_evaluation_time=self.evaluation_seconds.mean(),
            last_evaluation_time=self.evaluation_seconds.get_last(),
            last_evaluated_at=last_evaluated_at,
        )
