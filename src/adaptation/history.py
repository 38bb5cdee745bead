# 評価履歴ストア
"""
HistoryStore: ルール評価とパターン検出が参照する有界履歴

- メトリクス履歴: キーごとに (時刻, 値) の deque(maxlen=window)
- イベント履歴: 直近のイベントペイロード
- パターン履歴: PatternDetector が追加した Pattern

上限を超えた分は古いものから捨てる。エンジンと PatternDetector に
同じインスタンスを注入することで、検出結果が以降の RuleContext に現れる。
"""

from collections import deque
from datetime import datetime
from threading import Lock
from typing import Any, Deque, Dict, List, Optional, Tuple

from src.config.experimentation_config import ExperimentationConfig
from src.models.adaptation import MetricPoint, Pattern
from src.models.errors import ConfigurationError


class HistoryStore:
    """有界履歴ストア（スレッドセーフ）"""

    def __init__(
        self,
        window_size: Optional[int] = None,
        event_history_size: Optional[int] = None,
        pattern_history_size: Optional[int] = None,
        config: Optional[ExperimentationConfig] = None,
    ):
        config = config or ExperimentationConfig()
        self.window_size = window_size if window_size is not None else config.history_window_size
        self.event_history_size = (
            event_history_size if event_history_size is not None else config.event_history_size
        )
        self.pattern_history_size = (
            pattern_history_size
            if pattern_history_size is not None
            else config.pattern_history_size
        )
        for name, size in (
            ("window_size", self.window_size),
            ("event_history_size", self.event_history_size),
            ("pattern_history_size", self.pattern_history_size),
        ):
            if size <= 0:
                raise ConfigurationError(f"{name} must be positive, got {size}")

        self._metrics: Dict[str, Deque[MetricPoint]] = {}
        self._events: Deque[Dict[str, Any]] = deque(maxlen=self.event_history_size)
        self._patterns: Deque[Pattern] = deque(maxlen=self.pattern_history_size)
        self._lock = Lock()

    def append_metric(self, key: str, value: float, timestamp: Optional[datetime] = None) -> None:
        with self._lock:
            series = self._metrics.get(key)
            if series is None:
                series = deque(maxlen=self.window_size)
                self._metrics[key] = series
            series.append((timestamp or datetime.now(), float(value)))

    def append_event(self, event: Dict[str, Any]) -> None:
        with self._lock:
            self._events.append(dict(event))

    def append_pattern(self, pattern: Pattern) -> None:
        with self._lock:
            self._patterns.append(pattern)

    def metric_series(self, key: str) -> List[MetricPoint]:
        with self._lock:
            return list(self._metrics.get(key, ()))

    def metric_history(self) -> Dict[str, List[MetricPoint]]:
        with self._lock:
            return {k: list(v) for k, v in self._metrics.items()}

    def events(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._events)

    def patterns(self) -> List[Pattern]:
        with self._lock:
            return list(self._patterns)

    def snapshot(self) -> Tuple[Dict[str, List[MetricPoint]], List[Dict[str, Any]], List[Pattern]]:
        """(メトリクス履歴, イベント履歴, パターン履歴) を一貫した状態で取得"""
        with self._lock:
            return (
                {k: list(v) for k, v in self._metrics.items()},
                list(self._events),
                list(self._patterns),
            )

    def clear(self) -> None:
        with self._lock:
            self._metrics.clear()
            self._events.clear()
            self._patterns.clear()
