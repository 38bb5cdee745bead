# パターン検出
"""
PatternDetector: 直近のイベント・メトリクス履歴から信頼度付きパターンを導出する

イベント頻度パターン（event_frequency）:
    イベントを type ごとにグループ化し、グループごとに1パターンを生成する。
    confidence = (min(count / frequency_scale, 1) + min(distinct / breadth_scale, 1)) / 2
    distinct は被験者（subject_id / session_id）またはテスト（test_id）の異なり数。

メトリクストレンドパターン（metric_trend）:
    trend_min_points 点以上の系列に scipy.stats.linregress を当て、
    傾きが0でなければ方向と傾きを特徴量とするパターンを生成する。
    confidence = |r|

検出したパターンは共有 HistoryStore に追加され、以降の RuleContext から見える。
"""

import logging
import math
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from scipy import stats

from src.adaptation.history import HistoryStore
from src.config.experimentation_config import ExperimentationConfig
from src.models.adaptation import MetricPoint, Pattern
from src.models.errors import ConfigurationError


logger = logging.getLogger(__name__)

EVENT_FREQUENCY_PATTERN = "event_frequency"
METRIC_TREND_PATTERN = "metric_trend"

_SUBJECT_KEYS = ("subject_id", "session_id", "test_id", "user_id")


class PatternDetector:
    """パターン検出クラス

    使用例:
        history = HistoryStore()
        detector = PatternDetector(history)
        patterns = detector.detect([
            {"id": "e1", "type": "search_failed", "session_id": "s1"},
            {"id": "e2", "type": "search_failed", "session_id": "s2"},
        ])
        patterns[0].confidence  # (0.2 + 0.4) / 2 = 0.3

    Attributes:
        history: パターンの追加先
        frequency_scale: 頻度重みの正規化係数
        breadth_scale: 広がり重みの正規化係数
        min_confidence: これ未満のパターンは破棄
    """

    def __init__(
        self,
        history: Optional[HistoryStore] = None,
        config: Optional[ExperimentationConfig] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.config = config or ExperimentationConfig()
        self.history = history or HistoryStore(config=self.config)
        self.frequency_scale = self.config.pattern_frequency_scale
        self.breadth_scale = self.config.pattern_breadth_scale
        if self.frequency_scale <= 0 or self.breadth_scale <= 0:
            raise ConfigurationError(
                "pattern_frequency_scale and pattern_breadth_scale must be positive"
            )
        self.min_confidence = self.config.min_pattern_confidence
        self._clock = clock

    def detect(self, events: Sequence[Mapping[str, Any]]) -> List[Pattern]:
        """イベント群からパターンを導出

        空の入力は例外にせず空リストを返す。
        """
        if not events:
            return []

        groups: "OrderedDict[str, List[Mapping[str, Any]]]" = OrderedDict()
        for event in events:
            event_type = str(event.get("type", "unknown"))
            groups.setdefault(event_type, []).append(event)

        now = self._clock()
        patterns: List[Pattern] = []
        for event_type, group in groups.items():
            distinct = self._distinct_subjects(group)
            confidence = self.confidence(len(group), len(distinct))
            if confidence < self.min_confidence:
                logger.debug(
                    f"低信頼度のパターンを破棄: type={event_type}, confidence={confidence:.3f}"
                )
                continue

            first, latest = group[0], group[-1]
            origin_id = first.get("id")
            pattern = Pattern(
                id=f"pattern-{origin_id if origin_id is not None else event_type}",
                pattern_type=EVENT_FREQUENCY_PATTERN,
                confidence=confidence,
                features={
                    "event_type": event_type,
                    "count": len(group),
                    "distinct_subjects": len(distinct),
                    "status": latest.get("status"),
                    "priority": latest.get("priority"),
                },
                event_id=str(origin_id) if origin_id is not None else None,
                metadata=dict(first.get("metadata") or {}),
                created_at=now,
                updated_at=now,
            )
            patterns.append(pattern)

        self._publish(patterns)
        return patterns

    def detect_metric_trends(
        self, metric_history: Mapping[str, Sequence[MetricPoint]]
    ) -> List[Pattern]:
        """メトリクス履歴からトレンドパターンを導出"""
        now = self._clock()
        patterns: List[Pattern] = []
        for key, series in metric_history.items():
            if len(series) < self.config.trend_min_points:
                continue
            origin = series[0][0]
            xs = [(ts - origin).total_seconds() for ts, _ in series]
            ys = [value for _, value in series]
            if len(set(xs)) < 2 or len(set(ys)) < 2:
                # 時刻が同一または値が一定の系列には回帰できない
                continue

            result = stats.linregress(xs, ys)
            slope, r_value = float(result.slope), float(result.rvalue)
            if not (math.isfinite(slope) and math.isfinite(r_value)) or slope == 0.0:
                continue

            confidence = min(abs(r_value), 1.0)
            if confidence < self.min_confidence:
                continue

            patterns.append(
                Pattern(
                    id=f"trend-{key}-{int(now.timestamp())}",
                    pattern_type=METRIC_TREND_PATTERN,
                    confidence=confidence,
                    features={
                        "metric": key,
                        "direction": "up" if slope > 0 else "down",
                        "slope": slope,
                        "points": len(series),
                        "last_value": ys[-1],
                    },
                    created_at=now,
                    updated_at=now,
                )
            )

        self._publish(patterns)
        return patterns

    def confidence(self, frequency: int, distinct: int) -> float:
        """頻度重みと広がり重みの平均（各々上限1）"""
        frequency_weight = min(frequency / self.frequency_scale, 1.0)
        breadth_weight = min(distinct / self.breadth_scale, 1.0)
        return (frequency_weight + breadth_weight) / 2.0

    def _publish(self, patterns: Iterable[Pattern]) -> None:
        count = 0
        for pattern in patterns:
            self.history.append_pattern(pattern)
            count += 1
        if count:
            logger.info(f"パターンを検出: {count}件")

    @staticmethod
    def _distinct_subjects(group: Sequence[Mapping[str, Any]]) -> Dict[str, None]:
        distinct: Dict[str, None] = {}
        for event in group:
            for key in _SUBJECT_KEYS:
                if event.get(key) is not None:
                    distinct[f"{key}:{event[key]}"] = None
                    break
        return distinct
