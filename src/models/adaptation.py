# 適応ルールモデル定義
# adaptation_rules テーブルと評価時スナップショットに対応するデータクラス

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import IntEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence, Tuple

if TYPE_CHECKING:
    from src.adaptation.actions import Action
    from src.adaptation.conditions import Condition


class RulePriority(IntEnum):
    """ルール優先度（小さいほど先に評価）"""
    CRITICAL = 0
    HIGH = 1
    MEDIUM = 2
    LOW = 3


@dataclass
class AdaptationRule:
    """adaptation_rules テーブルに対応するデータクラス

    condition / actions は実行可能コードではなく、評価時に解釈される
    タグ付きAST（src.adaptation.conditions / src.adaptation.actions）。

    last_triggered は発火のたびに評価コンテキストの時刻で更新する。
    クールダウンとしては扱わない。
    """

    id: str
    name: str
    condition: "Condition"
    actions: List["Action"] = field(default_factory=list)
    priority: int = RulePriority.MEDIUM
    enabled: bool = True
    description: str = ""
    last_triggered: Optional[datetime] = None
    trigger_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "priority": int(self.priority),
            "enabled": self.enabled,
            "condition": self.condition.to_dict(),
            "actions": [action.to_dict() for action in self.actions],
            "last_triggered": (
                self.last_triggered.isoformat() if self.last_triggered else None
            ),
            "trigger_count": self.trigger_count,
        }


@dataclass(frozen=True)
class Pattern:
    """信頼度付きの派生観測"""

    id: str
    pattern_type: str
    confidence: float
    """0.0〜1.0"""

    features: Dict[str, Any] = field(default_factory=dict)
    event_id: Optional[str] = None
    """元になったイベントの参照"""

    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.pattern_type,
            "confidence": self.confidence,
            "features": dict(self.features),
            "event_id": self.event_id,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


MetricPoint = Tuple[datetime, float]


@dataclass(frozen=True)
class RuleContext:
    """1回の評価パスで参照される読み取り専用スナップショット

    エンジンの内部状態とは共有しない。create() でディープコピーを取り、
    MappingProxyType で包むため、条件やアクションから書き換えられない。
    """

    timestamp: datetime
    event: Mapping[str, Any]
    state: Mapping[str, Any]
    metrics: Mapping[str, float]
    metric_history: Mapping[str, Tuple[MetricPoint, ...]]
    event_history: Tuple[Mapping[str, Any], ...] = ()
    pattern_history: Tuple[Pattern, ...] = ()

    @classmethod
    def create(
        cls,
        event: Optional[Dict[str, Any]] = None,
        state: Optional[Dict[str, Any]] = None,
        metrics: Optional[Dict[str, float]] = None,
        metric_history: Optional[Dict[str, Sequence[MetricPoint]]] = None,
        event_history: Sequence[Dict[str, Any]] = (),
        pattern_history: Sequence[Pattern] = (),
        timestamp: Optional[datetime] = None,
    ) -> RuleContext:
        return cls(
            timestamp=timestamp or datetime.now(),
            event=MappingProxyType(copy.deepcopy(dict(event or {}))),
            state=MappingProxyType(copy.deepcopy(dict(state or {}))),
            metrics=MappingProxyType(dict(metrics or {})),
            metric_history=MappingProxyType(
                {k: tuple(v) for k, v in (metric_history or {}).items()}
            ),
            event_history=tuple(
                MappingProxyType(copy.deepcopy(dict(e))) for e in event_history
            ),
            pattern_history=tuple(pattern_history),
        )

    def with_values(
        self, state: Dict[str, Any], metrics: Dict[str, float]
    ) -> RuleContext:
        """状態・メトリクスだけを差し替えたコンテキスト（履歴とイベントは共有）"""
        return replace(
            self,
            state=MappingProxyType(copy.deepcopy(dict(state))),
            metrics=MappingProxyType(dict(metrics)),
        )

    def resolve(self, path: str) -> Tuple[bool, Any]:
        """ドット区切りパスの値を解決

        ルートは metrics / state / event のいずれか。

        Returns:
            (found, value) のタプル
        """
        root, _, rest = path.partition(".")
        sources: Dict[str, Mapping[str, Any]] = {
            "metrics": self.metrics,
            "state": self.state,
            "event": self.event,
        }
        if root not in sources:
            return False, None

        current: Any = sources[root]
        if not rest:
            return True, current
        for part in rest.split("."):
            if isinstance(current, Mapping) and part in current:
                current = current[part]
            else:
                return False, None
        return True, current


@dataclass
class ActionResult:
    """アクション実行結果（エンジンがルール成功時にマージする）"""
    state_updates: Dict[str, Any] = field(default_factory=dict)
    metric_updates: Dict[str, float] = field(default_factory=dict)
    description: str = ""


@dataclass
class RuleOutcome:
    """1ルールの評価結果"""
    rule_id: str
    rule_name: str
    triggered: bool = False
    succeeded: bool = True
    error: Optional[str] = None
    actions_taken: List[str] = field(default_factory=list)


@dataclass
class EvaluationReport:
    """1回の評価パスの集計"""
    timestamp: datetime
    outcomes: List[RuleOutcome] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def evaluated(self) -> int:
        return len(self.outcomes)

    @property
    def triggered(self) -> int:
        return sum(1 for o in self.outcomes if o.triggered and o.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.succeeded)

    @property
    def all_failed(self) -> bool:
        return self.evaluated > 0 and self.failed == self.evaluated

    def triggered_rule_names(self) -> List[str]:
        return [o.rule_name for o in self.outcomes if o.triggered and o.succeeded]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "evaluated": self.evaluated,
            "triggered": self.triggered,
            "failed": self.failed,
            "duration_seconds": self.duration_seconds,
            "outcomes": [
                {
                    "rule_id": o.rule_id,
                    "rule_name": o.rule_name,
                    "triggered": o.triggered,
                    "succeeded": o.succeeded,
                    "error": o.error,
                    "actions_taken": list(o.actions_taken),
                }
                for o in self.outcomes
            ],
        }


@dataclass
class AdaptationOutcome:
    """apply_rules の結果"""
    applied_rule_count: int
    evaluated_rule_count: int
    report: EvaluationReport
