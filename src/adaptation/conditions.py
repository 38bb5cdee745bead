# ルール条件AST
"""
ルール条件のタグ付きAST

条件は実行可能コードではなく、評価時に RuleContext に対して解釈される。
記述子（辞書 / YAML）から parse_condition() で生成する。

記述子の例:
    {"type": "compare", "path": "metrics.error_rate", "operator": "gt", "value": 0.1}
    {"type": "and", "conditions": [...]}
    {"type": "or", "conditions": [...]}
    {"type": "not", "condition": {...}}
    {"type": "event", "event_type": "search", "properties": {"source": "api"}}
    {"type": "history", "metric": "latency", "aggregate": "avg", "window": 5,
     "operator": "gte", "value": 200}
    {"type": "pattern", "pattern_type": "event_frequency", "min_confidence": 0.7}
    {"type": "constant", "value": true}

未知のタグ・演算子・必須フィールドの欠落は ConfigurationError。
"""

import operator as _op
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from src.models.adaptation import RuleContext
from src.models.errors import ConfigurationError


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "gt": _op.gt,
    "lt": _op.lt,
    "gte": _op.ge,
    "lte": _op.le,
    "eq": _op.eq,
    "ne": _op.ne,
}

HISTORY_AGGREGATES = ("avg", "min", "max", "last", "count", "delta")

PATH_ROOTS = ("metrics", "state", "event")


class Condition(ABC):
    """条件ノードの基底クラス"""

    tag: str = ""

    @abstractmethod
    def evaluate(self, context: RuleContext) -> bool:
        """コンテキストに対して条件を評価"""

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        """記述子に戻す"""


def _check_operator(name: str) -> None:
    if name not in OPERATORS:
        raise ConfigurationError(
            f"Unknown operator '{name}'. Valid: {list(OPERATORS.keys())}"
        )


@dataclass
class CompareCondition(Condition):
    """パスの値と定数の比較。パスが存在しなければ False"""
    path: str
    operator: str
    value: Any
    tag = "compare"

    def __post_init__(self):
        _check_operator(self.operator)
        if self.path.partition(".")[0] not in PATH_ROOTS:
            raise ConfigurationError(
                f"Path '{self.path}' must start with one of {PATH_ROOTS}"
            )

    def evaluate(self, context: RuleContext) -> bool:
        found, actual = context.resolve(self.path)
        if not found or actual is None:
            return False
        return bool(OPERATORS[self.operator](actual, self.value))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.tag,
            "path": self.path,
            "operator": self.operator,
            "value": self.value,
        }


@dataclass
class AndCondition(Condition):
    conditions: List[Condition]
    tag = "and"

    def evaluate(self, context: RuleContext) -> bool:
        return all(c.evaluate(context) for c in self.conditions)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.tag, "conditions": [c.to_dict() for c in self.conditions]}


@dataclass
class OrCondition(Condition):
    conditions: List[Condition]
    tag = "or"

    def evaluate(self, context: RuleContext) -> bool:
        return any(c.evaluate(context) for c in self.conditions)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.tag, "conditions": [c.to_dict() for c in self.conditions]}


@dataclass
class NotCondition(Condition):
    condition: Condition
    tag = "not"

    def evaluate(self, context: RuleContext) -> bool:
        return not self.condition.evaluate(context)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.tag, "condition": self.condition.to_dict()}


@dataclass
class EventCondition(Condition):
    """イベント種別とプロパティの完全一致"""
    event_type: str
    properties: Dict[str, Any] = field(default_factory=dict)
    tag = "event"

    def evaluate(self, context: RuleContext) -> bool:
        if context.event.get("type") != self.event_type:
            return False
        return all(
            key in context.event and context.event[key] == value
            for key, value in self.properties.items()
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.tag,
            "event_type": self.event_type,
            "properties": dict(self.properties),
        }


@dataclass
class HistoryCondition(Condition):
    """メトリクス履歴の直近 window 点の集計値との比較

    aggregate:
        avg / min / max / last: 値の集計
        count: 点数（空の履歴は 0）
        delta: 最新値 − 最古値（2点未満なら False）
    """
    metric: str
    aggregate: str
    operator: str
    value: float
    window: Optional[int] = None
    tag = "history"

    def __post_init__(self):
        _check_operator(self.operator)
        if self.aggregate not in HISTORY_AGGREGATES:
            raise ConfigurationError(
                f"Unknown history aggregate '{self.aggregate}'. "
                f"Valid: {list(HISTORY_AGGREGATES)}"
            )
        if self.window is not None and self.window <= 0:
            raise ConfigurationError(f"window must be positive, got {self.window}")

    def evaluate(self, context: RuleContext) -> bool:
        series = context.metric_history.get(self.metric, ())
        if self.window is not None:
            series = series[-self.window:]
        values = [v for _, v in series]
        if self.aggregate == "count":
            return bool(OPERATORS[self.operator](len(values), self.value))
        if not values:
            return False

        if self.aggregate == "avg":
            actual = sum(values) / len(values)
        elif self.aggregate == "min":
            actual = min(values)
        elif self.aggregate == "max":
            actual = max(values)
        elif self.aggregate == "last":
            actual = values[-1]
        else:
            if len(values) < 2:
                return False
            actual = values[-1] - values[0]

        return bool(OPERATORS[self.operator](actual, self.value))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.tag,
            "metric": self.metric,
            "aggregate": self.aggregate,
            "operator": self.operator,
            "value": self.value,
            "window": self.window,
        }


@dataclass
class PatternCondition(Condition):
    """パターン履歴に指定種別・最低信頼度のパターンがあるか"""
    pattern_type: str
    min_confidence: float = 0.0
    tag = "pattern"

    def evaluate(self, context: RuleContext) -> bool:
        return any(
            p.pattern_type == self.pattern_type and p.confidence >= self.min_confidence
            for p in context.pattern_history
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.tag,
            "pattern_type": self.pattern_type,
            "min_confidence": self.min_confidence,
        }


@dataclass
class ConstantCondition(Condition):
    value: bool
    tag = "constant"

    def evaluate(self, context: RuleContext) -> bool:
        return self.value

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.tag, "value": self.value}


def parse_condition(data: Dict[str, Any]) -> Condition:
    """記述子から条件ASTを生成

    Raises:
        ConfigurationError: 記述子が不正な場合
    """
    if not isinstance(data, dict):
        raise ConfigurationError(f"Condition must be a mapping, got {data!r}")
    tag = data.get("type")

    try:
        if tag == "compare":
            return CompareCondition(
                path=str(data["path"]),
                operator=data["operator"],
                value=data["value"],
            )
        if tag in ("and", "or"):
            children = data["conditions"]
            if not isinstance(children, list) or not children:
                raise ConfigurationError(f"'{tag}' needs a non-empty conditions list")
            parsed = [parse_condition(c) for c in children]
            return AndCondition(parsed) if tag == "and" else OrCondition(parsed)
        if tag == "not":
            return NotCondition(parse_condition(data["condition"]))
        if tag == "event":
            return EventCondition(
                event_type=str(data["event_type"]),
                properties=dict(data.get("properties") or {}),
            )
        if tag == "history":
            window = data.get("window")
            return HistoryCondition(
                metric=str(data["metric"]),
                aggregate=data.get("aggregate", "avg"),
                operator=data["operator"],
                value=float(data["value"]),
                window=int(window) if window is not None else None,
            )
        if tag == "pattern":
            return PatternCondition(
                pattern_type=str(data["pattern_type"]),
                min_confidence=float(data.get("min_confidence", 0.0)),
            )
        if tag == "constant":
            return ConstantCondition(bool(data["value"]))
    except KeyError as e:
        raise ConfigurationError(f"Condition '{tag}' is missing field {e}") from e
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid '{tag}' condition {data!r}: {e}") from e

    raise ConfigurationError(f"Unknown condition type: {tag!r}")
