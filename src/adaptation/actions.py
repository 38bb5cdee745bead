# ルールアクションAST
"""
ルールアクションのタグ付きAST

アクションはコンテキストを書き換えず、ActionResult（状態・メトリクスの
更新内容）を返す。エンジンはルールの全アクションが成功した後にだけ
結果をマージする。ワーカースレッドで実行されるため、アクションは
自身の外部状態を変更しない。

記述子の例:
    {"type": "notify", "title": "High error rate", "message": "...",
     "severity": "warning", "channels": ["ops"]}
    {"type": "update_state", "updates": {"search": {"mode": "safe"}}}
    {"type": "adjust_metric", "metric": "threshold", "adjustment": -0.05,
     "min": 0.1, "max": 0.9}
    {"type": "set_metric", "metric": "boost", "value": 1.0}
    {"type": "composite", "actions": [...]}
"""

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from src.config.experimentation_config import NOTIFY_SEVERITIES
from src.models.adaptation import ActionResult, RuleContext
from src.models.errors import ConfigurationError


logger = logging.getLogger(__name__)


class Action(ABC):
    """アクションノードの基底クラス"""

    tag: str = ""

    @abstractmethod
    def execute(self, context: RuleContext) -> ActionResult:
        """アクションを実行し、エンジンにマージさせる更新内容を返す"""

    @abstractmethod
    def to_dict(self) -> Dict[str, Any]:
        """記述子に戻す"""


@dataclass
class NotifyAction(Action):
    """通知を記録する（配信は外部コラボレーター）"""
    title: str
    message: str
    severity: str = "info"
    channels: List[str] = field(default_factory=list)
    tag = "notify"

    def __post_init__(self):
        if self.severity not in NOTIFY_SEVERITIES:
            raise ConfigurationError(
                f"Unknown severity '{self.severity}'. Valid: {list(NOTIFY_SEVERITIES)}"
            )

    def execute(self, context: RuleContext) -> ActionResult:
        level = {
            "info": logging.INFO,
            "warning": logging.WARNING,
            "error": logging.ERROR,
        }[self.severity]
        logger.log(
            level,
            f"通知: title={self.title}, message={self.message}, "
            f"channels={self.channels}, event={context.event.get('type')}",
        )
        return ActionResult(description=f"notify:{self.title}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.tag,
            "title": self.title,
            "message": self.message,
            "severity": self.severity,
            "channels": list(self.channels),
        }


@dataclass
class UpdateStateAction(Action):
    """状態を更新（エンジン側でディープマージ）"""
    updates: Dict[str, Any]
    tag = "update_state"

    def execute(self, context: RuleContext) -> ActionResult:
        return ActionResult(
            state_updates=copy.deepcopy(self.updates),
            description=f"update_state:{','.join(sorted(self.updates))}",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.tag, "updates": copy.deepcopy(self.updates)}


@dataclass
class AdjustMetricAction(Action):
    """現在値に adjustment を加え、[min, max] にクランプ"""
    metric: str
    adjustment: float
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    tag = "adjust_metric"

    def __post_init__(self):
        if (
            self.min_value is not None
            and self.max_value is not None
            and self.min_value > self.max_value
        ):
            raise ConfigurationError(
                f"min ({self.min_value}) is greater than max ({self.max_value})"
            )

    def execute(self, context: RuleContext) -> ActionResult:
        current = float(context.metrics.get(self.metric, 0.0))
        new_value = current + self.adjustment
        if self.min_value is not None:
            new_value = max(new_value, self.min_value)
        if self.max_value is not None:
            new_value = min(new_value, self.max_value)
        logger.info(f"メトリクスを調整: {self.metric} {current} -> {new_value}")
        return ActionResult(
            metric_updates={self.metric: new_value},
            description=f"adjust_metric:{self.metric}",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.tag,
            "metric": self.metric,
            "adjustment": self.adjustment,
            "min": self.min_value,
            "max": self.max_value,
        }


@dataclass
class SetMetricAction(Action):
    metric: str
    value: float
    tag = "set_metric"

    def execute(self, context: RuleContext) -> ActionResult:
        return ActionResult(
            metric_updates={self.metric: self.value},
            description=f"set_metric:{self.metric}",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.tag, "metric": self.metric, "value": self.value}


@dataclass
class CompositeAction(Action):
    """子アクションを順に実行。失敗した子はログに残してスキップ"""
    actions: List[Action]
    tag = "composite"

    def execute(self, context: RuleContext) -> ActionResult:
        combined = ActionResult()
        descriptions = []
        for action in self.actions:
            try:
                result = action.execute(context)
            except Exception:
                logger.exception(f"子アクションの実行に失敗: {action.tag}")
                continue
            deep_merge(combined.state_updates, result.state_updates)
            combined.metric_updates.update(result.metric_updates)
            descriptions.append(result.description)
        combined.description = f"composite[{';'.join(descriptions)}]"
        return combined

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.tag, "actions": [a.to_dict() for a in self.actions]}


def deep_merge(target: Dict[str, Any], source: Dict[str, Any]) -> Dict[str, Any]:
    """source を target に再帰的にマージ（target を変更して返す）"""
    for key, value in source.items():
        if isinstance(value, dict):
            existing = target.get(key)
            if not isinstance(existing, dict):
                existing = {}
                target[key] = existing
            deep_merge(existing, value)
        else:
            target[key] = value
    return target


def parse_action(data: Dict[str, Any]) -> Action:
    """記述子からアクションASTを生成

    Raises:
        ConfigurationError: 記述子が不正な場合
    """
    if not isinstance(data, dict):
        raise ConfigurationError(f"Action must be a mapping, got {data!r}")
    tag = data.get("type")

    try:
        if tag == "notify":
            return NotifyAction(
                title=str(data["title"]),
                message=str(data.get("message", "")),
                severity=data.get("severity", "info"),
                channels=list(data.get("channels") or []),
            )
        if tag == "update_state":
            updates = data["updates"]
            if not isinstance(updates, dict):
                raise ConfigurationError("update_state.updates must be a mapping")
            return UpdateStateAction(updates=copy.deepcopy(updates))
        if tag == "adjust_metric":
            return AdjustMetricAction(
                metric=str(data["metric"]),
                adjustment=float(data["adjustment"]),
                min_value=float(data["min"]) if data.get("min") is not None else None,
                max_value=float(data["max"]) if data.get("max") is not None else None,
            )
        if tag == "set_metric":
            return SetMetricAction(metric=str(data["metric"]), value=float(data["value"]))
        if tag == "composite":
            children = data["actions"]
            if not isinstance(children, list):
                raise ConfigurationError("composite.actions must be a list")
            return CompositeAction([parse_action(a) for a in children])
    except KeyError as e:
        raise ConfigurationError(f"Action '{tag}' is missing field {e}") from e
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid '{tag}' action {data!r}: {e}") from e

    raise ConfigurationError(f"Unknown action type: {tag!r}")
