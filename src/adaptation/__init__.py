"""適応ルール評価モジュール

ルールの条件・アクションAST、有界履歴、パターン検出、
優先度順のルール評価エンジンを提供する。
"""

from src.adaptation.actions import (
    Action,
    AdjustMetricAction,
    CompositeAction,
    NotifyAction,
    SetMetricAction,
    UpdateStateAction,
    deep_merge,
    parse_action,
)
from src.adaptation.conditions import (
    AndCondition,
    CompareCondition,
    Condition,
    ConstantCondition,
    EventCondition,
    HistoryCondition,
    NotCondition,
    OrCondition,
    PatternCondition,
    parse_condition,
)
from src.adaptation.engine import AdaptationEngine
from src.adaptation.executor import ActionExecutor
from src.adaptation.history import HistoryStore
from src.adaptation.patterns import PatternDetector
from src.adaptation.registry import RuleRegistry
from src.adaptation.rule_loader import load_rules, rule_from_dict

__all__ = [
    # 条件
    "Condition",
    "CompareCondition",
    "AndCondition",
    "OrCondition",
    "NotCondition",
    "EventCondition",
    "HistoryCondition",
    "PatternCondition",
    "ConstantCondition",
    "parse_condition",
    # アクション
    "Action",
    "NotifyAction",
    "UpdateStateAction",
    "AdjustMetricAction",
    "SetMetricAction",
    "CompositeAction",
    "deep_merge",
    "parse_action",
    # エンジン
    "AdaptationEngine",
    "ActionExecutor",
    "HistoryStore",
    "PatternDetector",
    "RuleRegistry",
    "load_rules",
    "rule_from_dict",
]
