# ルール記述子ローダー
"""
辞書 / YAML のルール記述子から AdaptationRule を生成する

YAML の形式:
    rules:
      - id: rule-high-error
        name: high_error_rate
        priority: high          # critical / high / medium / low または整数（小さいほど先）
        enabled: true
        description: エラー率が高いときにセーフモードへ
        condition:
          type: compare
          path: metrics.error_rate
          operator: gt
          value: 0.1
        actions:
          - type: update_state
            updates: {search: {mode: safe}}

検証エラーは全て ConfigurationError。
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Union

import yaml

from src.adaptation.actions import parse_action
from src.adaptation.conditions import parse_condition
from src.config.experimentation_config import RULE_PRIORITY_LEVELS
from src.models.adaptation import AdaptationRule, RulePriority
from src.models.errors import ConfigurationError


logger = logging.getLogger(__name__)


def rule_from_dict(data: Dict[str, Any]) -> AdaptationRule:
    """ルール記述子から AdaptationRule を生成

    Raises:
        ConfigurationError: 必須フィールドの欠落、不正な優先度・条件・アクション
    """
    if not isinstance(data, dict):
        raise ConfigurationError(f"Rule must be a mapping, got {data!r}")

    missing = [key for key in ("id", "name", "condition") if key not in data]
    if missing:
        raise ConfigurationError(f"Rule is missing required fields: {', '.join(missing)}")

    rule_id, name = data["id"], data["name"]
    if not isinstance(rule_id, str) or not rule_id:
        raise ConfigurationError("Rule id must be a non-empty string")
    if not isinstance(name, str) or not name:
        raise ConfigurationError("Rule name must be a non-empty string")

    actions = data.get("actions") or []
    if not isinstance(actions, list):
        raise ConfigurationError(f"Rule '{name}': actions must be a list")

    enabled = data.get("enabled", True)
    if not isinstance(enabled, bool):
        raise ConfigurationError(f"Rule '{name}': enabled must be a boolean")

    return AdaptationRule(
        id=rule_id,
        name=name,
        condition=parse_condition(data["condition"]),
        actions=[parse_action(action) for action in actions],
        priority=_parse_priority(data.get("priority", "medium"), name),
        enabled=enabled,
        description=str(data.get("description") or ""),
    )


def load_rules(path: Union[str, Path]) -> List[AdaptationRule]:
    """YAML ファイルからルール一覧を読み込む

    Raises:
        ConfigurationError: ファイルが読めない、または内容が不正な場合
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(f"Cannot read rules file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("rules"), list):
        raise ConfigurationError(f"{path}: root must be a mapping with a 'rules' list")

    rules = [rule_from_dict(item) for item in data["rules"]]
    names = [rule.name for rule in rules]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ConfigurationError(f"{path}: duplicate rule names {duplicates}")

    logger.info(f"ルールを読み込み: path={path}, count={len(rules)}")
    return rules


def _parse_priority(value: Any, rule_name: str) -> int:
    """名前（critical など）は RulePriority に、整数はそのまま序数として使う"""
    if isinstance(value, str):
        level = RULE_PRIORITY_LEVELS.get(value.lower())
        if level is None:
            raise ConfigurationError(
                f"Rule '{rule_name}': unknown priority '{value}'. "
                f"Valid: {list(RULE_PRIORITY_LEVELS.keys())}"
            )
        return RulePriority(level)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    raise ConfigurationError(f"Rule '{rule_name}': invalid priority {value!r}")
