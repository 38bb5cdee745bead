"""YAML loading and minimal schema validation for CLI."""

from __future__ import annotations

from typing import Any, Dict, List

import yaml

from src.models.errors import ConfigurationError
from src.models.experiment import Experiment


class YamlValidationError(ConfigurationError):
    """YAML schema validation error."""


def load_yaml(path: str) -> Dict[str, Any]:
    """Load YAML file and return data."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise YamlValidationError(f"YAMLの解析に失敗しました: {e}") from e
    if not isinstance(data, dict):
        raise YamlValidationError("YAMLのルートはオブジェクトである必要があります")
    return data


def load_experiment(path: str, allocation_tolerance: float = 1e-3) -> Experiment:
    """Load an experiment definition YAML.

    形式:
        id: search-ranking-v2
        name: 検索ランキング改善
        status: active
        variants:
          - {id: control, allocation: 0.5}
          - {id: treatment, allocation: 0.5, weights: {boost: 1.2}}
    """
    data = load_yaml(path)
    _require_fields(data, ["id", "variants"])
    if not isinstance(data["variants"], list) or not data["variants"]:
        raise YamlValidationError("variants は配列で指定してください")
    for variant in data["variants"]:
        if not isinstance(variant, dict):
            raise YamlValidationError("variants の要素はオブジェクトで指定してください")
        _require_fields(variant, ["id", "allocation"], prefix="variants")
    return Experiment.from_dict(data, allocation_tolerance=allocation_tolerance)


def _require_fields(data: Dict[str, Any], fields: List[str], prefix: str | None = None) -> None:
    missing = [field for field in fields if field not in data]
    if missing:
        label = f"{prefix}." if prefix else ""
        raise YamlValidationError(
            "必須フィールドが不足しています: " + ", ".join(f"{label}{m}" for m in missing)
        )
