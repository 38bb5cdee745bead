# 実験モデル定義
# ab_experiments / ab_assignments / ab_metric_events テーブルに対応するデータクラス

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from src.models.errors import ConfigurationError


class ExperimentStatus(str, Enum):
    """実験のステータス

    状態遷移:
        DRAFT / PENDING → ACTIVE ⇄ PAUSED → COMPLETED
    """
    DRAFT = "draft"
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


@dataclass(frozen=True)
class Variant:
    """実験の1アーム"""

    id: str
    """バリアントID（実験内で一意）"""

    name: str
    """表示名"""

    allocation: float
    """トラフィック配分 (0, 1]"""

    weights: Dict[str, float] = field(default_factory=dict)
    """二次的な重みマップ（検索ランキングの係数など）"""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "allocation": self.allocation,
            "weights": dict(self.weights),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Variant:
        try:
            return cls(
                id=str(data["id"]),
                name=str(data.get("name", data["id"])),
                allocation=float(data["allocation"]),
                weights={k: float(v) for k, v in (data.get("weights") or {}).items()},
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid variant definition {data!r}: {e}") from e


@dataclass
class Experiment:
    """ab_experiments テーブルに対応するデータクラス

    生成時に validate() を実行し、配分合計が 1 ± tolerance でない実験は
    ConfigurationError で拒否する。作成後に配分が再検証されることはない。
    """

    id: str
    name: str
    variants: List[Variant]
    status: ExperimentStatus = ExperimentStatus.DRAFT
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    primary_metric: str = "conversion"
    """コンバージョン率の算出に使うイベント種別"""

    allocation_tolerance: float = field(default=1e-3, repr=False, compare=False)

    def __post_init__(self):
        if not isinstance(self.status, ExperimentStatus):
            try:
                self.status = ExperimentStatus(self.status)
            except ValueError as e:
                raise ConfigurationError(f"Unknown experiment status: {self.status!r}") from e
        self.validate()

    def validate(self) -> None:
        """実験定義を検証

        Raises:
            ConfigurationError: バリアントが空、ID重複、配分が範囲外、
                配分合計が1でない、期間が逆転している場合
        """
        if not self.variants:
            raise ConfigurationError("Experiment must have at least one variant")

        ids = [v.id for v in self.variants]
        if len(ids) != len(set(ids)):
            raise ConfigurationError(f"Variant ids must be unique, got {ids}")

        for variant in self.variants:
            if not (0.0 < variant.allocation <= 1.0):
                raise ConfigurationError(
                    f"Variant '{variant.id}' allocation must be in (0, 1], "
                    f"got {variant.allocation}"
                )

        total = sum(v.allocation for v in self.variants)
        if abs(total - 1.0) > self.allocation_tolerance:
            raise ConfigurationError(
                f"Variant allocations must sum to 1.0, got {total}"
            )

        if (
            self.start_date is not None
            and self.end_date is not None
            and self.start_date > self.end_date
        ):
            raise ConfigurationError(
                f"start_date {self.start_date} is after end_date {self.end_date}"
            )

    @property
    def variant_ids(self) -> List[str]:
        return [v.id for v in self.variants]

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        for variant in self.variants:
            if variant.id == variant_id:
                return variant
        return None

    def is_assignable(self, now: Optional[datetime] = None) -> bool:
        """新規割り当てが可能か（ACTIVE かつ期間内）"""
        if self.status != ExperimentStatus.ACTIVE:
            return False
        now = now or datetime.now()
        if self.start_date is not None and now < self.start_date:
            return False
        if self.end_date is not None and now > self.end_date:
            return False
        return True

    def configuration_json(self) -> str:
        """variants 列に保存するJSON"""
        return json.dumps(
            {
                "variants": [v.to_dict() for v in self.variants],
                "primary_metric": self.primary_metric,
            }
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "description": self.description,
            "variants": [v.to_dict() for v in self.variants],
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "primary_metric": self.primary_metric,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], allocation_tolerance: float = 1e-3) -> Experiment:
        """辞書（YAML定義やAPIペイロード）から生成"""
        if "id" not in data:
            raise ConfigurationError("Experiment id is required")
        variants_data = data.get("variants")
        if not isinstance(variants_data, list):
            raise ConfigurationError("variants must be a list")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", data["id"])),
            variants=[Variant.from_dict(v) for v in variants_data],
            status=data.get("status", ExperimentStatus.DRAFT.value),
            description=data.get("description"),
            start_date=_parse_datetime(data.get("start_date")),
            end_date=_parse_datetime(data.get("end_date")),
            primary_metric=data.get("primary_metric", "conversion"),
            allocation_tolerance=allocation_tolerance,
        )

    @classmethod
    def from_row(cls, row: Tuple) -> Experiment:
        """DBの行 (id, name, status, configuration, description, start_date, end_date) から生成"""
        configuration = row[3] if isinstance(row[3], dict) else json.loads(row[3])
        return cls(
            id=str(row[0]),
            name=row[1],
            status=ExperimentStatus(row[2]),
            variants=[Variant.from_dict(v) for v in configuration["variants"]],
            primary_metric=configuration.get("primary_metric", "conversion"),
            description=row[4],
            start_date=row[5],
            end_date=row[6],
        )


@dataclass(frozen=True)
class Assignment:
    """(実験, 被験者) → バリアントの割り当て

    一度作成されたら更新・削除しない。
    """
    experiment_id: str
    subject_id: str
    variant_id: str
    strategy: str = "deterministic"
    assigned_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment_id": self.experiment_id,
            "subject_id": self.subject_id,
            "variant_id": self.variant_id,
            "strategy": self.strategy,
            "assigned_at": self.assigned_at.isoformat(),
        }


@dataclass(frozen=True)
class MetricEvent:
    """結果イベント（追記専用）"""
    experiment_id: str
    variant_id: str
    subject_id: str
    event_type: str
    value: float = 1.0
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment_id": self.experiment_id,
            "variant_id": self.variant_id,
            "subject_id": self.subject_id,
            "event_type": self.event_type,
            "value": self.value,
            "timestamp": self.timestamp.isoformat(),
        }


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError as e:
        raise ConfigurationError(f"Invalid datetime: {value!r}") from e
