# 実験・適応エンジン パラメータ設定
# 割り当て・集計・有意性検定・ルール評価エンジンの全設定値をここに集約する

import os
from dataclasses import dataclass, fields
from typing import Any, Dict


@dataclass
class ExperimentationConfig:
    """実験・適応エンジン パラメータ設定

    設定グループ:
    - バリアント割り当て
    - 統計的有意性
    - ルール評価エンジン
    - パターン検出
    """

    # === バリアント割り当て ===
    allocation_tolerance: float = 1e-3
    """配分合計の許容誤差（Σallocation = 1 ± tolerance）"""

    assignment_strategy: str = "deterministic"
    """割り当て戦略: "deterministic" | "weighted_random" """

    hash_prefix_bytes: int = 8
    """ハッシュダイジェストから使用する先頭バイト数"""

    default_conversion_event: str = "conversion"
    """コンバージョンとみなすイベント種別"""

    # === 統計的有意性 ===
    significance_alpha: float = 0.05
    """有意水準（p値がこれ未満で有意）"""

    z_critical: float = 1.96
    """信頼区間のz値（95%）"""

    cdf_method: str = "abramowitz_stegun"
    """正規分布CDFの計算方法: "abramowitz_stegun" | "scipy" """

    # === ルール評価エンジン ===
    history_window_size: int = 100
    """メトリクスキーごとの履歴保持数"""

    event_history_size: int = 500
    """イベント履歴の保持数"""

    pattern_history_size: int = 200
    """パターン履歴の保持数"""

    evaluation_interval_seconds: float = 1.0
    """定期評価ループの間隔（秒）"""

    max_concurrent_actions: int = 4
    """アクション同時実行数の上限"""

    # === パターン検出 ===
    pattern_frequency_scale: float = 10.0
    """頻度重みの正規化係数（count / scale、上限1）"""

    pattern_breadth_scale: float = 5.0
    """広がり重みの正規化係数（distinct / scale、上限1）"""

    min_pattern_confidence: float = 0.0
    """これ未満の信頼度のパターンは破棄"""

    trend_min_points: int = 5
    """トレンド検出に必要な最小データ点数"""

    @classmethod
    def from_env(cls, prefix: str = "EXPERIMENTATION_") -> "ExperimentationConfig":
        """環境変数から設定を生成

        例: EXPERIMENTATION_SIGNIFICANCE_ALPHA=0.01

        Raises:
            ValueError: 型変換できない値が指定された場合
        """
        overrides: Dict[str, Any] = {}
        for f in fields(cls):
            raw = os.getenv(f"{prefix}{f.name.upper()}")
            if raw is None:
                continue
            default = f.default
            if isinstance(default, bool):
                overrides[f.name] = raw.lower() in ("1", "true", "yes")
            elif isinstance(default, int):
                overrides[f.name] = int(raw)
            elif isinstance(default, float):
                overrides[f.name] = float(raw)
            else:
                overrides[f.name] = raw
        return cls(**overrides)


# === ルール優先度（小さいほど先に評価）===
RULE_PRIORITY_LEVELS: Dict[str, int] = {
    "critical": 0,
    "high": 1,
    "medium": 2,
    "low": 3,
}

# === 時系列集計の粒度（秒）===
TIME_SERIES_GRANULARITY: Dict[str, int] = {
    "hourly": 60 * 60,
    "daily": 24 * 60 * 60,
    "weekly": 7 * 24 * 60 * 60,
}

# === 通知の重要度 ===
NOTIFY_SEVERITIES = ("info", "warning", "error")


# デフォルト設定のインスタンス
experimentation_config = ExperimentationConfig()
