# src/monitoring/__init__.py
"""監視モジュール

適応エンジンの評価メトリクス収集機能を提供する。
"""

from src.monitoring.engine_metrics import (
    AdaptationMetrics,
    AdaptationMetricsSnapshot,
    Counter,
    Histogram,
)

__all__ = [
    "AdaptationMetrics",
    "AdaptationMetricsSnapshot",
    "Counter",
    "Histogram",
]
