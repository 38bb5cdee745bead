# Config モジュール
from src.config.experimentation_config import (
    ExperimentationConfig,
    experimentation_config,
)

__all__ = [
    "ExperimentationConfig",
    "experimentation_config",
]
