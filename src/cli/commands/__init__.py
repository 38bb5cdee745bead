# CLI commands module
"""
CLIコマンド実装パッケージ

各コマンドは独立したモジュールとして実装され、
main.py から登録されます。
"""

from .experiment import experiment_command
from .rules import rules_command

__all__ = [
    "experiment_command",
    "rules_command",
]
