# CLI commands module
"""
CLIコマンド実装パッケージ

各コマンドは独立したモジュールとして実装され、
main.py から登録されます。
"""

from .analyze import analyze_command
from .evaluate import evaluate_command
from .monitor import monitor_command
from .scheduler import scheduler_command

__all__ = [
    "analyze_command",
    "evaluate_command",
    "monitor_command",
    "scheduler_command",
]
