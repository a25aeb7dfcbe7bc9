# CLI commands module
"""
CLIコマンド実装パッケージ

各コマンドは独立したモジュールとして実装され、
main.py から登録されます。
"""

from .definition import definition_commands
from .evaluate import evaluate_command
from .lifecycle import lifecycle_commands

__all__ = [
    "definition_commands",
    "evaluate_command",
    "lifecycle_commands",
]
