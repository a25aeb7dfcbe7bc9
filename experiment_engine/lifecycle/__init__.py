# experiment_engine/lifecycle/__init__.py
"""実験ライフサイクルモジュール

状態遷移表と、割り当て・成果取り込み・評価をまとめるコントローラー。
"""

from experiment_engine.lifecycle.controller import ExperimentController
from experiment_engine.lifecycle.state_machine import (
    TRANSITIONS,
    LifecycleEvent,
    allowed_events,
    next_status,
)

__all__ = [
    "ExperimentController",
    "LifecycleEvent",
    "TRANSITIONS",
    "allowed_events",
    "next_status",
]
