# Config モジュール
from experiment_engine.config.engine_config import (
    EngineConfig,
    engine_config,
    METRIC_KINDS,
    LIFECYCLE_EVENTS,
    STATUS_DESCRIPTIONS,
)

__all__ = [
    "EngineConfig",
    "engine_config",
    "METRIC_KINDS",
    "LIFECYCLE_EVENTS",
    "STATUS_DESCRIPTIONS",
]
