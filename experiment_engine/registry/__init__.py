# experiment_engine/registry/__init__.py
"""実験レジストリモジュール

実験定義のキャッシュ付きストアと、その永続化インターフェース。
"""

from experiment_engine.registry.experiment_registry import ExperimentFilter, ExperimentRegistry
from experiment_engine.registry.repository import (
    ExperimentRepository,
    InMemoryExperimentRepository,
    PostgresExperimentRepository,
)

__all__ = [
    "ExperimentFilter",
    "ExperimentRegistry",
    "ExperimentRepository",
    "InMemoryExperimentRepository",
    "PostgresExperimentRepository",
]
