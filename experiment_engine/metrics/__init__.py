# experiment_engine/metrics/__init__.py
"""メトリクス集計モジュール

露出・成果イベントを (実験, バリアント, メトリクス) 単位で増分集計する。
"""

from experiment_engine.metrics.accumulator import Aggregate, MetricsAccumulator, Snapshot

__all__ = [
    "Aggregate",
    "MetricsAccumulator",
    "Snapshot",
]
