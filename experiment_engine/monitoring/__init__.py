# experiment_engine/monitoring/__init__.py
"""監視モジュール

割り当て・成果取り込み・ライフサイクル遷移・イベントシンクのメトリクスを収集する。
"""

from experiment_engine.monitoring.metrics_collector import (
    MetricsCollector,
    Counter,
    Gauge,
    Histogram,
    MetricType,
)

__all__ = [
    "MetricsCollector",
    "Counter",
    "Gauge",
    "Histogram",
    "MetricType",
]
