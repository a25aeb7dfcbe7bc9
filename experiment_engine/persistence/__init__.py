# experiment_engine/persistence/__init__.py
"""イベント永続化モジュール

露出・成果イベントを非同期・ベストエフォートで保存する。
"""

from experiment_engine.persistence.event_sink import AsyncEventSink
from experiment_engine.persistence.event_store import (
    EventStore,
    InMemoryEventStore,
    PostgresEventStore,
)

__all__ = [
    "AsyncEventSink",
    "EventStore",
    "InMemoryEventStore",
    "PostgresEventStore",
]
