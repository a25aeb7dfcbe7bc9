# 非同期イベントシンク
"""
AsyncEventSink: 露出・成果イベントをバックグラウンドスレッドで EventStore に書き込む

保証:
- put() はブロックせず、例外も送出しない（割り当て・取り込みのホットパスから呼ばれるため）
- キューが満杯、またはクローズ後の put() はイベントを破棄し、警告ログとカウンターに残す
- 書き込み失敗はログとカウンターに残し、バッチを破棄して処理を続ける（ベストエフォート）
- close() はキューに残ったイベントを書き切ってからスレッドを停止する
"""

import logging
import queue
import threading
import time
from typing import List, Optional, Union

from experiment_engine.config.engine_config import EngineConfig
from experiment_engine.models.experiment import Exposure, OutcomeEvent
from experiment_engine.monitoring.metrics_collector import MetricsCollector
from experiment_engine.persistence.event_store import EventStore


logger = logging.getLogger(__name__)

Event = Union[Exposure, OutcomeEvent]


class AsyncEventSink:
    """キュー + デーモンスレッドによる書き込み

    使用例:
        sink = AsyncEventSink(PostgresEventStore(db))
        sink.put(exposure)
        ...
        sink.close()

    Attributes:
        store: 書き込み先
        batch_size: 1回の書き込みで処理する最大イベント数
        flush_interval: キュー待機のタイムアウト（秒）
    """

    def __init__(
        self,
        store: EventStore,
        config: Optional[EngineConfig] = None,
        collector: Optional[MetricsCollector] = None,
    ):
        config = config or EngineConfig()
        self.store = store
        self.collector = collector
        self.batch_size = config.event_sink_batch_size
        self.flush_interval = config.event_sink_flush_interval_seconds
        self._queue: "queue.Queue[Event]" = queue.Queue(maxsize=config.event_sink_queue_size)
        self._closed = threading.Event()
        self._dropped = 0
        self._drop_lock = threading.Lock()
        self._thread = threading.Thread(
            target=self._run,
            name="experiment-event-sink",
            daemon=True,
        )
        self._thread.start()

    @property
    def dropped(self) -> int:
        """破棄したイベント数"""
        return self._dropped

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def put(self, event: Event) -> bool:
        """イベントをキューに積む

        Returns:
            積めた場合 True（満杯・クローズ後は False）
        """
        if self._closed.is_set():
            self._drop("sink is closed")
            return False
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            self._drop("queue is full")
            return False
        if self.collector:
            self.collector.set_sink_queue_depth(self._queue.qsize())
        return True

    def flush(self, timeout: float = 5.0) -> bool:
        """キューが空になるまで待つ

        Returns:
            期限内に書き切った場合 True
        """
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def close(self, timeout: float = 5.0) -> None:
        """残りを書き切ってスレッドを停止"""
        if self._closed.is_set():
            return
        self._closed.set()
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning(f"イベントシンクの停止がタイムアウト: pending={self.pending}")
        else:
            logger.info(f"イベントシンク停止: dropped={self._dropped}")

    # ===== Private Methods =====

    def _drop(self, reason: str) -> None:
        with self._drop_lock:
            self._dropped += 1
            dropped = self._dropped
        if self.collector:
            self.collector.record_sink_events("dropped")
        logger.warning(f"イベントを破棄: reason={reason}, dropped={dropped}")

    def _run(self) -> None:
        while True:
            try:
                first = self._queue.get(timeout=self.flush_interval)
            except queue.Empty:
                if self._closed.is_set():
                    return
                continue

            batch: List[Event] = [first]
            while len(batch) < self.batch_size:
                try:
                    batch.append(self._queue.get_nowait())
                except queue.Empty:
                    break

            try:
                self._write(batch)
            finally:
                for _ in batch:
                    self._queue.task_done()
                if self.collector:
                    self.collector.set_sink_queue_depth(self._queue.qsize())

    def _write(self, batch: List[Event]) -> None:
        exposures = [e for e in batch if isinstance(e, Exposure)]
        outcomes = [e for e in batch if isinstance(e, OutcomeEvent)]
        try:
            if exposures:
                self.store.write_exposures(exposures)
            if outcomes:
                self.store.write_outcomes(outcomes)
        except Exception as e:
            logger.error(
                f"イベント書き込み失敗: exposures={len(exposures)}, "
                f"outcomes={len(outcomes)}, error={e}"
            )
            if self.collector:
                self.collector.record_sink_events("failed", len(batch))
            return
        if self.collector:
            self.collector.record_sink_events("written", len(batch))
        logger.debug(f"イベント書き込み: exposures={len(exposures)}, outcomes={len(outcomes)}")
