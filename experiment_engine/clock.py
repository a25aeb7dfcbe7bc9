# 時刻取得インターフェース
"""
注入可能なクロック

すべてのタイムスタンプ（作成・開始・終了・露出・成果）はこのインターフェース経由で取得する。
テストでは ManualClock を渡して時刻を固定・操作する。
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from threading import Lock
from typing import Optional


class Clock(ABC):
    """時刻取得の抽象クラス"""

    @abstractmethod
    def now(self) -> datetime:
        """現在時刻を返す"""


class SystemClock(Clock):
    """システム時刻をそのまま返すクロック"""

    def now(self) -> datetime:
        return datetime.now()


class ManualClock(Clock):
    """手動で進めるクロック（テスト用）

    使用例:
        clock = ManualClock(datetime(2024, 1, 15, 9, 0))
        clock.advance(hours=1)
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1)
        self._lock = Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, **kwargs: float) -> datetime:
        """timedelta と同じキーワード引数で時刻を進める"""
        with self._lock:
            self._now = self._now + timedelta(**kwargs)
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = value
