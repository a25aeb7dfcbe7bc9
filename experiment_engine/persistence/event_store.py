# 露出・成果イベントの保存先
"""
EventStore: 露出・成果イベントの追記と、集計値の再構築

- write_exposures / write_outcomes: バッチ追記（AsyncEventSink から呼ばれる）
- load_aggregates: 生イベントから (バリアント, メトリクス) 単位の集計値を再計算
  （プロセス再起動時のカウンター復元と CLI の evaluate 用。定常時の評価では使わない）
- load_exposures: 被験者 -> バリアント（露出キャッシュの復元用）
"""

import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from threading import Lock
from typing import Dict, List, Sequence, Set, Tuple

from psycopg2.extras import execute_values

from experiment_engine.db.connection import DatabaseConnection
from experiment_engine.models.experiment import Exposure, OutcomeEvent


logger = logging.getLogger(__name__)

ExposureCounts = Dict[str, int]
OutcomeTotals = Dict[Tuple[str, str], Tuple[int, float, float]]


class EventStore(ABC):
    """露出・成果イベントの保存先"""

    @abstractmethod
    def write_exposures(self, exposures: Sequence[Exposure]) -> int:
        """露出を追記（同じ (実験, 被験者) は無視）

        Returns:
            書き込んだ件数
        """

    @abstractmethod
    def write_outcomes(self, outcomes: Sequence[OutcomeEvent]) -> int:
        """成果イベントを追記

        Returns:
            書き込んだ件数
        """

    @abstractmethod
    def load_aggregates(self, experiment_id: str) -> Tuple[ExposureCounts, OutcomeTotals]:
        """集計値を再計算

        Returns:
            (variant_id -> 露出数, (variant_id, metric) -> (件数, 合計, 二乗和))
        """

    @abstractmethod
    def load_exposures(self, experiment_id: str) -> Dict[str, str]:
        """subject_id -> variant_id"""

    @abstractmethod
    def load_converted(self, experiment_id: str, metrics: Sequence[str]) -> Set[Tuple[str, str]]:
        """指定メトリクスで成果を記録済みの (subject_id, metric)"""


class InMemoryEventStore(EventStore):
    """リストによる実装（テスト・単一プロセス用）"""

    def __init__(self):
        self._exposures: Dict[Tuple[str, str], Exposure] = {}
        self._outcomes: List[OutcomeEvent] = []
        self._lock = Lock()

    @property
    def outcomes(self) -> List[OutcomeEvent]:
        with self._lock:
            return list(self._outcomes)

    @property
    def exposures(self) -> List[Exposure]:
        with self._lock:
            return list(self._exposures.values())

    def write_exposures(self, exposures: Sequence[Exposure]) -> int:
        written = 0
        with self._lock:
            for exposure in exposures:
                key = (exposure.experiment_id, exposure.subject_id)
                if key not in self._exposures:
                    self._exposures[key] = exposure
                    written += 1
        return written

    def write_outcomes(self, outcomes: Sequence[OutcomeEvent]) -> int:
        with self._lock:
            self._outcomes.extend(outcomes)
        return len(outcomes)

    def load_aggregates(self, experiment_id: str) -> Tuple[ExposureCounts, OutcomeTotals]:
        exposures: Dict[str, int] = defaultdict(int)
        totals: Dict[Tuple[str, str], List[float]] = defaultdict(lambda: [0, 0.0, 0.0])
        with self._lock:
            for exposure in self._exposures.values():
                if exposure.experiment_id == experiment_id:
                    exposures[exposure.variant_id] += 1
            for event in self._outcomes:
                if event.experiment_id != experiment_id or event.variant_id is None:
                    continue
                cell = totals[(event.variant_id, event.metric)]
                cell[0] += 1
                cell[1] += event.value
                cell[2] += event.value * event.value
        return dict(exposures), {k: (int(v[0]), v[1], v[2]) for k, v in totals.items()}

    def load_exposures(self, experiment_id: str) -> Dict[str, str]:
        with self._lock:
            return {
                subject_id: exposure.variant_id
                for (exp_id, subject_id), exposure in self._exposures.items()
                if exp_id == experiment_id
            }

    def load_converted(self, experiment_id: str, metrics: Sequence[str]) -> Set[Tuple[str, str]]:
        wanted = set(metrics)
        with self._lock:
            return {
                (event.subject_id, event.metric)
                for event in self._outcomes
                if event.experiment_id == experiment_id and event.metric in wanted
            }


class PostgresEventStore(EventStore):
    """experiment_exposures / experiment_outcomes テーブルによる実装

    Attributes:
        db: DatabaseConnection インスタンス
    """

    _INSERT_EXPOSURES_SQL = """
        INSERT INTO experiment_exposures (experiment_id, subject_id, variant_id, exposed_at)
        VALUES %s
        ON CONFLICT (experiment_id, subject_id) DO NOTHING
    """

    _INSERT_OUTCOMES_SQL = """
        INSERT INTO experiment_outcomes (experiment_id, subject_id, variant_id, metric, value, occurred_at)
        VALUES %s
    """

    _EXPOSURE_COUNTS_SQL = """
        SELECT variant_id, COUNT(*)
        FROM experiment_exposures
        WHERE experiment_id = %s
        GROUP BY variant_id
    """

    _OUTCOME_TOTALS_SQL = """
        SELECT variant_id, metric, COUNT(*), COALESCE(SUM(value), 0), COALESCE(SUM(value * value), 0)
        FROM experiment_outcomes
        WHERE experiment_id = %s
        GROUP BY variant_id, metric
    """

    _SELECT_EXPOSURES_SQL = """
        SELECT subject_id, variant_id
        FROM experiment_exposures
        WHERE experiment_id = %s
    """

    _SELECT_CONVERTED_SQL = """
        SELECT DISTINCT subject_id, metric
        FROM experiment_outcomes
        WHERE experiment_id = %s AND metric = ANY(%s)
    """

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def write_exposures(self, exposures: Sequence[Exposure]) -> int:
        if not exposures:
            return 0
        rows = [
            (e.experiment_id, e.subject_id, e.variant_id, e.timestamp)
            for e in exposures
        ]
        with self.db.get_cursor() as cur:
            execute_values(cur, self._INSERT_EXPOSURES_SQL, rows)
            written = cur.rowcount
        return max(written, 0)

    def write_outcomes(self, outcomes: Sequence[OutcomeEvent]) -> int:
        rows = [
            (o.experiment_id, o.subject_id, o.variant_id, o.metric, o.value, o.timestamp)
            for o in outcomes
            if o.variant_id is not None
        ]
        if not rows:
            return 0
        with self.db.get_cursor() as cur:
            execute_values(cur, self._INSERT_OUTCOMES_SQL, rows)
        return len(rows)

    def load_aggregates(self, experiment_id: str) -> Tuple[ExposureCounts, OutcomeTotals]:
        with self.db.get_cursor() as cur:
            cur.execute(self._EXPOSURE_COUNTS_SQL, (experiment_id,))
            exposures = {row[0]: int(row[1]) for row in cur.fetchall()}
            cur.execute(self._OUTCOME_TOTALS_SQL, (experiment_id,))
            totals = {
                (row[0], row[1]): (int(row[2]), float(row[3]), float(row[4]))
                for row in cur.fetchall()
            }
        return exposures, totals

    def load_exposures(self, experiment_id: str) -> Dict[str, str]:
        with self.db.get_cursor() as cur:
            cur.execute(self._SELECT_EXPOSURES_SQL, (experiment_id,))
            return {row[0]: row[1] for row in cur.fetchall()}

    def load_converted(self, experiment_id: str, metrics: Sequence[str]) -> Set[Tuple[str, str]]:
        if not metrics:
            return set()
        with self.db.get_cursor() as cur:
            cur.execute(self._SELECT_CONVERTED_SQL, (experiment_id, list(metrics)))
            return {(row[0], row[1]) for row in cur.fetchall()}
