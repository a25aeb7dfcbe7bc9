# 実験定義リポジトリ
"""
実験定義の永続化インターフェースと実装

- ExperimentRepository: save / load / list_by_state / delete の抽象インターフェース
- InMemoryExperimentRepository: プロセス内の辞書（既定・テスト用）
- PostgresExperimentRepository: experiments テーブル（psycopg2、JSONB は Json アダプタ）
"""

import logging
from abc import ABC, abstractmethod
from threading import Lock
from typing import Dict, Iterable, List, Optional

from psycopg2.extras import Json

from experiment_engine.db.connection import DatabaseConnection
from experiment_engine.models.experiment import Experiment, ExperimentStatus


logger = logging.getLogger(__name__)


def _newest_first(experiments: Iterable[Experiment]) -> List[Experiment]:
    return sorted(
        experiments,
        key=lambda e: (e.created_at is not None, e.created_at or 0, e.experiment_id),
        reverse=True,
    )


class ExperimentRepository(ABC):
    """実験定義の保存先"""

    @abstractmethod
    def save(self, experiment: Experiment) -> None:
        """実験を保存（同じIDがあれば上書き）"""

    @abstractmethod
    def load(self, experiment_id: str) -> Optional[Experiment]:
        """実験を取得（存在しなければ None）"""

    @abstractmethod
    def list_by_state(
        self,
        statuses: Optional[Iterable[ExperimentStatus]] = None,
    ) -> List[Experiment]:
        """状態で絞り込んだ実験を新しい順で返す（None なら全件）"""

    @abstractmethod
    def delete(self, experiment_id: str) -> bool:
        """実験を削除

        Returns:
            削除した場合 True
        """


class InMemoryExperimentRepository(ExperimentRepository):
    """辞書による実装

    Experiment は不変なので参照をそのまま保持する。
    """

    def __init__(self):
        self._items: Dict[str, Experiment] = {}
        self._lock = Lock()

    def save(self, experiment: Experiment) -> None:
        with self._lock:
            self._items[experiment.experiment_id] = experiment

    def load(self, experiment_id: str) -> Optional[Experiment]:
        with self._lock:
            return self._items.get(experiment_id)

    def list_by_state(
        self,
        statuses: Optional[Iterable[ExperimentStatus]] = None,
    ) -> List[Experiment]:
        wanted = {ExperimentStatus(s) for s in statuses} if statuses is not None else None
        with self._lock:
            items = list(self._items.values())
        if wanted is not None:
            items = [e for e in items if e.status in wanted]
        return _newest_first(items)

    def delete(self, experiment_id: str) -> bool:
        with self._lock:
            return self._items.pop(experiment_id, None) is not None


class PostgresExperimentRepository(ExperimentRepository):
    """experiments テーブルによる実装

    使用例:
        db = DatabaseConnection()
        repository = PostgresExperimentRepository(db)
        repository.save(experiment)
        running = repository.list_by_state([ExperimentStatus.RUNNING])

    Attributes:
        db: DatabaseConnection インスタンス
    """

    # SQL定義（可読性のために定数として定義）
    _COLUMNS = """
        experiment_id, name, description, status, variants,
        target_metric, guardrail_metrics, metric_kinds, traffic_allocation, owner,
        algorithm, planned_duration_days, configuration, created_at, started_at,
        ended_at, winner_variant_id, is_significant, confidence_level, results
    """

    _UPSERT_SQL = """
        INSERT INTO experiments (
            {columns}
        ) VALUES (
            %s, %s, %s, %s, %s,
            %s, %s, %s, %s, %s,
            %s, %s, %s, %s, %s,
            %s, %s, %s, %s, %s
        )
        ON CONFLICT (experiment_id) DO UPDATE SET
            name = EXCLUDED.name,
            description = EXCLUDED.description,
            status = EXCLUDED.status,
            variants = EXCLUDED.variants,
            target_metric = EXCLUDED.target_metric,
            guardrail_metrics = EXCLUDED.guardrail_metrics,
            metric_kinds = EXCLUDED.metric_kinds,
            traffic_allocation = EXCLUDED.traffic_allocation,
            owner = EXCLUDED.owner,
            algorithm = EXCLUDED.algorithm,
            planned_duration_days = EXCLUDED.planned_duration_days,
            configuration = EXCLUDED.configuration,
            started_at = EXCLUDED.started_at,
            ended_at = EXCLUDED.ended_at,
            winner_variant_id = EXCLUDED.winner_variant_id,
            is_significant = EXCLUDED.is_significant,
            confidence_level = EXCLUDED.confidence_level,
            results = EXCLUDED.results
    """.format(columns=_COLUMNS)

    _SELECT_BY_ID_SQL = """
        SELECT {columns}
        FROM experiments
        WHERE experiment_id = %s
    """.format(columns=_COLUMNS)

    _SELECT_ALL_SQL = """
        SELECT {columns}
        FROM experiments
        ORDER BY created_at DESC NULLS LAST, experiment_id DESC
    """.format(columns=_COLUMNS)

    _SELECT_BY_STATUS_SQL = """
        SELECT {columns}
        FROM experiments
        WHERE status = ANY(%s)
        ORDER BY created_at DESC NULLS LAST, experiment_id DESC
    """.format(columns=_COLUMNS)

    _DELETE_SQL = """
        DELETE FROM experiments
        WHERE experiment_id = %s
    """

    def __init__(self, db: DatabaseConnection):
        self.db = db

    def save(self, experiment: Experiment) -> None:
        data = experiment.to_dict()
        with self.db.get_cursor() as cur:
            cur.execute(
                self._UPSERT_SQL,
                (
                    experiment.experiment_id,
                    experiment.name,
                    experiment.description,
                    experiment.status.value,
                    Json(data["variants"]),
                    experiment.target_metric,
                    Json(data["guardrail_metrics"]),
                    Json(data["metric_kinds"]),
                    experiment.traffic_allocation,
                    experiment.owner,
                    experiment.algorithm,
                    experiment.planned_duration_days,
                    Json(experiment.configuration),
                    experiment.created_at,
                    experiment.started_at,
                    experiment.ended_at,
                    experiment.winner_variant_id,
                    experiment.is_significant,
                    experiment.confidence_level,
                    Json(experiment.results) if experiment.results is not None else None,
                ),
            )
        logger.debug(
            f"実験保存: experiment_id={experiment.experiment_id}, status={experiment.status.value}"
        )

    def load(self, experiment_id: str) -> Optional[Experiment]:
        with self.db.get_cursor() as cur:
            cur.execute(self._SELECT_BY_ID_SQL, (experiment_id,))
            row = cur.fetchone()
        if row is None:
            return None
        return self._row_to_experiment(row)

    def list_by_state(
        self,
        statuses: Optional[Iterable[ExperimentStatus]] = None,
    ) -> List[Experiment]:
        with self.db.get_cursor() as cur:
            if statuses is None:
                cur.execute(self._SELECT_ALL_SQL)
            else:
                values = [ExperimentStatus(s).value for s in statuses]
                cur.execute(self._SELECT_BY_STATUS_SQL, (values,))
            rows = cur.fetchall()
        return [self._row_to_experiment(row) for row in rows]

    def delete(self, experiment_id: str) -> bool:
        with self.db.get_cursor() as cur:
            cur.execute(self._DELETE_SQL, (experiment_id,))
            return cur.rowcount > 0

    def _row_to_experiment(self, row: tuple) -> Experiment:
        """DBの行を Experiment に変換（カラム順序は _COLUMNS に準拠）"""
        return Experiment.from_dict({
            "experiment_id": row[0],
            "name": row[1],
            "description": row[2],
            "status": row[3],
            "variants": row[4] or [],
            "target_metric": row[5],
            "guardrail_metrics": row[6] or [],
            "metric_kinds": row[7] or {},
            "traffic_allocation": float(row[8]) if row[8] is not None else 100.0,
            "owner": row[9],
            "algorithm": row[10],
            "planned_duration_days": row[11],
            "configuration": row[12] or {},
            "created_at": row[13],
            "started_at": row[14],
            "ended_at": row[15],
            "winner_variant_id": row[16],
            "is_significant": row[17],
            "confidence_level": row[18],
            "results": row[19],
        })
