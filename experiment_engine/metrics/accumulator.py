# 露出・成果のストリーミング集計
"""
MetricsAccumulator: (実験, バリアント, メトリクス) 単位のスレッドセーフなカウンター

設計方針:
- ロックは (実験, バリアント) 単位。全体ロックは実験の登録・削除時のみ取得する
- 成果イベントごとに exposures / event_count / sum / sum_squares を増分更新し、
  評価時に生イベントを再走査しない
- snapshot はバリアントごとにロックを一瞬だけ取得してコピーする（書き込み側を長く止めない）
- 未知の (実験, バリアント) への記録はログを出して破棄する（例外にしない）
"""

import logging
import math
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from experiment_engine.monitoring.metrics_collector import MetricsCollector


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Aggregate:
    """メトリクススナップショットの1セル（読み取り専用）

    Attributes:
        exposures: バリアントの露出数
        event_count: 成果イベント数
        sum: 成果値の合計
        sum_squares: 成果値の二乗和（分散計算用）
    """
    exposures: int = 0
    event_count: int = 0
    sum: float = 0.0
    sum_squares: float = 0.0

    @property
    def conversion_rate(self) -> Optional[float]:
        """event_count / exposures（露出0なら None）"""
        if self.exposures <= 0:
            return None
        return self.event_count / self.exposures

    @property
    def mean(self) -> Optional[float]:
        """成果値の平均（イベント0なら None）"""
        if self.event_count <= 0:
            return None
        return self.sum / self.event_count

    @property
    def variance(self) -> Optional[float]:
        """成果値の不偏分散（イベント2件未満なら None）"""
        n = self.event_count
        if n < 2:
            return None
        value = (self.sum_squares - self.sum * self.sum / n) / (n - 1)
        # 桁落ちで微小な負値になる場合がある
        return max(value, 0.0)

    def to_dict(self) -> Dict[str, float]:
        return {
            "exposures": self.exposures,
            "event_count": self.event_count,
            "sum": self.sum,
            "sum_squares": self.sum_squares,
        }


class _VariantCounters:
    """1バリアント分のカウンター（自前のロックを持つ）"""

    __slots__ = ("lock", "exposures", "metrics")

    def __init__(self, metric_names: Iterable[str]):
        self.lock = Lock()
        self.exposures = 0
        # metric -> [event_count, sum, sum_squares]
        self.metrics: Dict[str, List[float]] = {m: [0, 0.0, 0.0] for m in metric_names}


Snapshot = Dict[str, Dict[str, Aggregate]]


class MetricsAccumulator:
    """実験ごとの露出・成果カウンター

    使用例:
        accumulator = MetricsAccumulator()
        accumulator.register_experiment("exp1", ["A", "B"], ["click"])
        accumulator.record_exposure("exp1", "A")
        accumulator.record_outcome("exp1", "A", "click", 1.0)
        snapshot = accumulator.snapshot("exp1")
        snapshot["A"]["click"].conversion_rate  # 1.0

    Attributes:
        collector: 監視メトリクスの記録先（任意）
    """

    def __init__(self, collector: Optional[MetricsCollector] = None):
        self.collector = collector
        # experiment_id -> variant_id -> counters
        self._experiments: Dict[str, Dict[str, _VariantCounters]] = {}
        self._registry_lock = Lock()

    def register_experiment(
        self,
        experiment_id: str,
        variant_ids: Iterable[str],
        metric_names: Iterable[str],
    ) -> None:
        """実験のカウンターを用意する（登録済みなら何もしない）

        一時停止からの再開でカウンターをリセットしないため、既存の登録は保持する。
        """
        metric_names = list(metric_names)
        with self._registry_lock:
            if experiment_id in self._experiments:
                return
            self._experiments[experiment_id] = {
                variant_id: _VariantCounters(metric_names) for variant_id in variant_ids
            }
        logger.debug(
            f"カウンター登録: experiment_id={experiment_id}, metrics={metric_names}"
        )

    def remove_experiment(self, experiment_id: str) -> bool:
        """実験のカウンターを解放

        Returns:
            削除した場合 True
        """
        with self._registry_lock:
            removed = self._experiments.pop(experiment_id, None)
        return removed is not None

    def is_registered(self, experiment_id: str) -> bool:
        return experiment_id in self._experiments

    def _counters(self, experiment_id: str, variant_id: str) -> Optional[_VariantCounters]:
        # dict の読み取りはアトミックなので登録ロックは取らない
        variants = self._experiments.get(experiment_id)
        if variants is None:
            return None
        return variants.get(variant_id)

    def record_exposure(self, experiment_id: str, variant_id: str) -> bool:
        """露出を1件記録

        Returns:
            記録した場合 True。未知の (実験, バリアント) は False
        """
        counters = self._counters(experiment_id, variant_id)
        if counters is None:
            logger.warning(
                f"未知のバリアントへの露出を破棄: experiment_id={experiment_id}, "
                f"variant_id={variant_id}"
            )
            return False
        with counters.lock:
            counters.exposures += 1
        return True

    def record_outcome(
        self,
        experiment_id: str,
        variant_id: str,
        metric: str,
        value: float,
    ) -> bool:
        """成果イベントを1件記録

        event_count を1増やし、sum に value、sum_squares に value² を加える。

        Returns:
            記録した場合 True。未知の (実験, バリアント) や有限でない値は False
        """
        counters = self._counters(experiment_id, variant_id)
        if counters is None:
            logger.warning(
                f"未知のバリアントへの成果イベントを破棄: experiment_id={experiment_id}, "
                f"variant_id={variant_id}, metric={metric}"
            )
            if self.collector:
                self.collector.record_outcome(experiment_id, "unknown_variant")
            return False

        try:
            value = float(value)
        except (TypeError, ValueError):
            value = math.nan
        if not math.isfinite(value):
            logger.warning(
                f"有限でない成果値を破棄: experiment_id={experiment_id}, "
                f"variant_id={variant_id}, metric={metric}"
            )
            if self.collector:
                self.collector.record_outcome(experiment_id, "rejected")
            return False

        with counters.lock:
            cell = counters.metrics.get(metric)
            if cell is None:
                # 定義外のメトリクスも集計する（ガードレールの後付け計測など）
                cell = counters.metrics.setdefault(metric, [0, 0.0, 0.0])
            cell[0] += 1
            cell[1] += value
            cell[2] += value * value
        return True

    def snapshot(self, experiment_id: str) -> Snapshot:
        """ある時点のコピーを返す

        Returns:
            variant_id -> metric -> Aggregate。未登録の実験は空の辞書
        """
        variants = self._experiments.get(experiment_id)
        if variants is None:
            return {}

        result: Snapshot = {}
        for variant_id, counters in list(variants.items()):
            with counters.lock:
                exposures = counters.exposures
                cells = [(m, tuple(c)) for m, c in counters.metrics.items()]
            result[variant_id] = {
                metric: Aggregate(
                    exposures=exposures,
                    event_count=int(cell[0]),
                    sum=cell[1],
                    sum_squares=cell[2],
                )
                for metric, cell in cells
            }
        return result

    def exposures(self, experiment_id: str) -> Dict[str, int]:
        """バリアントごとの露出数"""
        variants = self._experiments.get(experiment_id) or {}
        result: Dict[str, int] = {}
        for variant_id, counters in list(variants.items()):
            with counters.lock:
                result[variant_id] = counters.exposures
        return result

    def restore(
        self,
        experiment_id: str,
        exposures: Mapping[str, int],
        outcomes: Mapping[Tuple[str, str], Tuple[int, float, float]],
    ) -> None:
        """永続化された集計値でカウンターを上書き（プロセス再起動時の復元用）

        Args:
            experiment_id: 登録済みの実験ID
            exposures: variant_id -> 露出数
            outcomes: (variant_id, metric) -> (event_count, sum, sum_squares)

        Raises:
            KeyError: 実験が登録されていない場合
        """
        variants = self._experiments.get(experiment_id)
        if variants is None:
            raise KeyError(f"Experiment {experiment_id} is not registered")

        for variant_id, counters in variants.items():
            with counters.lock:
                counters.exposures = int(exposures.get(variant_id, 0))
                for metric in list(counters.metrics):
                    counters.metrics[metric] = [0, 0.0, 0.0]
                for (vid, metric), (count, total, squares) in outcomes.items():
                    if vid == variant_id:
                        counters.metrics[metric] = [int(count), float(total), float(squares)]

        logger.info(
            f"カウンター復元: experiment_id={experiment_id}, "
            f"exposures={sum(int(v) for v in exposures.values())}"
        )
