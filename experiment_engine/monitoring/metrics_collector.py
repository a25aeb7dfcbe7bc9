# experiment_engine/monitoring/metrics_collector.py
"""監視メトリクス収集モジュール

実験エンジン自身の稼働状況を記録する観測用シンク。
prometheus_client 互換のインターフェースを持つインメモリ実装で、
Prometheus テキストフォーマットでエクスポートできる。

収集するメトリクス:
- 割り当て: assignments_total{experiment_id, outcome}
- 成果取り込み: outcomes_total{experiment_id, result}（破棄された成果イベントもここに残る）
- ライフサイクル遷移: transitions_total{event, result}
- イベントシンク: sink_events_total{result}, sink_queue_depth
- 実行中の実験数: running_experiments
- 評価レイテンシ: evaluation_latency_seconds
"""

from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple


class MetricType(Enum):
    """メトリクスの種類"""
    COUNTER = "counter"      # 単調増加（例: 割り当て数）
    GAUGE = "gauge"          # 上下する値（例: キュー長）
    HISTOGRAM = "histogram"  # 分布（例: 評価レイテンシ）


LabelKey = Tuple[str, ...]


class _LabeledMetric:
    """ラベル付きメトリクスの共通処理（ラベルキー生成とロック）"""

    metric_type: MetricType = MetricType.COUNTER

    def __init__(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
    ):
        self.name = name
        self.description = description
        self.labels = labels or []
        self._lock = Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelKey:
        """ラベル値からキーを生成"""
        if not self.labels:
            return ()
        labels = labels or {}
        return tuple(str(labels.get(label, "")) for label in self.labels)

    def _labels_of(self, key: LabelKey) -> Dict[str, str]:
        return dict(zip(self.labels, key)) if self.labels else {}


class Counter(_LabeledMetric):
    """カウンターメトリクス（単調増加）

    使用例:
        counter = Counter("assignments_total", "Assignments", ["experiment_id", "outcome"])
        counter.inc({"experiment_id": "exp1", "outcome": "assigned"})
    """

    metric_type = MetricType.COUNTER

    def __init__(self, name: str, description: str, labels: Optional[List[str]] = None):
        super().__init__(name, description, labels)
        self._values: Dict[LabelKey, float] = {}

    def inc(self, labels: Optional[Dict[str, str]] = None, value: float = 1.0) -> None:
        """カウンターをインクリメント

        Raises:
            ValueError: 負の値が指定された場合
        """
        if value < 0:
            raise ValueError("Counter can only be incremented (value must be >= 0)")
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + value

    def get(self, labels: Optional[Dict[str, str]] = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def collect(self) -> List[Tuple[Dict[str, str], float]]:
        with self._lock:
            return [(self._labels_of(k), v) for k, v in self._values.items()]


class Gauge(_LabeledMetric):
    """ゲージメトリクス（上下する値）"""

    metric_type = MetricType.GAUGE

    def __init__(self, name: str, description: str, labels: Optional[List[str]] = None):
        super().__init__(name, description, labels)
        self._values: Dict[LabelKey, float] = {}

    def set(self, labels: Optional[Dict[str, str]] = None, value: float = 0.0) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = value

    def inc(self, labels: Optional[Dict[str, str]] = None, value: float = 1.0) -> None:
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + value

    def dec(self, labels: Optional[Dict[str, str]] = None, value: float = 1.0) -> None:
        self.inc(labels, -value)

    def get(self, labels: Optional[Dict[str, str]] = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._values.get(key, 0.0)

    def collect(self) -> List[Tuple[Dict[str, str], float]]:
        with self._lock:
            return [(self._labels_of(k), v) for k, v in self._values.items()]


class Histogram(_LabeledMetric):
    """ヒストグラムメトリクス（分布）"""

    metric_type = MetricType.HISTOGRAM

    # 評価レイテンシ向けのバケット境界（秒）
    DEFAULT_BUCKETS = (0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0)

    def __init__(
        self,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
        buckets: Optional[Tuple[float, ...]] = None,
    ):
        super().__init__(name, description, labels)
        self.buckets = tuple(sorted(buckets)) if buckets else self.DEFAULT_BUCKETS
        # label_key -> [bucket counts..., sum, count]
        self._data: Dict[LabelKey, List[float]] = {}

    def observe(self, labels: Optional[Dict[str, str]] = None, value: float = 0.0) -> None:
        key = self._key(labels)
        with self._lock:
            data = self._data.get(key)
            if data is None:
                data = [0.0] * (len(self.buckets) + 2)
                self._data[key] = data
            for i, bound in enumerate(self.buckets):
                if value <= bound:
                    data[i] += 1
            data[-2] += value
            data[-1] += 1

    def get_count(self, labels: Optional[Dict[str, str]] = None) -> int:
        key = self._key(labels)
        with self._lock:
            data = self._data.get(key)
            return int(data[-1]) if data else 0

    def get_sum(self, labels: Optional[Dict[str, str]] = None) -> float:
        key = self._key(labels)
        with self._lock:
            data = self._data.get(key)
            return data[-2] if data else 0.0

    def collect(self) -> List[Tuple[Dict[str, str], Dict[str, float]]]:
        """Returns: (labels, {"bucket_X": count, ..., "sum": sum, "count": count}) のリスト"""
        with self._lock:
            results = []
            for key, data in self._data.items():
                values = {f"bucket_{b}": data[i] for i, b in enumerate(self.buckets)}
                values["sum"] = data[-2]
                values["count"] = data[-1]
                results.append((self._labels_of(key), values))
            return results


class MetricsCollector:
    """実験エンジンのメトリクス収集・管理クラス

    コントローラー・アキュムレーター・イベントシンクに注入して使う。
    モジュールレベルのシングルトンは持たない。

    使用例:
        collector = MetricsCollector()
        collector.record_assignment("exp1", "assigned")
        text = collector.export_prometheus_format()
    """

    def __init__(self, prefix: str = "experiment_engine"):
        self.prefix = prefix
        self._metrics: Dict[str, _LabeledMetric] = {}
        self._lock = Lock()
        self._init_predefined_metrics()

    def _init_predefined_metrics(self) -> None:
        """実験エンジンのメトリクスを初期化"""
        # outcome: assigned / cached / fallback / not_in_traffic
        self.register(Counter, "assignments_total", "Total assignment requests", ["experiment_id", "outcome"])
        # result: recorded / duplicate / unknown_subject / unknown_variant / rejected
        self.register(Counter, "outcomes_total", "Total outcome events received", ["experiment_id", "result"])
        self.register(Counter, "transitions_total", "Lifecycle transition attempts", ["event", "result"])
        # result: written / dropped / failed
        self.register(Counter, "sink_events_total", "Events handled by the persistence sink", ["result"])
        self.register(Gauge, "running_experiments", "Number of running experiments")
        self.register(Gauge, "sink_queue_depth", "Events waiting in the persistence sink")
        self.register(Histogram, "evaluation_latency_seconds", "Evaluation latency in seconds", ["experiment_id"])

    def register(
        self,
        metric_cls: type,
        name: str,
        description: str,
        labels: Optional[List[str]] = None,
        **kwargs: Any,
    ) -> _LabeledMetric:
        """メトリクスを登録"""
        metric = metric_cls(f"{self.prefix}_{name}", description, labels, **kwargs)
        with self._lock:
            self._metrics[name] = metric
        return metric

    def get(self, name: str) -> Optional[_LabeledMetric]:
        with self._lock:
            return self._metrics.get(name)

    # === 便利メソッド ===

    def record_assignment(self, experiment_id: str, outcome: str) -> None:
        self._metrics["assignments_total"].inc({"experiment_id": experiment_id, "outcome": outcome})

    def record_outcome(self, experiment_id: str, result: str) -> None:
        self._metrics["outcomes_total"].inc({"experiment_id": experiment_id, "result": result})

    def record_transition(self, event: str, ok: bool) -> None:
        self._metrics["transitions_total"].inc({"event": event, "result": "ok" if ok else "rejected"})

    def record_sink_events(self, result: str, count: int = 1) -> None:
        if count > 0:
            self._metrics["sink_events_total"].inc({"result": result}, float(count))

    def set_running_experiments(self, count: int) -> None:
        self._metrics["running_experiments"].set(value=float(count))

    def set_sink_queue_depth(self, depth: int) -> None:
        self._metrics["sink_queue_depth"].set(value=float(depth))

    def record_evaluation_latency(self, experiment_id: str, seconds: float) -> None:
        self._metrics["evaluation_latency_seconds"].observe({"experiment_id": experiment_id}, seconds)

    # === エクスポート ===

    def export_prometheus_format(self) -> str:
        """Prometheusテキストフォーマットでエクスポート"""
        lines: List[str] = []
        with self._lock:
            metrics = list(self._metrics.values())

        for metric in metrics:
            lines.append(f"# HELP {metric.name} {metric.description}")
            lines.append(f"# TYPE {metric.name} {metric.metric_type.value}")

            if isinstance(metric, Histogram):
                for labels, data in metric.collect():
                    for bound in metric.buckets:
                        label_str = self._format_labels({**labels, "le": str(bound)})
                        lines.append(f"{metric.name}_bucket{label_str} {data[f'bucket_{bound}']}")
                    inf_label_str = self._format_labels({**labels, "le": "+Inf"})
                    lines.append(f"{metric.name}_bucket{inf_label_str} {data['count']}")
                    base = self._format_labels(labels)
                    lines.append(f"{metric.name}_sum{base} {data['sum']}")
                    lines.append(f"{metric.name}_count{base} {data['count']}")
            else:
                for labels, value in metric.collect():
                    lines.append(f"{metric.name}{self._format_labels(labels)} {value}")
            lines.append("")

        return "\n".join(lines)

    def _format_labels(self, labels: Dict[str, str]) -> str:
        """ラベルをPrometheusフォーマットに変換"""
        if not labels:
            return ""
        parts = []
        for key, value in sorted(labels.items()):
            escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
            parts.append(f'{key}="{escaped}"')
        return "{" + ",".join(parts) + "}"

    def export_dict(self) -> Dict[str, Any]:
        """辞書形式でエクスポート（CLI・デバッグ用）"""
        with self._lock:
            metrics = dict(self._metrics)
        return {
            "metrics": {
                name: {
                    "type": metric.metric_type.value,
                    "description": metric.description,
                    "values": [
                        {"labels": labels, "value": value}
                        for labels, value in metric.collect()
                    ],
                }
                for name, metric in metrics.items()
            },
            "exported_at": datetime.now().isoformat(),
        }
