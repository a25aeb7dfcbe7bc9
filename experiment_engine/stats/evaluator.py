# 統計評価
"""
StatisticalEvaluator: メトリクススナップショットからバリアントとコントロールを比較する

検定:
- binary（クリック・コンバージョン）: 二標本比率の z 検定（プールした比率で標準誤差を計算）
    p̄ = (x1 + x2) / (n1 + n2)
    SE = sqrt(p̄(1 - p̄)(1/n1 + 1/n2))
    z = (p_t - p_c) / SE、p値は標準正規分布の両側
  信頼区間は差 p_t - p_c の非プール標準誤差、効果量は Cohen's h
- continuous（売上・滞在時間）: Welch の t 検定（sum / sum_squares / event_count から平均と分散を導出）
  信頼区間は Welch-Satterthwaite 自由度の t 分布、効果量は Cohen's d

判定:
- 露出数が min_sample_size 未満のバリアントは insufficient_data（有意判定しない）
- p値 < α かつサンプル数充足のときのみ有意
- 勝者: 有意に改善したトリートメントのうち差が最大のもの。
  比較したすべてのトリートメントが有意に悪化した場合はコントロール。それ以外は勝者なし
- 期限を超えた時点で未評価のバリアントは timed_out とし、部分結果を返す

副作用なし（スナップショットの読み取りと計算のみ）。
"""

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from scipy import stats

from experiment_engine.config.engine_config import EngineConfig
from experiment_engine.errors import ValidationError
from experiment_engine.metrics.accumulator import Aggregate, Snapshot
from experiment_engine.models.experiment import Experiment, MetricKind
from experiment_engine.monitoring.metrics_collector import MetricsCollector


logger = logging.getLogger(__name__)


class EvaluationStatus(str, Enum):
    """評価全体の判定"""
    SIGNIFICANT = "significant"
    NO_SIGNIFICANT_DIFFERENCE = "no_significant_difference"
    INSUFFICIENT_DATA = "insufficient_data"
    TIMED_OUT = "timed_out"


class ResultStatus(str, Enum):
    """バリアントごとの評価状態"""
    OK = "ok"
    INSUFFICIENT_DATA = "insufficient_data"
    TIMED_OUT = "timed_out"


@dataclass
class VariantResult:
    """バリアント1件の評価結果

    コントロール自身の結果は比較系のフィールド（p_value 等）が None。
    """
    variant_id: str
    is_control: bool
    status: ResultStatus
    sample_size: int
    event_count: int
    conversion_rate: Optional[float]
    mean: Optional[float]
    variance: Optional[float]
    test: Optional[str] = None
    p_value: Optional[float] = None
    confidence_interval: Optional[Tuple[float, float]] = None
    lift_percent: Optional[float] = None
    effect_size: Optional[float] = None
    confidence_level: Optional[float] = None
    is_significant: bool = False

    @property
    def insufficient_data(self) -> bool:
        return self.status == ResultStatus.INSUFFICIENT_DATA

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant_id": self.variant_id,
            "is_control": self.is_control,
            "status": self.status.value,
            "sample_size": self.sample_size,
            "event_count": self.event_count,
            "conversion_rate": self.conversion_rate,
            "mean": self.mean,
            "variance": self.variance,
            "test": self.test,
            "p_value": self.p_value,
            "confidence_interval": (
                list(self.confidence_interval) if self.confidence_interval else None
            ),
            "lift_percent": self.lift_percent,
            "effect_size": self.effect_size,
            "confidence_level": self.confidence_level,
            "is_significant": self.is_significant,
        }


@dataclass
class EvaluationReport:
    """評価レポート

    Attributes:
        status: 全体の判定（insufficient_data は失敗ではなく結果の一種）
        results: バリアント定義順の結果（コントロールを含む）
        winner_variant_id: 勝者（なければ None）
        confidence_level: 勝者の比較の 1 - p（勝者なしなら比較中の最大値）
        recommendations: 次のアクションの提案
        total_participants: 全バリアントの露出数合計
        overall_conversion_rate: 全体の event_count / 露出数
    """
    experiment_id: str
    metric: str
    metric_kind: MetricKind
    control_variant_id: str
    status: EvaluationStatus
    results: List[VariantResult]
    winner_variant_id: Optional[str] = None
    is_significant: bool = False
    confidence_level: float = 0.0
    interval_level: float = 0.95
    recommendations: List[str] = field(default_factory=list)
    total_participants: int = 0
    overall_conversion_rate: Optional[float] = None
    timed_out: bool = False
    evaluated_at: Optional[datetime] = None

    def result_for(self, variant_id: str) -> VariantResult:
        for result in self.results:
            if result.variant_id == variant_id:
                return result
        raise KeyError(variant_id)

    @property
    def insufficient_data(self) -> bool:
        return self.status == EvaluationStatus.INSUFFICIENT_DATA

    def summary(self) -> Dict[str, Any]:
        """完了時に実験へ保存する要約"""
        return {
            "metric": self.metric,
            "status": self.status.value,
            "winner_variant_id": self.winner_variant_id,
            "is_significant": self.is_significant,
            "confidence_level": self.confidence_level,
            "total_participants": self.total_participants,
            "overall_conversion_rate": self.overall_conversion_rate,
            "variants": {
                r.variant_id: {
                    "sample_size": r.sample_size,
                    "event_count": r.event_count,
                    "conversion_rate": r.conversion_rate,
                    "mean": r.mean,
                    "p_value": r.p_value,
                    "lift_percent": r.lift_percent,
                    "status": r.status.value,
                }
                for r in self.results
            },
            "recommendations": list(self.recommendations),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment_id": self.experiment_id,
            "metric": self.metric,
            "metric_kind": self.metric_kind.value,
            "control_variant_id": self.control_variant_id,
            "status": self.status.value,
            "results": [r.to_dict() for r in self.results],
            "winner_variant_id": self.winner_variant_id,
            "is_significant": self.is_significant,
            "confidence_level": self.confidence_level,
            "interval_level": self.interval_level,
            "recommendations": list(self.recommendations),
            "total_participants": self.total_participants,
            "overall_conversion_rate": self.overall_conversion_rate,
            "timed_out": self.timed_out,
            "evaluated_at": self.evaluated_at.isoformat() if self.evaluated_at else None,
        }


@dataclass
class _Comparison:
    test: str
    p_value: float
    difference: float
    confidence_interval: Tuple[float, float]
    lift_percent: Optional[float]
    effect_size: Optional[float]


class StatisticalEvaluator:
    """スナップショットに対する統計評価

    使用例:
        evaluator = StatisticalEvaluator(EngineConfig())
        report = evaluator.evaluate(experiment, accumulator.snapshot("exp1"))
        if report.winner_variant_id:
            print(report.recommendations[0])

    Attributes:
        config: 最小サンプル数・有意水準・信頼水準・タイムアウト
        collector: 評価レイテンシの記録先（任意）
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        collector: Optional[MetricsCollector] = None,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.config = config or EngineConfig()
        self.collector = collector
        self._monotonic = monotonic

    def evaluate(
        self,
        experiment: Experiment,
        snapshot: Snapshot,
        control_variant_id: Optional[str] = None,
        metric: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        evaluated_at: Optional[datetime] = None,
    ) -> EvaluationReport:
        """各バリアントをコントロールと比較

        Args:
            experiment: 実験定義
            snapshot: MetricsAccumulator.snapshot() の結果
            control_variant_id: 比較基準。None なら実験のコントロール
            metric: 評価するメトリクス。None なら target_metric
            timeout_seconds: 期限（秒）。None なら設定値
            evaluated_at: レポートに記録する時刻

        Returns:
            EvaluationReport

        Raises:
            ValidationError: コントロールやメトリクスが実験に存在しない場合
        """
        started = self._monotonic()
        timeout = self.config.evaluation_timeout_seconds if timeout_seconds is None else timeout_seconds
        deadline = started + timeout

        control_id = control_variant_id or experiment.control_variant.variant_id
        if experiment.get_variant(control_id) is None:
            raise ValidationError(
                f"Unknown control variant '{control_id}'. "
                f"Valid variants: {experiment.variant_ids}"
            )

        metric = metric or experiment.target_metric
        known_metrics = set(experiment.metric_names)
        for cells in snapshot.values():
            known_metrics.update(cells)
        if metric not in known_metrics:
            raise ValidationError(
                f"Unknown metric '{metric}'. Valid metrics: {experiment.metric_names}"
            )
        kind = experiment.metric_kind(metric)

        aggregates = {
            vid: self._aggregate(snapshot, vid, metric) for vid in experiment.variant_ids
        }
        min_samples = self.config.min_sample_size

        control_agg = aggregates[control_id]
        control_ok = self._has_enough_data(control_agg, kind, min_samples)

        results: List[VariantResult] = []
        comparisons: Dict[str, _Comparison] = {}
        timed_out = False

        for variant_id in experiment.variant_ids:
            agg = aggregates[variant_id]
            is_control = variant_id == control_id
            status = ResultStatus.OK
            if not self._has_enough_data(agg, kind, min_samples):
                status = ResultStatus.INSUFFICIENT_DATA
            elif not is_control and not control_ok:
                # 基準が不十分なら比較しない
                status = ResultStatus.INSUFFICIENT_DATA

            result = self._describe(variant_id, is_control, status, agg, kind)

            if not is_control and status == ResultStatus.OK:
                if timed_out or self._monotonic() > deadline:
                    timed_out = True
                    result.status = ResultStatus.TIMED_OUT
                else:
                    comparison = self._compare(control_agg, agg, kind)
                    comparisons[variant_id] = comparison
                    self._apply(result, comparison)

            results.append(result)

        if timed_out:
            logger.warning(
                f"評価が期限を超過: experiment_id={experiment.experiment_id}, "
                f"timeout={timeout}s"
            )

        winner_id = self._pick_winner(control_id, results, comparisons)
        report = self._build_report(
            experiment, metric, kind, control_id, results, comparisons, winner_id, timed_out
        )
        report.evaluated_at = evaluated_at
        report.recommendations = self._generate_recommendations(report, min_samples)

        elapsed = self._monotonic() - started
        if self.collector:
            self.collector.record_evaluation_latency(experiment.experiment_id, elapsed)
        logger.debug(
            f"評価完了: experiment_id={experiment.experiment_id}, metric={metric}, "
            f"status={report.status.value}, winner={winner_id}"
        )
        return report

    # ===== Private Methods =====

    def _aggregate(self, snapshot: Snapshot, variant_id: str, metric: str) -> Aggregate:
        cells = snapshot.get(variant_id) or {}
        if metric in cells:
            return cells[metric]
        # 成果がまだないメトリクスは露出数だけ引き継ぐ
        exposures = next((c.exposures for c in cells.values()), 0)
        return Aggregate(exposures=exposures)

    def _has_enough_data(self, agg: Aggregate, kind: MetricKind, min_samples: int) -> bool:
        if agg.exposures <= 0 or agg.exposures < min_samples:
            return False
        if kind == MetricKind.CONTINUOUS and agg.event_count < 2:
            return False
        return True

    def _describe(
        self,
        variant_id: str,
        is_control: bool,
        status: ResultStatus,
        agg: Aggregate,
        kind: MetricKind,
    ) -> VariantResult:
        rate = agg.conversion_rate
        if rate is not None and kind == MetricKind.BINARY:
            # 二値は被験者ごとに1回まで
            rate = min(rate, 1.0)
        return VariantResult(
            variant_id=variant_id,
            is_control=is_control,
            status=status,
            sample_size=agg.exposures,
            event_count=agg.event_count,
            conversion_rate=rate,
            mean=agg.mean,
            variance=agg.variance,
        )

    def _apply(self, result: VariantResult, comparison: _Comparison) -> None:
        result.test = comparison.test
        result.p_value = comparison.p_value
        result.confidence_interval = comparison.confidence_interval
        result.lift_percent = comparison.lift_percent
        result.effect_size = comparison.effect_size
        result.confidence_level = 1.0 - comparison.p_value
        result.is_significant = comparison.p_value < self.config.significance_level

    def _critical_z(self) -> float:
        return float(stats.norm.ppf(1.0 - (1.0 - self.config.confidence_level) / 2.0))

    def _compare(self, control: Aggregate, treatment: Aggregate, kind: MetricKind) -> _Comparison:
        if kind == MetricKind.CONTINUOUS:
            return self._welch_test(control, treatment)
        return self._proportion_test(control, treatment)

    def _proportion_test(self, control: Aggregate, treatment: Aggregate) -> _Comparison:
        """二標本比率の z 検定"""
        n1, n2 = control.exposures, treatment.exposures
        # 二値メトリクスは被験者ごとに1回までなので event_count <= exposures
        x1, x2 = min(control.event_count, n1), min(treatment.event_count, n2)
        p1, p2 = x1 / n1, x2 / n2
        difference = p2 - p1

        pooled = (x1 + x2) / (n1 + n2)
        se = math.sqrt(pooled * (1.0 - pooled) * (1.0 / n1 + 1.0 / n2))
        if se == 0.0:
            # 両群とも 0% または 100%
            p_value = 1.0
        else:
            z = difference / se
            p_value = float(2.0 * stats.norm.sf(abs(z)))

        se_diff = math.sqrt(p1 * (1.0 - p1) / n1 + p2 * (1.0 - p2) / n2)
        margin = self._critical_z() * se_diff
        effect_size = 2.0 * math.asin(math.sqrt(p2)) - 2.0 * math.asin(math.sqrt(p1))

        return _Comparison(
            test="two_proportion_z",
            p_value=p_value,
            difference=difference,
            confidence_interval=(difference - margin, difference + margin),
            lift_percent=(difference / p1 * 100.0) if p1 > 0 else None,
            effect_size=effect_size,
        )

    def _welch_test(self, control: Aggregate, treatment: Aggregate) -> _Comparison:
        """Welch の t 検定（要約統計量から計算）"""
        n1, n2 = control.event_count, treatment.event_count
        m1, m2 = control.mean, treatment.mean
        v1, v2 = control.variance, treatment.variance
        difference = m2 - m1
        se = math.sqrt(v1 / n1 + v2 / n2)

        if se == 0.0:
            # 両群とも分散0: 平均が違えば確定的な差
            p_value = 1.0 if difference == 0 else 0.0
            interval = (difference, difference)
        else:
            _, p_value = stats.ttest_ind_from_stats(
                m2, math.sqrt(v2), n2,
                m1, math.sqrt(v1), n1,
                equal_var=False,
            )
            p_value = float(p_value)
            df = (v1 / n1 + v2 / n2) ** 2 / (
                (v1 / n1) ** 2 / (n1 - 1) + (v2 / n2) ** 2 / (n2 - 1)
            )
            critical = float(stats.t.ppf(1.0 - (1.0 - self.config.confidence_level) / 2.0, df))
            interval = (difference - critical * se, difference + critical * se)

        pooled_sd = math.sqrt(((n1 - 1) * v1 + (n2 - 1) * v2) / (n1 + n2 - 2))
        return _Comparison(
            test="welch_t",
            p_value=p_value,
            difference=difference,
            confidence_interval=interval,
            lift_percent=(difference / m1 * 100.0) if m1 != 0 else None,
            effect_size=(difference / pooled_sd) if pooled_sd > 0 else None,
        )

    def _pick_winner(
        self,
        control_id: str,
        results: List[VariantResult],
        comparisons: Dict[str, _Comparison],
    ) -> Optional[str]:
        """勝者を判定

        有意に改善したトリートメントのうち差が最大のもの。
        すべてのトリートメントが比較済みかつ有意に悪化した場合はコントロール。
        """
        improved = [
            (comparisons[r.variant_id].difference, r.variant_id)
            for r in results
            if r.is_significant and comparisons[r.variant_id].difference > 0
        ]
        if improved:
            return max(improved)[1]

        treatments = [r for r in results if not r.is_control]
        if treatments and all(
            r.status == ResultStatus.OK
            and r.is_significant
            and comparisons[r.variant_id].difference < 0
            for r in treatments
        ):
            return control_id
        return None

    def _build_report(
        self,
        experiment: Experiment,
        metric: str,
        kind: MetricKind,
        control_id: str,
        results: List[VariantResult],
        comparisons: Dict[str, _Comparison],
        winner_id: Optional[str],
        timed_out: bool,
    ) -> EvaluationReport:
        if winner_id is not None:
            status = EvaluationStatus.SIGNIFICANT
        elif timed_out:
            status = EvaluationStatus.TIMED_OUT
        elif not comparisons:
            status = EvaluationStatus.INSUFFICIENT_DATA
        else:
            status = EvaluationStatus.NO_SIGNIFICANT_DIFFERENCE

        compared = [r for r in results if r.confidence_level is not None]
        if winner_id is not None and winner_id != control_id:
            confidence = next(
                r.confidence_level for r in results if r.variant_id == winner_id
            )
        elif compared:
            confidence = max(r.confidence_level for r in compared)
        else:
            confidence = 0.0

        total = sum(r.sample_size for r in results)
        events = sum(min(r.event_count, r.sample_size) for r in results)

        return EvaluationReport(
            experiment_id=experiment.experiment_id,
            metric=metric,
            metric_kind=kind,
            control_variant_id=control_id,
            status=status,
            results=results,
            winner_variant_id=winner_id,
            is_significant=winner_id is not None,
            confidence_level=float(confidence),
            interval_level=self.config.confidence_level,
            total_participants=total,
            overall_conversion_rate=(events / total) if total > 0 else None,
            timed_out=timed_out,
        )

    def _generate_recommendations(self, report: EvaluationReport, min_samples: int) -> List[str]:
        """推奨事項を生成"""
        recommendations: List[str] = []

        if report.total_participants == 0:
            return ["No data collected yet. Continue running the experiment."]

        insufficient = [r for r in report.results if r.status == ResultStatus.INSUFFICIENT_DATA]
        if insufficient:
            needed = {
                r.variant_id: max(min_samples - r.sample_size, 0)
                for r in insufficient
            }
            recommendations.append(
                f"Insufficient samples for variants: {[r.variant_id for r in insufficient]}. "
                f"Need additional exposures: {needed}"
            )

        timed_out = [r.variant_id for r in report.results if r.status == ResultStatus.TIMED_OUT]
        if timed_out:
            recommendations.append(
                f"Evaluation timed out before comparing variants: {timed_out}. "
                f"Re-run with a longer deadline."
            )

        winner = report.winner_variant_id
        if winner is not None and winner != report.control_variant_id:
            result = report.result_for(winner)
            lift = f"{result.lift_percent:+.2f}%" if result.lift_percent is not None else "n/a"
            recommendations.append(
                f"Statistically significant result. "
                f"Recommended: Adopt '{winner}' (lift={lift}, p={result.p_value:.4f}, "
                f"n={result.sample_size})"
            )
        elif winner is not None:
            recommendations.append(
                f"All treatments performed significantly worse than control '{winner}'. "
                f"Keep the control."
            )
        elif report.status == EvaluationStatus.NO_SIGNIFICANT_DIFFERENCE:
            recommendations.append(
                "No statistically significant difference detected. "
                "Consider extending the experiment duration or accepting the control."
            )

        for result in report.results:
            if result.is_control or not result.is_significant or result.variant_id == winner:
                continue
            if result.lift_percent is not None and result.lift_percent < 0:
                recommendations.append(
                    f"Variant '{result.variant_id}' is significantly worse than control "
                    f"(lift={result.lift_percent:+.2f}%). Consider stopping it."
                )

        return recommendations
