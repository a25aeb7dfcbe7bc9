# 実験ライフサイクルコントローラー
"""
ExperimentController: 実験エンジンの唯一の更新窓口

責務:
- 実験の作成・下書き編集・状態遷移（start / pause / resume / stop / cancel / archive）
- 割り当て（assign）: 実行中の実験のみ割り当て、それ以外はコントロールにフェイルクローズ
- 成果イベントの取り込み（record_outcome / on_outcome）
- 評価（evaluate）: アキュムレーターのスナップショットを StatisticalEvaluator に渡す

並行性:
- 状態遷移と編集は実験ごとのロックで直列化する（同じ実験の遷移は順序通りに適用される）
- assign / record_outcome は実験単位のロックを取らない。
  露出キャッシュは dict.setdefault で最初の1件だけを採用し、露出の二重計上を防ぐ
- 露出・成果イベントの永続化は AsyncEventSink に任せ、ホットパスで I/O しない
"""

import logging
import math
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from threading import Lock
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from experiment_engine.allocation.allocator import HashAllocator
from experiment_engine.clock import Clock, SystemClock
from experiment_engine.config.engine_config import EngineConfig
from experiment_engine.errors import (
    ExperimentError,
    ExperimentNotFoundError,
    InvalidStateError,
    UnknownSubjectWarning,
    ValidationError,
)
from experiment_engine.lifecycle.state_machine import LifecycleEvent, next_status
from experiment_engine.metrics.accumulator import MetricsAccumulator
from experiment_engine.models.experiment import (
    Assignment,
    Experiment,
    ExperimentStatus,
    Exposure,
    MetricKind,
    OutcomeEvent,
    OutcomeReceipt,
    Variant,
)
from experiment_engine.monitoring.metrics_collector import MetricsCollector
from experiment_engine.persistence.event_sink import AsyncEventSink
from experiment_engine.persistence.event_store import EventStore
from experiment_engine.registry.experiment_registry import ExperimentFilter, ExperimentRegistry
from experiment_engine.stats.evaluator import EvaluationReport, StatisticalEvaluator


logger = logging.getLogger(__name__)

# 下書き中に編集できるフィールド
EDITABLE_FIELDS = frozenset([
    "name",
    "description",
    "variants",
    "target_metric",
    "guardrail_metrics",
    "metric_kinds",
    "traffic_allocation",
    "owner",
    "algorithm",
    "planned_duration_days",
    "configuration",
])

# 成果イベントを受け付ける状態（一時停止中も既存被験者の成果は集計する）
_OUTCOME_STATUSES = (ExperimentStatus.RUNNING, ExperimentStatus.PAUSED)

# 再起動前に記録済みの二値成果
_RESTORED = object()

# 存在しない実験IDはラベルに展開しない
UNKNOWN_EXPERIMENT_LABEL = "unknown"


class ExperimentController:
    """実験ライフサイクルコントローラー

    使用例:
        controller = ExperimentController()

        exp_id = controller.create_experiment({
            "experiment_id": "exp1",
            "name": "ranking v2",
            "target_metric": "click",
            "variants": [
                {"variant_id": "A", "weight": 50, "is_control": True},
                {"variant_id": "B", "weight": 50, "config": {"algorithm": "v2"}},
            ],
        })
        controller.start_experiment(exp_id)

        assignment = controller.assign(exp_id, "user_42")
        controller.record_outcome(exp_id, "user_42", "click", 1.0)

        report = controller.evaluate(exp_id)
        controller.stop_experiment(exp_id)

    Attributes:
        registry: 実験定義ストア
        accumulator: 露出・成果カウンター
        evaluator: 統計評価
        allocator: ハッシュ割り当て
        clock: 時刻取得
        config: エンジン設定
        collector: 監視メトリクス
        event_sink: 露出・成果イベントの非同期書き込み（任意）
        event_store: カウンター復元用のイベントストア（任意）
    """

    def __init__(
        self,
        registry: Optional[ExperimentRegistry] = None,
        accumulator: Optional[MetricsAccumulator] = None,
        evaluator: Optional[StatisticalEvaluator] = None,
        allocator: Optional[HashAllocator] = None,
        clock: Optional[Clock] = None,
        config: Optional[EngineConfig] = None,
        collector: Optional[MetricsCollector] = None,
        event_store: Optional[EventStore] = None,
        event_sink: Optional[AsyncEventSink] = None,
    ):
        self.config = config or EngineConfig()
        self.config.validate()
        self.collector = collector or MetricsCollector(prefix=self.config.metrics_prefix)
        self.registry = registry or ExperimentRegistry()
        self.accumulator = accumulator or MetricsAccumulator(self.collector)
        self.evaluator = evaluator or StatisticalEvaluator(self.config, self.collector)
        self.allocator = allocator or HashAllocator(self.config.hash_buckets)
        self.clock = clock or SystemClock()
        self.event_store = event_store
        if event_sink is None and event_store is not None and self.config.event_sink_enabled:
            event_sink = AsyncEventSink(event_store, self.config, self.collector)
        self.event_sink = event_sink

        # experiment_id -> subject_id -> 最初の露出
        self._exposures: Dict[str, Dict[str, Exposure]] = {}
        # experiment_id -> (subject_id, metric) -> 二値メトリクスの初回記録マーカー
        self._conversions: Dict[str, Dict[Tuple[str, str], object]] = {}
        self._locks: Dict[str, Lock] = {}
        self._locks_guard = Lock()

        self._recover()

    # ===== 作成・編集 =====

    def create_experiment(self, definition: Union[Experiment, Mapping[str, Any]]) -> str:
        """実験を下書きとして作成

        Args:
            definition: Experiment または辞書（Experiment.from_dict 形式）

        Returns:
            実験ID（未指定なら UUID を採番）

        Raises:
            ValidationError: 定義が不正、または同じIDの実験が既に存在する場合
        """
        if isinstance(definition, Experiment):
            experiment = definition
        elif isinstance(definition, Mapping):
            experiment = Experiment.from_dict(definition)
        else:
            raise ValidationError(
                f"Experiment definition must be a mapping, got {type(definition).__name__}"
            )

        experiment = replace(
            experiment,
            experiment_id=experiment.experiment_id or str(uuid.uuid4()),
            status=ExperimentStatus.DRAFT,
            planned_duration_days=(
                experiment.planned_duration_days
                if experiment.planned_duration_days is not None
                else self.config.default_experiment_duration_days
            ),
            created_at=self.clock.now(),
            started_at=None,
            ended_at=None,
            winner_variant_id=None,
            is_significant=False,
            confidence_level=0.0,
            results=None,
        )
        experiment.validate()

        with self._lock_for(experiment.experiment_id):
            if self.registry.contains(experiment.experiment_id):
                raise ValidationError(
                    f"Experiment '{experiment.experiment_id}' already exists"
                )
            self.registry.put(experiment)

        logger.info(
            f"実験作成: experiment_id={experiment.experiment_id}, name={experiment.name}, "
            f"variants={experiment.variant_ids}"
        )
        return experiment.experiment_id

    def update_experiment(self, experiment_id: str, **changes: Any) -> Experiment:
        """下書きの実験を編集（編集後の定義全体を再検証）

        Raises:
            ExperimentNotFoundError: 実験が存在しない場合
            InvalidStateError: draft 以外の状態の場合
            ValidationError: 編集できないフィールド、または編集後の定義が不正な場合
        """
        unknown = sorted(set(changes) - EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Fields cannot be edited: {unknown}")

        with self._experiment_lock(experiment_id):
            experiment = self._require_draft(experiment_id)
            updated = self._apply_changes(experiment, changes)
            self.registry.put(updated)

        logger.info(f"実験編集: experiment_id={experiment_id}, fields={sorted(changes)}")
        return updated

    def add_variant(
        self,
        experiment_id: str,
        variant: Union[Variant, Mapping[str, Any]],
        weights: Optional[Mapping[str, float]] = None,
    ) -> Experiment:
        """下書きの実験にバリアントを追加

        Args:
            experiment_id: 実験ID
            variant: 追加するバリアント
            weights: 既存バリアントの新しい重み（variant_id -> weight）。同じ編集で再配分する

        Raises:
            InvalidStateError: draft 以外の状態の場合
            ValidationError: 追加後の定義が不正な場合（重み合計が100でない等）
        """
        if not isinstance(variant, Variant):
            variant = Variant.from_dict(variant)
        weights = dict(weights or {})

        with self._experiment_lock(experiment_id):
            experiment = self._require_draft(experiment_id)
            unknown = sorted(set(weights) - set(experiment.variant_ids) - {variant.variant_id})
            if unknown:
                raise ValidationError(f"Unknown variants in weights: {unknown}")

            variants = [
                replace(v, weight=weights[v.variant_id]) if v.variant_id in weights else v
                for v in experiment.variants
            ]
            if variant.variant_id in weights:
                variant = replace(variant, weight=weights[variant.variant_id])
            variants.append(variant)

            updated = self._apply_changes(experiment, {"variants": variants})
            self.registry.put(updated)

        logger.info(
            f"バリアント追加: experiment_id={experiment_id}, variant_id={variant.variant_id}"
        )
        return updated

    # ===== 参照 =====

    def get_experiment(self, experiment_id: str) -> Experiment:
        """実験を取得

        Raises:
            ExperimentNotFoundError: 実験が存在しない場合
        """
        return self.registry.require(experiment_id)

    def list_experiments(
        self,
        criteria: Optional[ExperimentFilter] = None,
        **kwargs: Any,
    ) -> List[Experiment]:
        """実験一覧（新しい順）

        Args:
            criteria: 絞り込み条件。省略時は status / owner / search / limit キーワードから作る
        """
        if criteria is None:
            criteria = ExperimentFilter.build(**kwargs)
        return self.registry.list(criteria)

    # ===== 状態遷移 =====

    def start_experiment(self, experiment_id: str) -> Experiment:
        """draft → running

        Raises:
            InvalidStateError: draft 以外の状態の場合
            ValidationError: 定義が開始条件を満たさない場合（バリアント2件未満など）
        """
        return self._transition(experiment_id, LifecycleEvent.START)

    def pause_experiment(self, experiment_id: str) -> Experiment:
        """running → paused（割り当てはコントロールに固定される）"""
        return self._transition(experiment_id, LifecycleEvent.PAUSE)

    def resume_experiment(self, experiment_id: str) -> Experiment:
        """paused → running"""
        return self._transition(experiment_id, LifecycleEvent.RESUME)

    def stop_experiment(self, experiment_id: str) -> Experiment:
        """running / paused → completed（最終評価を実験に保存する）"""
        return self._transition(experiment_id, LifecycleEvent.STOP)

    def cancel_experiment(self, experiment_id: str) -> Experiment:
        """draft / running / paused → cancelled"""
        return self._transition(experiment_id, LifecycleEvent.CANCEL)

    def archive_experiment(self, experiment_id: str) -> None:
        """終了した実験をレジストリから削除し、カウンターを解放

        Raises:
            InvalidStateError: completed / cancelled 以外の状態の場合
        """
        with self._experiment_lock(experiment_id):
            experiment = self.registry.require(experiment_id)
            if not experiment.status.is_terminal:
                raise InvalidStateError(
                    f"Cannot archive experiment in '{experiment.status.value}' status. "
                    f"Only 'completed' or 'cancelled' experiments can be archived.",
                    status=experiment.status.value,
                    event="archive",
                )
            self.registry.remove(experiment_id)
            self.accumulator.remove_experiment(experiment_id)
            self._exposures.pop(experiment_id, None)
            self._conversions.pop(experiment_id, None)

        with self._locks_guard:
            self._locks.pop(experiment_id, None)
        logger.info(f"実験アーカイブ: experiment_id={experiment_id}")

    # ===== 割り当て =====

    def assign(self, experiment_id: str, subject_id: str) -> Assignment:
        """被験者にバリアントを割り当て

        例外は送出しない。実行中でない実験や内部エラーではコントロールを返す。
        存在しない実験では variant_id=None を返す。
        """
        try:
            return self._assign(experiment_id, subject_id)
        except Exception as e:
            logger.error(
                f"割り当てに失敗したためコントロールを返却: experiment_id={experiment_id}, "
                f"subject_id={subject_id}, error={e}"
            )
            experiment = self.registry.peek(experiment_id)
            self.collector.record_assignment(self._label(experiment_id, experiment), "fallback")
            return self._fallback(experiment_id, subject_id, experiment)

    def _assign(self, experiment_id: str, subject_id: str) -> Assignment:
        experiment = self.registry.peek(experiment_id)
        if experiment is None or experiment.status != ExperimentStatus.RUNNING:
            self.collector.record_assignment(self._label(experiment_id, experiment), "fallback")
            return self._fallback(experiment_id, subject_id, experiment)

        cache = self._exposures[experiment_id]
        existing = cache.get(subject_id)
        if existing is not None:
            self.collector.record_assignment(experiment_id, "cached")
            return self._assignment(experiment, subject_id, existing.variant_id, "cached", True)

        if not self.allocator.admits(experiment_id, subject_id, experiment.traffic_allocation):
            self.collector.record_assignment(experiment_id, "not_in_traffic")
            control = experiment.control_variant
            return self._assignment(experiment, subject_id, control.variant_id, "not_in_traffic", False)

        variant_id = self.allocator.assign(experiment_id, subject_id, experiment.variants)
        exposure = Exposure(experiment_id, subject_id, variant_id, self.clock.now())
        stored = cache.setdefault(subject_id, exposure)
        if stored is not exposure:
            # 同時に割り当てた別リクエストが先に露出を記録した
            self.collector.record_assignment(experiment_id, "cached")
            return self._assignment(experiment, subject_id, stored.variant_id, "cached", True)

        self.accumulator.record_exposure(experiment_id, variant_id)
        if self.event_sink is not None:
            self.event_sink.put(exposure)
        self.collector.record_assignment(experiment_id, "assigned")
        logger.debug(
            f"割り当て: experiment_id={experiment_id}, subject_id={subject_id}, "
            f"variant_id={variant_id}"
        )
        return self._assignment(experiment, subject_id, variant_id, "assigned", True)

    # ===== 成果イベント =====

    def record_outcome(
        self,
        experiment_id: str,
        subject_id: str,
        metric: str,
        value: float = 1.0,
        timestamp: Optional[datetime] = None,
    ) -> OutcomeReceipt:
        """成果イベントを取り込む

        例外は送出しない。露出のない被験者は UnknownSubjectWarning を receipt.warning に入れて返す。
        二値メトリクスは (被験者, メトリクス) ごとに1回だけ集計する。
        """
        experiment = self.registry.peek(experiment_id)
        if experiment is None or experiment.status not in _OUTCOME_STATUSES:
            status = experiment.status.value if experiment else "missing"
            logger.warning(
                f"成果イベントを拒否: experiment_id={experiment_id}, status={status}, "
                f"metric={metric}"
            )
            self.collector.record_outcome(self._label(experiment_id, experiment), "rejected")
            return OutcomeReceipt(accepted=False, result="rejected")

        exposure = self._exposures.get(experiment_id, {}).get(subject_id)
        if exposure is None:
            warning = UnknownSubjectWarning(experiment_id, subject_id, metric)
            logger.warning(str(warning))
            self.collector.record_outcome(experiment_id, "unknown_subject")
            return OutcomeReceipt(accepted=False, result="unknown_subject", warning=warning)

        try:
            value = float(value)
        except (TypeError, ValueError):
            value = math.nan
        if not math.isfinite(value):
            logger.warning(
                f"成果値が不正なため拒否: experiment_id={experiment_id}, metric={metric}"
            )
            self.collector.record_outcome(experiment_id, "rejected")
            return OutcomeReceipt(accepted=False, result="rejected", variant_id=exposure.variant_id)

        if experiment.metric_kind(metric) == MetricKind.BINARY:
            marker = object()
            seen = self._conversions.setdefault(experiment_id, {})
            if seen.setdefault((subject_id, metric), marker) is not marker:
                self.collector.record_outcome(experiment_id, "duplicate")
                return OutcomeReceipt(
                    accepted=False, result="duplicate", variant_id=exposure.variant_id
                )

        if not self.accumulator.record_outcome(experiment_id, exposure.variant_id, metric, value):
            return OutcomeReceipt(
                accepted=False, result="unknown_variant", variant_id=exposure.variant_id
            )

        if self.event_sink is not None:
            self.event_sink.put(OutcomeEvent(
                experiment_id=experiment_id,
                subject_id=subject_id,
                metric=metric,
                value=value,
                timestamp=timestamp or self.clock.now(),
                variant_id=exposure.variant_id,
            ))
        self.collector.record_outcome(experiment_id, "recorded")
        return OutcomeReceipt(accepted=True, result="recorded", variant_id=exposure.variant_id)

    def on_outcome(self, event: OutcomeEvent) -> OutcomeReceipt:
        """イベントソースからのプッシュ受け口"""
        return self.record_outcome(
            event.experiment_id,
            event.subject_id,
            event.metric,
            event.value,
            timestamp=event.timestamp,
        )

    # ===== 評価 =====

    def evaluate(
        self,
        experiment_id: str,
        control_variant_id: Optional[str] = None,
        metric: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ) -> EvaluationReport:
        """現在のスナップショットを評価（状態は変更しない）

        Raises:
            ExperimentNotFoundError: 実験が存在しない場合
            ValidationError: コントロールやメトリクスが不正な場合
        """
        experiment = self.registry.require(experiment_id)
        return self.evaluator.evaluate(
            experiment,
            self.accumulator.snapshot(experiment_id),
            control_variant_id=control_variant_id,
            metric=metric,
            timeout_seconds=timeout_seconds,
            evaluated_at=self.clock.now(),
        )

    def restore_metrics(self, experiment_id: str) -> bool:
        """イベントストアからカウンターと露出キャッシュを再構築

        Returns:
            復元した場合 True（イベントストアがなければ False）
        """
        if self.event_store is None:
            return False
        with self._experiment_lock(experiment_id):
            experiment = self.registry.require(experiment_id)
            self._activate(experiment)
            exposures, outcomes = self.event_store.load_aggregates(experiment_id)
            self.accumulator.restore(experiment_id, exposures, outcomes)
            cache = self._exposures[experiment_id]
            restored_at = experiment.started_at or self.clock.now()
            for subject_id, variant_id in self.event_store.load_exposures(experiment_id).items():
                cache.setdefault(
                    subject_id, Exposure(experiment_id, subject_id, variant_id, restored_at)
                )
            binary_metrics = [
                m for m in experiment.metric_names if experiment.metric_kind(m) == MetricKind.BINARY
            ]
            seen = self._conversions[experiment_id]
            for key in self.event_store.load_converted(experiment_id, binary_metrics):
                seen.setdefault(key, _RESTORED)
        return True

    def close(self) -> None:
        """イベントシンクを書き切って停止し、レジストリを破棄"""
        if self.event_sink is not None:
            self.event_sink.close()
        self.registry.close()
        logger.info("実験コントローラー停止")

    # ===== Private Methods =====

    def _lock_for(self, experiment_id: str) -> Lock:
        with self._locks_guard:
            lock = self._locks.get(experiment_id)
            if lock is None:
                lock = Lock()
                self._locks[experiment_id] = lock
            return lock

    @contextmanager
    def _experiment_lock(self, experiment_id: str) -> Iterator[None]:
        """実験単位のロック（存在しない実験のロックは残さない）"""
        with self._lock_for(experiment_id):
            try:
                yield
            except ExperimentNotFoundError:
                with self._locks_guard:
                    self._locks.pop(experiment_id, None)
                raise

    @staticmethod
    def _label(experiment_id: str, experiment: Optional[Experiment]) -> str:
        return experiment_id if experiment is not None else UNKNOWN_EXPERIMENT_LABEL

    def _recover(self) -> None:
        """起動時: 実行中・一時停止中の実験のカウンターを用意する"""
        self.registry.warm()
        active = self.registry.list(ExperimentFilter.build(status=_OUTCOME_STATUSES))
        for experiment in active:
            self._activate(experiment)
            if self.event_store is not None:
                try:
                    self.restore_metrics(experiment.experiment_id)
                except Exception as e:
                    logger.error(
                        f"カウンター復元失敗: experiment_id={experiment.experiment_id}, error={e}"
                    )
        self.collector.set_running_experiments(len(self.registry.running()))

    def _activate(self, experiment: Experiment) -> None:
        self.accumulator.register_experiment(
            experiment.experiment_id, experiment.variant_ids, experiment.metric_names
        )
        self._exposures.setdefault(experiment.experiment_id, {})
        self._conversions.setdefault(experiment.experiment_id, {})

    def _require_draft(self, experiment_id: str) -> Experiment:
        experiment = self.registry.require(experiment_id)
        if experiment.status != ExperimentStatus.DRAFT:
            raise InvalidStateError(
                f"Cannot edit experiment in '{experiment.status.value}' status. "
                f"Only 'draft' experiments can be edited.",
                status=experiment.status.value,
                event="edit",
            )
        return experiment

    def _apply_changes(self, experiment: Experiment, changes: Mapping[str, Any]) -> Experiment:
        data = experiment.to_dict()
        for key, value in changes.items():
            if key == "variants":
                value = [v.to_dict() if isinstance(v, Variant) else v for v in value]
            elif key == "guardrail_metrics":
                value = list(value)
            data[key] = value
        updated = Experiment.from_dict(data)
        updated = replace(updated, created_at=experiment.created_at)
        updated.validate()
        return updated

    def _check_start_guard(self, experiment: Experiment) -> None:
        experiment.validate()
        if len(experiment.variants) < self.config.min_variants:
            raise ValidationError(
                f"Experiment '{experiment.experiment_id}' requires at least "
                f"{self.config.min_variants} variants to start, got {len(experiment.variants)}"
            )

    def _transition(self, experiment_id: str, event: LifecycleEvent) -> Experiment:
        with self._experiment_lock(experiment_id):
            experiment = self.registry.require(experiment_id)
            try:
                target = next_status(experiment.status, event)
                if event == LifecycleEvent.START:
                    self._check_start_guard(experiment)
            except ExperimentError:
                self.collector.record_transition(event.value, ok=False)
                raise

            now = self.clock.now()
            changes: Dict[str, Any] = {"status": target}
            if event == LifecycleEvent.START:
                changes["started_at"] = now
                self._activate(experiment)
            elif event == LifecycleEvent.STOP:
                report = self.evaluator.evaluate(
                    experiment,
                    self.accumulator.snapshot(experiment_id),
                    evaluated_at=now,
                )
                changes.update(
                    ended_at=now,
                    winner_variant_id=report.winner_variant_id,
                    is_significant=report.is_significant,
                    confidence_level=report.confidence_level,
                    results=report.summary(),
                )
            elif event == LifecycleEvent.CANCEL:
                changes["ended_at"] = now

            updated = replace(experiment, **changes)
            self.registry.put(updated)

        self.collector.record_transition(event.value, ok=True)
        self.collector.set_running_experiments(len(self.registry.running()))
        logger.info(
            f"状態遷移: experiment_id={experiment_id}, event={event.value}, "
            f"{experiment.status.value} -> {target.value}"
        )
        return updated

    def _assignment(
        self,
        experiment: Experiment,
        subject_id: str,
        variant_id: str,
        reason: str,
        exposed: bool,
    ) -> Assignment:
        variant = experiment.get_variant(variant_id)
        return Assignment(
            experiment_id=experiment.experiment_id,
            subject_id=subject_id,
            variant_id=variant_id,
            config=dict(variant.config) if variant else {},
            reason=reason,
            exposed=exposed,
        )

    def _fallback(
        self,
        experiment_id: str,
        subject_id: str,
        experiment: Optional[Experiment],
    ) -> Assignment:
        if experiment is None or not experiment.variants:
            return Assignment(
                experiment_id=experiment_id,
                subject_id=subject_id,
                variant_id=None,
                config={},
                reason="fallback",
                exposed=False,
            )
        exposed = subject_id in self._exposures.get(experiment_id, {})
        control = experiment.control_variant
        return self._assignment(experiment, subject_id, control.variant_id, "fallback", exposed)
