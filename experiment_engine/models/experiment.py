# 実験データモデル
"""
実験・バリアント・露出・成果イベントのデータモデル

設計方針:
- Experiment / Variant は不変（frozen）。更新は dataclasses.replace で新しいインスタンスを作り、
  レジストリ上の参照を差し替える（読み手は常に一貫した定義を見る）
- Exposure / OutcomeEvent は追記専用の事実。作成後に変更しない
- バリアントの設定ペイロードは作成時に一度だけ検証し、割り当て時には検証しない
"""

import json
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from experiment_engine.errors import ValidationError


TOTAL_WEIGHT = 100
BASIS_POINTS = TOTAL_WEIGHT * 100


class ExperimentStatus(str, Enum):
    """実験のステータス

    状態遷移:
        DRAFT → RUNNING ⇄ PAUSED → COMPLETED
          └──────┴─────────┴──→ CANCELLED
    """
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExperimentStatus.COMPLETED, ExperimentStatus.CANCELLED)


class MetricKind(str, Enum):
    """メトリクスの種別（検定手法を決める）"""
    BINARY = "binary"          # クリック・コンバージョン（z検定）
    CONTINUOUS = "continuous"  # 売上・滞在時間（Welchのt検定）


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class Variant:
    """実験バリアント（アーム）

    Attributes:
        variant_id: 実験内で一意なID
        name: 表示名
        weight: トラフィック重み（0-100、小数は2桁まで。兄弟バリアントと合計100）
        config: 呼び出し元にそのまま渡す設定ペイロード（どのアルゴリズムを使うか等）
        is_control: コントロール群フラグ
        description: 説明
        algorithm: 比較対象のレコメンドアルゴリズム名
    """
    variant_id: str
    name: str
    weight: float
    config: Dict[str, Any] = field(default_factory=dict)
    is_control: bool = False
    description: str = ""
    algorithm: str = ""

    @property
    def basis_points(self) -> int:
        """重みをベーシスポイント（weight × 100）に変換"""
        return int(round(self.weight * 100))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "variant_id": self.variant_id,
            "name": self.name,
            "weight": self.weight,
            "config": self.config,
            "is_control": self.is_control,
            "description": self.description,
            "algorithm": self.algorithm,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Variant":
        """辞書からバリアントを生成

        "variant_id" の代わりに "id" も受け付ける。name 省略時は variant_id を使う。
        """
        variant_id = data.get("variant_id", data.get("id"))
        if variant_id is None or str(variant_id) == "":
            raise ValidationError("variant_id is required for every variant")
        variant_id = str(variant_id)

        weight = data.get("weight", data.get("allocation"))
        if isinstance(weight, bool) or not isinstance(weight, (int, float)):
            raise ValidationError(f"Variant '{variant_id}' weight must be a number, got {weight!r}")

        config = data.get("config", data.get("configuration")) or {}
        return cls(
            variant_id=variant_id,
            name=str(data.get("name") or variant_id),
            weight=weight,
            config=dict(config) if isinstance(config, Mapping) else config,
            is_control=bool(data.get("is_control", data.get("isControl", False))),
            description=str(data.get("description") or ""),
            algorithm=str(data.get("algorithm") or ""),
        )


@dataclass(frozen=True)
class Experiment:
    """実験定義

    Attributes:
        experiment_id: 実験ID
        name: 実験名
        variants: バリアント（順序付き）
        target_metric: 主要メトリクス名
        description: 説明
        guardrail_metrics: ガードレールメトリクス名（監視のみ、勝者判定には使わない）
        metric_kinds: メトリクス名 -> 種別。未指定のメトリクスは binary
        traffic_allocation: 実験に参加させる母集団の割合（0-100）
        status: ステータス
        owner: 実験オーナー
        algorithm: 実験全体で比較するアルゴリズムの概要
        planned_duration_days: 予定期間（日）
        configuration: 実験レベルの任意設定
        created_at / started_at / ended_at: タイムスタンプ
        winner_variant_id / is_significant / confidence_level / results: 完了時の最終評価
    """
    experiment_id: str
    name: str
    variants: Tuple[Variant, ...]
    target_metric: str
    description: str = ""
    guardrail_metrics: Tuple[str, ...] = ()
    metric_kinds: Dict[str, MetricKind] = field(default_factory=dict)
    traffic_allocation: float = 100.0
    status: ExperimentStatus = ExperimentStatus.DRAFT
    owner: str = ""
    algorithm: str = ""
    planned_duration_days: Optional[int] = None
    configuration: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    winner_variant_id: Optional[str] = None
    is_significant: bool = False
    confidence_level: float = 0.0
    results: Optional[Dict[str, Any]] = None

    @property
    def variant_ids(self) -> List[str]:
        return [v.variant_id for v in self.variants]

    @property
    def metric_names(self) -> List[str]:
        """主要メトリクス + ガードレールメトリクス"""
        names = [self.target_metric] if self.target_metric else []
        names.extend(m for m in self.guardrail_metrics if m not in names)
        return names

    @property
    def control_variant(self) -> Variant:
        """コントロールバリアント

        is_control のバリアントがなければ先頭のバリアントをフェイルセーフの既定値とする。
        """
        for variant in self.variants:
            if variant.is_control:
                return variant
        return self.variants[0]

    def get_variant(self, variant_id: str) -> Optional[Variant]:
        for variant in self.variants:
            if variant.variant_id == variant_id:
                return variant
        return None

    def metric_kind(self, metric: str) -> MetricKind:
        return self.metric_kinds.get(metric, MetricKind.BINARY)

    def validate(self) -> None:
        """定義を検証（作成時・編集時）

        Raises:
            ValidationError: 問題が1つ以上ある場合（全件を problems に格納）
        """
        problems = validate_definition(self)
        if problems:
            raise ValidationError(
                f"Invalid experiment definition: {'; '.join(problems)}",
                problems,
            )

    def to_dict(self) -> Dict[str, Any]:
        """辞書形式に変換（JSONシリアライズ・REST レスポンス用）"""
        return {
            "experiment_id": self.experiment_id,
            "name": self.name,
            "description": self.description,
            "variants": [v.to_dict() for v in self.variants],
            "target_metric": self.target_metric,
            "guardrail_metrics": list(self.guardrail_metrics),
            "metric_kinds": {k: MetricKind(v).value for k, v in self.metric_kinds.items()},
            "traffic_allocation": self.traffic_allocation,
            "status": self.status.value,
            "owner": self.owner,
            "algorithm": self.algorithm,
            "planned_duration_days": self.planned_duration_days,
            "configuration": self.configuration,
            "created_at": _format_datetime(self.created_at),
            "started_at": _format_datetime(self.started_at),
            "ended_at": _format_datetime(self.ended_at),
            "winner_variant_id": self.winner_variant_id,
            "is_significant": self.is_significant,
            "confidence_level": self.confidence_level,
            "results": self.results,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Experiment":
        """辞書から実験を生成

        構造的に読めない入力（バリアントが配列でない等）は ValidationError。
        値の妥当性（重み合計など）は validate() で検証する。
        """
        raw_variants = data.get("variants")
        if not isinstance(raw_variants, (list, tuple)):
            raise ValidationError("variants must be a list of variant definitions")
        for item in raw_variants:
            if not isinstance(item, Mapping):
                raise ValidationError("each variant must be a mapping")

        raw_kinds = data.get("metric_kinds") or {}
        try:
            metric_kinds = {str(k): MetricKind(v) for k, v in raw_kinds.items()}
        except ValueError as e:
            raise ValidationError(f"Invalid metric kind: {e}")

        try:
            status = ExperimentStatus(data.get("status", ExperimentStatus.DRAFT.value))
        except ValueError:
            raise ValidationError(f"Unknown experiment status: {data.get('status')!r}")

        duration = data.get("planned_duration_days", data.get("duration"))
        if duration is not None and (isinstance(duration, bool) or not isinstance(duration, int)):
            raise ValidationError(f"planned_duration_days must be an integer, got {duration!r}")

        return cls(
            experiment_id=str(data.get("experiment_id") or data.get("id") or ""),
            name=str(data.get("name") or ""),
            variants=tuple(Variant.from_dict(v) for v in raw_variants),
            target_metric=str(data.get("target_metric") or ""),
            description=str(data.get("description") or ""),
            guardrail_metrics=tuple(str(m) for m in data.get("guardrail_metrics") or ()),
            metric_kinds=metric_kinds,
            traffic_allocation=data.get("traffic_allocation", 100.0),
            status=status,
            owner=str(data.get("owner") or ""),
            algorithm=str(data.get("algorithm") or ""),
            planned_duration_days=duration,
            configuration=dict(data.get("configuration") or {}),
            created_at=_parse_datetime(data.get("created_at")),
            started_at=_parse_datetime(data.get("started_at")),
            ended_at=_parse_datetime(data.get("ended_at")),
            winner_variant_id=data.get("winner_variant_id"),
            is_significant=bool(data.get("is_significant", False)),
            confidence_level=float(data.get("confidence_level") or 0.0),
            results=data.get("results"),
        )


def _is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)

def validate_definition(experiment: Experiment) -> List[str]:
    """実験定義の問題点を列挙

    Returns:
        問題の説明のリスト（問題なしなら空）
    """
    problems: List[str] = []

    if not experiment.name.strip():
        problems.append("name is required")
    if not experiment.target_metric.strip():
        problems.append("target_metric is required")

    if not experiment.variants:
        problems.append("at least one variant is required")

    seen = set()
    for variant in experiment.variants:
        if variant.variant_id in seen:
            problems.append(f"duplicate variant_id '{variant.variant_id}'")
        seen.add(variant.variant_id)

        weight = variant.weight
        if not _is_finite_number(weight):
            problems.append(f"variant '{variant.variant_id}' weight must be a finite number, got {weight!r}")
            continue
        if not 0 <= weight <= TOTAL_WEIGHT:
            problems.append(
                f"variant '{variant.variant_id}' weight must be between 0 and {TOTAL_WEIGHT}, got {weight}"
            )
        # 重みはベーシスポイント（小数2桁）まで
        if abs(weight * 100 - round(weight * 100)) > 1e-6:
            problems.append(
                f"variant '{variant.variant_id}' weight {weight} has more than 2 decimal places"
            )

        if not isinstance(variant.config, Mapping):
            problems.append(f"variant '{variant.variant_id}' config must be a mapping")
        else:
            try:
                json.dumps(variant.config)
            except (TypeError, ValueError):
                problems.append(f"variant '{variant.variant_id}' config must be JSON-serializable")

    if experiment.variants and all(_is_finite_number(v.weight) for v in experiment.variants):
        total = sum(v.basis_points for v in experiment.variants)
        if total != BASIS_POINTS:
            total_weight = sum(v.weight for v in experiment.variants)
            problems.append(f"variant weights must sum to {TOTAL_WEIGHT}, got {total_weight:g}")

    controls = [v.variant_id for v in experiment.variants if v.is_control]
    if len(controls) > 1:
        problems.append(f"at most one control variant is allowed, got {controls}")

    allocation = experiment.traffic_allocation
    if isinstance(allocation, bool) or not isinstance(allocation, (int, float)) or not 0 <= allocation <= 100:
        problems.append(f"traffic_allocation must be between 0 and 100, got {allocation!r}")

    if experiment.target_metric and experiment.target_metric in experiment.guardrail_metrics:
        problems.append("target_metric must not also be a guardrail metric")
    if len(set(experiment.guardrail_metrics)) != len(experiment.guardrail_metrics):
        problems.append("guardrail_metrics must be unique")

    unknown_kinds = [m for m in experiment.metric_kinds if m not in experiment.metric_names]
    if unknown_kinds:
        problems.append(f"metric_kinds refers to unknown metrics: {unknown_kinds}")

    if experiment.planned_duration_days is not None and experiment.planned_duration_days <= 0:
        problems.append("planned_duration_days must be positive")

    return problems


@dataclass(frozen=True)
class Exposure:
    """露出（被験者にバリアントが割り当てられた事実）

    (実験, 被験者) ごとに1回だけ作成される。
    """
    experiment_id: str
    subject_id: str
    variant_id: str
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment_id": self.experiment_id,
            "subject_id": self.subject_id,
            "variant_id": self.variant_id,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class OutcomeEvent:
    """成果イベント（クリック・コンバージョン・売上など）

    variant_id は取り込み時に露出から解決される（外部からは指定しない）。
    """
    experiment_id: str
    subject_id: str
    metric: str
    value: float
    timestamp: datetime
    variant_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experiment_id": self.experiment_id,
            "subject_id": self.subject_id,
            "metric": self.metric,
            "value": self.value,
            "timestamp": self.timestamp.isoformat(),
            "variant_id": self.variant_id,
        }


@dataclass(frozen=True)
class Assignment:
    """割り当て結果

    Attributes:
        variant_id: 割り当てたバリアント（実験が存在しない場合は None）
        config: バリアントの設定ペイロード
        reason: "assigned" | "cached" | "fallback" | "not_in_traffic"
        exposed: この呼び出しまでに露出が記録されているか
    """
    experiment_id: str
    subject_id: str
    variant_id: Optional[str]
    config: Dict[str, Any]
    reason: str
    exposed: bool

    @property
    def is_fallback(self) -> bool:
        return self.reason in ("fallback", "not_in_traffic")


@dataclass(frozen=True)
class OutcomeReceipt:
    """成果イベント取り込み結果

    Attributes:
        accepted: 集計に反映されたか
        result: "recorded" | "duplicate" | "unknown_subject" | "unknown_variant" | "rejected"
        variant_id: 帰属したバリアント
        warning: 露出のない被験者の場合の UnknownSubjectWarning
    """
    accepted: bool
    result: str
    variant_id: Optional[str] = None
    warning: Optional[Warning] = None
