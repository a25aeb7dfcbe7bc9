# 実験エンジン パラメータ設定

import os
from dataclasses import dataclass, fields
from typing import Dict, List


# 環境変数による上書き対象（フィールド名 -> 環境変数名）
ENV_OVERRIDES: Dict[str, str] = {
    "min_sample_size": "EXPERIMENT_MIN_SAMPLE_SIZE",
    "significance_level": "EXPERIMENT_SIGNIFICANCE_LEVEL",
    "confidence_level": "EXPERIMENT_CONFIDENCE_LEVEL",
    "evaluation_timeout_seconds": "EXPERIMENT_EVALUATION_TIMEOUT",
}


@dataclass
class EngineConfig:
    """実験エンジン パラメータ設定

    構成:
    - 割り当て: ハッシュバケット数、重み合計
    - 統計評価: 最小サンプル数、有意水準、信頼水準、評価タイムアウト
    - イベントシンク: キューサイズ、バッチサイズ、フラッシュ間隔
    - 運用: 保持期間、デフォルト実験期間、メトリクスのプレフィックス

    環境変数:
        EXPERIMENT_MIN_SAMPLE_SIZE: 最小サンプル数
        EXPERIMENT_SIGNIFICANCE_LEVEL: 有意水準 α
        EXPERIMENT_CONFIDENCE_LEVEL: 信頼区間の水準
        EXPERIMENT_EVALUATION_TIMEOUT: 評価のタイムアウト（秒）

    環境変数はフィールドがデフォルト値のままの場合のみ適用する。
    """

    # === 割り当て ===
    hash_buckets: int = 10000
    """ハッシュ値を写像するバケット数（ベーシスポイント）"""

    total_weight: int = 100
    """バリアント重みの合計（常に100）"""

    min_variants: int = 2
    """開始に必要な最小バリアント数"""

    # === 統計評価 ===
    min_sample_size: int = 100
    """バリアントあたりの最小露出数（未満は insufficient_data）"""

    significance_level: float = 0.05
    """有意水準 α（p値がこれ未満で有意）"""

    confidence_level: float = 0.95
    """信頼区間の水準"""

    evaluation_timeout_seconds: float = 5.0
    """評価の打ち切り時間（秒）。超過分のバリアントは timed_out とする"""

    # === イベントシンク ===
    event_sink_enabled: bool = True
    """露出・成果イベントの非同期永続化を有効にするか"""

    event_sink_queue_size: int = 10000
    """シンクのキュー上限（超過分は破棄）"""

    event_sink_batch_size: int = 100
    """1回の書き込みで処理する最大イベント数"""

    event_sink_flush_interval_seconds: float = 1.0
    """キュー待機のタイムアウト（秒）"""

    # === 運用 ===
    retention_days: int = 90
    """実験終了後に露出・成果イベントを保持する日数（削除は外部の保持処理が担当）"""

    default_experiment_duration_days: int = 14
    """実験期間の既定値（日）"""

    metrics_prefix: str = "experiment_engine"
    """監視メトリクス名のプレフィックス"""

    def __post_init__(self) -> None:
        """初期化後の処理: 環境変数から設定を上書き"""
        defaults = {f.name: f.default for f in fields(self)}
        for name, env_name in ENV_OVERRIDES.items():
            raw = os.getenv(env_name)
            if raw is None or getattr(self, name) != defaults[name]:
                continue
            caster = type(defaults[name])
            try:
                setattr(self, name, caster(raw))
            except ValueError:
                raise ValueError(f"{env_name} must be a {caster.__name__}, got {raw!r}")

    def validate(self) -> None:
        """設定値の範囲を検証

        Raises:
            ValueError: 範囲外の値がある場合
        """
        if self.min_sample_size < 1:
            raise ValueError(f"min_sample_size must be >= 1, got {self.min_sample_size}")
        if not 0.0 < self.significance_level < 1.0:
            raise ValueError(
                f"significance_level must be in (0, 1), got {self.significance_level}"
            )
        if not 0.0 < self.confidence_level < 1.0:
            raise ValueError(
                f"confidence_level must be in (0, 1), got {self.confidence_level}"
            )
        if self.evaluation_timeout_seconds <= 0:
            raise ValueError("evaluation_timeout_seconds must be positive")
        if self.hash_buckets != self.total_weight * 100:
            raise ValueError("hash_buckets must equal total_weight * 100 (basis points)")
        if self.min_variants < 2:
            raise ValueError("min_variants must be >= 2")
        if self.event_sink_queue_size < 1 or self.event_sink_batch_size < 1:
            raise ValueError("event sink sizes must be positive")


# === メトリクス種別 ===
METRIC_KINDS: Dict[str, str] = {
    "binary": "二値（クリック・コンバージョン）: 二標本比率のz検定",
    "continuous": "連続値（売上・滞在時間）: Welchのt検定",
}

# === ライフサイクルイベント ===
LIFECYCLE_EVENTS: List[str] = ["start", "pause", "resume", "stop", "cancel"]

# === ステータス説明 ===
STATUS_DESCRIPTIONS: Dict[str, str] = {
    "draft": "下書き（編集可能）",
    "running": "実行中（割り当て・集計中）",
    "paused": "一時停止（割り当てはコントロールに固定）",
    "completed": "完了（終端）",
    "cancelled": "中止（終端）",
}


# デフォルト設定のインスタンス
engine_config = EngineConfig()
