# 実験割り当て・統計評価エンジン
"""
experiment_engine

レコメンドアルゴリズム比較などのA/Bテストを支える、
割り当て（アロケーション）と統計評価のコアエンジン。

主な構成:
- allocation: 重み付きハッシュによる決定論的なバリアント割り当て
- metrics: (実験, バリアント, メトリクス) 単位のスレッドセーフな集計
- stats: 二標本比率のz検定 / Welchのt検定による有意性評価
- lifecycle: 実験ライフサイクルの状態機械と唯一の更新窓口
- registry: 実験定義のストア（リポジトリ経由で永続化）
"""

from experiment_engine.lifecycle.controller import ExperimentController

__version__ = "1.0.0"

__all__ = [
    "ExperimentController",
    "__version__",
]
