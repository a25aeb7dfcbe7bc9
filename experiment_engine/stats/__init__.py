# experiment_engine/stats/__init__.py
"""統計評価モジュール

二標本比率の z 検定と Welch の t 検定でバリアントをコントロールと比較する。
"""

from experiment_engine.stats.evaluator import (
    EvaluationReport,
    EvaluationStatus,
    ResultStatus,
    StatisticalEvaluator,
    VariantResult,
)

__all__ = [
    "EvaluationReport",
    "EvaluationStatus",
    "ResultStatus",
    "StatisticalEvaluator",
    "VariantResult",
]
