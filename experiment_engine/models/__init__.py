# Models モジュール
from experiment_engine.models.experiment import (
    Assignment,
    Experiment,
    ExperimentStatus,
    Exposure,
    MetricKind,
    OutcomeEvent,
    OutcomeReceipt,
    Variant,
    validate_definition,
)

__all__ = [
    "Assignment",
    "Experiment",
    "ExperimentStatus",
    "Exposure",
    "MetricKind",
    "OutcomeEvent",
    "OutcomeReceipt",
    "Variant",
    "validate_definition",
]
