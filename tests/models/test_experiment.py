# 実験データモデル テスト
"""
Experiment / Variant の単体テスト

検証観点:
- 辞書からの生成（別名キー・構造エラー）
- 定義検証（問題を全件列挙）
- 派生プロパティ
"""

from datetime import datetime

import pytest

from experiment_engine.errors import ValidationError
from experiment_engine.models.experiment import (
    Experiment,
    ExperimentStatus,
    MetricKind,
    Variant,
    validate_definition,
)


def make_data(**overrides):
    data = {
        "experiment_id": "exp1",
        "name": "ranking v2",
        "target_metric": "click",
        "variants": [
            {"variant_id": "A", "weight": 50, "is_control": True},
            {"variant_id": "B", "weight": 50},
        ],
    }
    data.update(overrides)
    return data


# ============================================================================
# Variant
# ============================================================================


class TestVariant:
    """Variant の生成"""

    def test_from_dict_aliases(self):
        variant = Variant.from_dict({"id": "B", "allocation": 25.5, "isControl": True, "configuration": {"k": 1}})
        assert variant.variant_id == "B"
        assert variant.name == "B"
        assert variant.weight == 25.5
        assert variant.is_control is True
        assert variant.config == {"k": 1}
        assert variant.basis_points == 2550

    def test_missing_id(self):
        with pytest.raises(ValidationError):
            Variant.from_dict({"weight": 50})

    @pytest.mark.parametrize("weight", ["50", None, True])
    def test_non_numeric_weight(self, weight):
        with pytest.raises(ValidationError):
            Variant.from_dict({"variant_id": "A", "weight": weight})


# ============================================================================
# Experiment.from_dict / to_dict
# ============================================================================


class TestExperimentFromDict:
    """辞書からの生成"""

    def test_basic(self):
        experiment = Experiment.from_dict(make_data(
            guardrail_metrics=["revenue"],
            metric_kinds={"revenue": "continuous"},
            created_at="2024-01-01T09:00:00",
        ))
        assert experiment.status == ExperimentStatus.DRAFT
        assert experiment.metric_names == ["click", "revenue"]
        assert experiment.metric_kind("revenue") == MetricKind.CONTINUOUS
        assert experiment.metric_kind("click") == MetricKind.BINARY
        assert experiment.created_at == datetime(2024, 1, 1, 9, 0)

    def test_to_dict_is_readable_by_from_dict(self):
        experiment = Experiment.from_dict(make_data(metric_kinds={"click": "binary"}))
        data = experiment.to_dict()
        assert data["metric_kinds"] == {"click": "binary"}
        assert data["status"] == "draft"
        assert Experiment.from_dict(data) == experiment

    def test_variants_must_be_list(self):
        with pytest.raises(ValidationError):
            Experiment.from_dict(make_data(variants="A,B"))

    def test_unknown_status(self):
        with pytest.raises(ValidationError):
            Experiment.from_dict(make_data(status="archived"))

    def test_unknown_metric_kind(self):
        with pytest.raises(ValidationError):
            Experiment.from_dict(make_data(metric_kinds={"click": "ordinal"}))

    def test_control_variant_defaults_to_first(self):
        data = make_data()
        data["variants"][0]["is_control"] = False
        experiment = Experiment.from_dict(data)
        assert experiment.control_variant.variant_id == "A"


# ============================================================================
# validate_definition
# ============================================================================


class TestValidateDefinition:
    """定義検証"""

    def test_valid_definition(self):
        assert validate_definition(Experiment.from_dict(make_data())) == []

    def test_fractional_weights(self):
        data = make_data(variants=[
            {"variant_id": "A", "weight": 33.33},
            {"variant_id": "B", "weight": 33.33},
            {"variant_id": "C", "weight": 33.34},
        ])
        assert validate_definition(Experiment.from_dict(data)) == []

    def test_too_many_decimals(self):
        data = make_data(variants=[
            {"variant_id": "A", "weight": 50.005},
            {"variant_id": "B", "weight": 49.995},
        ])
        problems = validate_definition(Experiment.from_dict(data))
        assert any("more than 2 decimal places" in p for p in problems)

    @pytest.mark.parametrize("weight", [float("inf"), float("-inf"), float("nan")])
    def test_non_finite_weight(self, weight):
        data = make_data(variants=[
            {"variant_id": "A", "weight": weight},
            {"variant_id": "B", "weight": 50},
        ])
        problems = validate_definition(Experiment.from_dict(data))
        assert any("weight must be a finite number" in p for p in problems)
        # 合計チェックは有限の重みがそろった場合のみ
        assert not any("sum to" in p for p in problems)

    def test_weight_out_of_range(self):
        data = make_data(variants=[
            {"variant_id": "A", "weight": 150},
            {"variant_id": "B", "weight": -50},
        ])
        problems = validate_definition(Experiment.from_dict(data))
        assert sum("between 0 and 100" in p for p in problems) == 2

    def test_multiple_controls(self):
        data = make_data()
        data["variants"][1]["is_control"] = True
        problems = validate_definition(Experiment.from_dict(data))
        assert any("at most one control" in p for p in problems)

    def test_metric_configuration_problems(self):
        experiment = Experiment.from_dict(make_data(
            guardrail_metrics=["click", "revenue", "revenue"],
            metric_kinds={"dwell": "continuous"},
            traffic_allocation=120,
            planned_duration_days=0,
        ))
        problems = validate_definition(experiment)
        assert "target_metric must not also be a guardrail metric" in problems
        assert "guardrail_metrics must be unique" in problems
        assert any("unknown metrics: ['dwell']" in p for p in problems)
        assert any("traffic_allocation" in p for p in problems)
        assert "planned_duration_days must be positive" in problems

    def test_validate_raises_with_all_problems(self):
        experiment = Experiment.from_dict(make_data(name="", variants=[]))
        with pytest.raises(ValidationError) as exc_info:
            experiment.validate()
        assert "name is required" in exc_info.value.problems
        assert "at least one variant is required" in exc_info.value.problems
