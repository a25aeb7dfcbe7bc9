# CLI ユーティリティのテスト

import pytest

from experiment_engine.cli.utils.output import fmt_lift, fmt_number, fmt_rate, format_table
from experiment_engine.cli.utils.yaml_loader import (
    YamlValidationError,
    load_yaml,
    validate_experiment_definition,
)


def _definition(**overrides):
    data = {
        "name": "ranking v2",
        "target_metric": "click",
        "variants": [{"variant_id": "A", "weight": 50}, {"variant_id": "B", "weight": 50}],
    }
    data.update(overrides)
    return data


class TestFormatTable:
    """表の整形"""

    def test_numbers_are_right_aligned(self):
        table = format_table(["variant", "n"], [["A", 5], ["B", 1000]])
        lines = table.splitlines()
        assert lines[0] == "variant n"
        assert lines[2] == "A          5"
        assert lines[3] == "B       1000"

    def test_separator_spans_columns(self):
        table = format_table(["a", "b"], [["xx", "yyy"]])
        assert table.splitlines()[1] == "------"


class TestFormatters:
    """数値整形"""

    def test_rate(self):
        assert fmt_rate(0.2376) == "23.76%"
        assert fmt_rate(None) == "-"

    def test_lift(self):
        assert fmt_lift(27.5) == "+27.50%"
        assert fmt_lift(-3.0) == "-3.00%"

    def test_number(self):
        assert fmt_number(0.019834) == "0.0198"
        assert fmt_number(None) == "-"


class TestYamlLoader:
    """YAML 読み込み"""

    def test_root_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(YamlValidationError):
            load_yaml(str(path))

    def test_syntax_error(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("name: [unclosed\n", encoding="utf-8")
        with pytest.raises(YamlValidationError, match="YAMLの構文が不正です"):
            load_yaml(str(path))


class TestValidateExperimentDefinition:
    """定義の形の検証"""

    def test_valid(self):
        validate_experiment_definition(_definition())

    def test_missing_fields(self):
        with pytest.raises(YamlValidationError, match="variants"):
            validate_experiment_definition({"name": "x", "target_metric": "click"})

    def test_variant_without_id(self):
        with pytest.raises(YamlValidationError, match="variant_id"):
            validate_experiment_definition(_definition(variants=[{"weight": 100}]))

    def test_weight_must_be_number(self):
        with pytest.raises(YamlValidationError):
            validate_experiment_definition(_definition(variants=[{"variant_id": "A", "weight": "100"}]))

    def test_unknown_metric_kind(self):
        with pytest.raises(YamlValidationError, match="binary/continuous"):
            validate_experiment_definition(_definition(metric_kinds={"click": "ordinal"}))

    def test_guardrails_must_be_strings(self):
        with pytest.raises(YamlValidationError):
            validate_experiment_definition(_definition(guardrail_metrics=["revenue", 3]))
