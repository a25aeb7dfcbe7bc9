# 実験定義 YAML ローダー
"""YAML の読み込みと実験定義の形のチェック"""

from __future__ import annotations

from typing import Any, Dict, List

import yaml

from experiment_engine.config.engine_config import METRIC_KINDS


class YamlValidationError(ValueError):
    """定義ファイルの形が不正"""


def load_yaml(path: str) -> Dict[str, Any]:
    """定義ファイルを読み込む（構文エラーも YamlValidationError にする）"""
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise YamlValidationError(f"YAMLの構文が不正です: {e}") from e
    if not isinstance(data, dict):
        raise YamlValidationError("YAMLのルートはオブジェクトである必要があります")
    return data


def validate_experiment_definition(data: Dict[str, Any]) -> None:
    """実験定義の形（型・必須キー）を検証する

    値の妥当性（重み合計・コントロール数など）は Experiment.validate() が検証する。
    """
    _require_fields(data, ["name", "target_metric", "variants"])

    if not isinstance(data["name"], str) or not data["name"]:
        raise YamlValidationError("name は文字列で指定してください")
    if not isinstance(data["target_metric"], str) or not data["target_metric"]:
        raise YamlValidationError("target_metric は文字列で指定してください")

    experiment_id = data.get("experiment_id", data.get("id"))
    if experiment_id is not None and (not isinstance(experiment_id, str) or not experiment_id):
        raise YamlValidationError("experiment_id は文字列で指定してください")

    variants = data["variants"]
    if not isinstance(variants, list) or not variants:
        raise YamlValidationError("variants は配列で指定してください")
    for variant in variants:
        if not isinstance(variant, dict):
            raise YamlValidationError("variants の要素はオブジェクトで指定してください")
        if "variant_id" not in variant and "id" not in variant:
            raise YamlValidationError("variants の要素には variant_id が必要です")
        _require_fields(variant, ["weight"], prefix="variants")
        weight = variant["weight"]
        if isinstance(weight, bool) or not isinstance(weight, (int, float)):
            raise YamlValidationError("variants.weight は数値で指定してください")
        config = variant.get("config")
        if config is not None and not isinstance(config, dict):
            raise YamlValidationError("variants.config はオブジェクトで指定してください")

    guardrails = data.get("guardrail_metrics")
    if guardrails is not None:
        if not isinstance(guardrails, list) or not all(isinstance(m, str) and m for m in guardrails):
            raise YamlValidationError("guardrail_metrics は文字列配列で指定してください")

    metric_kinds = data.get("metric_kinds")
    if metric_kinds is not None:
        if not isinstance(metric_kinds, dict):
            raise YamlValidationError("metric_kinds はオブジェクトで指定してください")
        invalid = [m for m, kind in metric_kinds.items() if kind not in METRIC_KINDS]
        if invalid:
            raise YamlValidationError(
                f"metric_kinds は {'/'.join(METRIC_KINDS)} のいずれかです: {', '.join(invalid)}"
            )

    allocation = data.get("traffic_allocation")
    if allocation is not None and (isinstance(allocation, bool) or not isinstance(allocation, (int, float))):
        raise YamlValidationError("traffic_allocation は数値で指定してください")


def _require_fields(data: Dict[str, Any], fields: List[str], prefix: str | None = None) -> None:
    missing = [field for field in fields if field not in data]
    if missing:
        label = f"{prefix}." if prefix else ""
        raise YamlValidationError(f"必須フィールドが不足しています: {', '.join(label + f for f in missing)}")
