import json

import pytest
from click.testing import CliRunner

from experiment_engine.clock import ManualClock
from experiment_engine.cli.main import experiment as cli_experiment
from experiment_engine.lifecycle.controller import ExperimentController
from experiment_engine.models.experiment import ExperimentStatus


VALID_YAML = """
experiment_id: exp1
name: ranking v2
description: 協調フィルタリングと two-tower の比較
target_metric: click
guardrail_metrics: [revenue]
metric_kinds:
  revenue: continuous
owner: search-team
variants:
  - variant_id: A
    weight: 50
    is_control: true
    algorithm: collaborative
  - variant_id: B
    weight: 50
    algorithm: two-tower
    config:
      model: two_tower_v2
"""

BAD_WEIGHTS_YAML = """
experiment_id: exp2
name: bad weights
target_metric: click
variants:
  - {variant_id: A, weight: 60}
  - {variant_id: B, weight: 30}
  - {variant_id: C, weight: 5}
"""


@pytest.fixture
def controller():
    ctrl = ExperimentController(clock=ManualClock())
    yield ctrl
    ctrl.close()


@pytest.fixture
def runner(monkeypatch, controller):
    def _init(self):
        self.db = None
        self.config = controller.config
        self.controller = controller
        self._initialized = True

    monkeypatch.setattr("experiment_engine.cli.main.CLIContext.initialize", _init, raising=False)
    return CliRunner()


def _write(tmp_path, text, name="experiment.yaml"):
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_version(runner):
    result = runner.invoke(cli_experiment, ["--version"])
    assert result.exit_code == 0
    assert "experiment" in result.output


def test_validate_ok(runner, tmp_path, controller):
    result = runner.invoke(cli_experiment, ["validate", _write(tmp_path, VALID_YAML)])
    assert result.exit_code == 0
    assert "実験定義は有効です" in result.output
    assert "A: 50% (control)" in result.output
    # validate は保存しない
    assert controller.list_experiments() == []


def test_validate_bad_weights(runner, tmp_path):
    result = runner.invoke(cli_experiment, ["validate", _write(tmp_path, BAD_WEIGHTS_YAML)])
    assert result.exit_code == 2
    assert "variant weights must sum to 100, got 95" in result.output


INFINITE_WEIGHT_YAML = """
experiment_id: exp3
name: infinite weight
target_metric: click
variants:
  - {variant_id: A, weight: .inf}
  - {variant_id: B, weight: 50}
"""


def test_create_with_infinite_weight(runner, tmp_path, controller):
    result = runner.invoke(cli_experiment, ["create", _write(tmp_path, INFINITE_WEIGHT_YAML)])
    assert result.exit_code == 2
    assert "finite number" in result.output
    assert controller.list_experiments() == []


def test_validate_missing_fields(runner, tmp_path):
    result = runner.invoke(cli_experiment, ["validate", _write(tmp_path, "name: only name\n")])
    assert result.exit_code == 2
    assert "必須フィールドが不足しています" in result.output


def test_create_and_start(runner, tmp_path, controller):
    result = runner.invoke(cli_experiment, ["create", _write(tmp_path, VALID_YAML), "--start"])
    assert result.exit_code == 0
    assert "実験を作成しました: exp1" in result.output
    assert controller.get_experiment("exp1").status == ExperimentStatus.RUNNING


def test_create_duplicate(runner, tmp_path):
    path = _write(tmp_path, VALID_YAML)
    assert runner.invoke(cli_experiment, ["create", path]).exit_code == 0
    result = runner.invoke(cli_experiment, ["create", path])
    assert result.exit_code == 2
    assert "already exists" in result.output


def test_list_json_output(runner, tmp_path):
    runner.invoke(cli_experiment, ["create", _write(tmp_path, VALID_YAML)])

    result = runner.invoke(cli_experiment, ["list", "--format", "json", "--status", "all"])
    assert result.exit_code == 0

    payload = json.loads(result.output)
    assert payload[0]["experiment_id"] == "exp1"
    assert payload[0]["status"] == "draft"


def test_list_filters(runner, tmp_path):
    runner.invoke(cli_experiment, ["create", _write(tmp_path, VALID_YAML)])

    result = runner.invoke(cli_experiment, ["list", "--status", "running"])
    assert result.exit_code == 0
    assert "該当する実験はありません" in result.output

    result = runner.invoke(cli_experiment, ["list", "--search", "TWO-TOWER"])
    assert "exp1" in result.output


def test_show(runner, tmp_path):
    runner.invoke(cli_experiment, ["create", _write(tmp_path, VALID_YAML)])

    result = runner.invoke(cli_experiment, ["show", "exp1"])
    assert result.exit_code == 0
    assert "状態: draft" in result.output
    assert "ガードレール: revenue" in result.output
    assert "two-tower" in result.output


def test_show_missing(runner):
    result = runner.invoke(cli_experiment, ["show", "nope"])
    assert result.exit_code == 2
    assert "Experiment nope not found" in result.output


def test_invalid_transition(runner, tmp_path):
    runner.invoke(cli_experiment, ["create", _write(tmp_path, VALID_YAML)])

    result = runner.invoke(cli_experiment, ["pause", "exp1"])
    assert result.exit_code == 2
    assert "Cannot pause experiment in 'draft' status" in result.output


def test_lifecycle_commands(runner, tmp_path, controller):
    runner.invoke(cli_experiment, ["create", _write(tmp_path, VALID_YAML)])

    for command, status in [
        ("start", "running"),
        ("pause", "paused"),
        ("resume", "running"),
    ]:
        result = runner.invoke(cli_experiment, [command, "exp1"])
        assert result.exit_code == 0, result.output
        assert f"({status})" in result.output

    result = runner.invoke(cli_experiment, ["stop", "exp1"])
    assert result.exit_code == 0
    assert "勝者: なし" in result.output
    assert controller.get_experiment("exp1").status == ExperimentStatus.COMPLETED

    result = runner.invoke(cli_experiment, ["archive", "exp1", "--yes"])
    assert result.exit_code == 0
    assert "実験をアーカイブしました" in result.output


def test_archive_running_is_rejected(runner, tmp_path):
    runner.invoke(cli_experiment, ["create", _write(tmp_path, VALID_YAML), "--start"])
    result = runner.invoke(cli_experiment, ["archive", "exp1", "--yes"])
    assert result.exit_code == 2


def test_evaluate(runner, controller):
    controller.create_experiment({
        "experiment_id": "exp1",
        "name": "ranking v2",
        "target_metric": "click",
        "variants": [{"variant_id": "A", "weight": 50}, {"variant_id": "B", "weight": 50}],
    })
    controller.start_experiment("exp1")
    groups = {"A": [], "B": []}
    for i in range(1, 1001):
        groups[controller.assign("exp1", f"u{i}").variant_id].append(f"u{i}")
    for subject_id in groups["A"][:120]:
        controller.record_outcome("exp1", subject_id, "click")
    for subject_id in groups["B"][:150]:
        controller.record_outcome("exp1", subject_id, "click")

    result = runner.invoke(cli_experiment, ["evaluate", "exp1", "--control", "A", "--format", "json"])
    assert result.exit_code == 0, result.output

    payload = json.loads(result.output)
    assert payload["winner_variant_id"] == "B"
    assert payload["status"] == "significant"
    assert payload["total_participants"] == 1000


def test_evaluate_table(runner, controller):
    controller.create_experiment({
        "experiment_id": "exp1",
        "name": "ranking v2",
        "target_metric": "click",
        "variants": [{"variant_id": "A", "weight": 50}, {"variant_id": "B", "weight": 50}],
    })
    controller.start_experiment("exp1")

    result = runner.invoke(cli_experiment, ["evaluate", "exp1"])
    assert result.exit_code == 0
    assert "判定: insufficient_data" in result.output
    assert "No data collected yet" in result.output


def test_evaluate_unknown_metric(runner, controller):
    controller.create_experiment({
        "experiment_id": "exp1",
        "name": "ranking v2",
        "target_metric": "click",
        "variants": [{"variant_id": "A", "weight": 50}, {"variant_id": "B", "weight": 50}],
    })
    result = runner.invoke(cli_experiment, ["evaluate", "exp1", "--metric", "bogus"])
    assert result.exit_code == 2


def test_init_without_database_url(runner, monkeypatch):
    monkeypatch.delenv("EXPERIMENT_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    result = runner.invoke(cli_experiment, ["init", "--check-only"])
    assert result.exit_code == 2
    assert "DATABASE_URL" in result.output
