"""
実験定義コマンド実装（validate / create）
"""

import sys

import click

from experiment_engine.errors import ExperimentError, ValidationError
from experiment_engine.models.experiment import Experiment
from experiment_engine.cli.utils.yaml_loader import (
    YamlValidationError,
    load_yaml,
    validate_experiment_definition,
)


def definition_commands(experiment_group, pass_context):
    """validate / create コマンドを experiment グループに追加"""

    @experiment_group.command()
    @click.argument('file', type=click.Path(exists=True, dir_okay=False))
    def validate(file: str):
        """実験定義YAMLを検証する（保存はしない）"""
        try:
            data = load_yaml(file)
            validate_experiment_definition(data)
            definition = Experiment.from_dict(data)
            definition.validate()
        except YamlValidationError as e:
            click.echo(f"[エラー] YAML検証に失敗しました: {e}", err=True)
            sys.exit(2)
        except ValidationError as e:
            _echo_problems(e)
            sys.exit(2)

        click.echo(f"✓ 実験定義は有効です: {definition.name}")
        for variant in definition.variants:
            marker = " (control)" if variant.is_control else ""
            click.echo(f"  {variant.variant_id}: {variant.weight:g}%{marker}")

    @experiment_group.command()
    @click.argument('file', type=click.Path(exists=True, dir_okay=False))
    @click.option('--start', 'start_now', is_flag=True, help='作成後すぐに開始する')
    @pass_context
    def create(ctx, file: str, start_now: bool):
        """実験定義YAMLから実験を作成する"""
        try:
            data = load_yaml(file)
            validate_experiment_definition(data)
        except YamlValidationError as e:
            click.echo(f"[エラー] YAML検証に失敗しました: {e}", err=True)
            sys.exit(2)

        ctx.initialize()

        try:
            experiment_id = ctx.controller.create_experiment(data)
            click.echo(f"実験を作成しました: {experiment_id}")
            if start_now:
                ctx.controller.start_experiment(experiment_id)
                click.echo(f"実験を開始しました: {experiment_id}")
        except ValidationError as e:
            _echo_problems(e)
            sys.exit(2)
        except ExperimentError as e:
            click.echo(f"[エラー] {e}", err=True)
            sys.exit(2)
        except Exception as e:
            click.echo(f"[エラー] 実験の作成に失敗しました: {e}", err=True)
            sys.exit(1)


def _echo_problems(error: ValidationError) -> None:
    click.echo("[エラー] 実験定義が不正です:", err=True)
    for problem in error.problems:
        click.echo(f"  - {problem}", err=True)
