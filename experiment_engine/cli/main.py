#!/usr/bin/env python3
"""
実験エンジン CLI メインエントリーポイント

実験の作成・状態遷移・評価を Python コードを書かずに操作するための CLI インターフェース。
"""

import logging
import sys
from typing import Optional

import click

from experiment_engine import __version__
from experiment_engine.config.engine_config import STATUS_DESCRIPTIONS, EngineConfig
from experiment_engine.db.connection import DatabaseConnection, schema_table_names
from experiment_engine.errors import ExperimentNotFoundError
from experiment_engine.lifecycle.controller import ExperimentController
from experiment_engine.persistence.event_store import PostgresEventStore
from experiment_engine.registry.experiment_registry import ExperimentFilter, ExperimentRegistry
from experiment_engine.registry.repository import PostgresExperimentRepository
from experiment_engine.cli.utils.output import echo_json, echo_table

# コマンドモジュールインポート
from experiment_engine.cli.commands.definition import definition_commands
from experiment_engine.cli.commands.lifecycle import lifecycle_commands
from experiment_engine.cli.commands.evaluate import evaluate_command


class CLIContext:
    """CLI共通コンテキスト（依存関係を保持）"""

    def __init__(self):
        self.db: Optional[DatabaseConnection] = None
        self.config: Optional[EngineConfig] = None
        self.controller: Optional[ExperimentController] = None
        self._initialized = False

    def connect(self) -> DatabaseConnection:
        """データベース接続のみを用意（init コマンド用）"""
        if self.db is None:
            self.db = DatabaseConnection()
        return self.db

    def initialize(self):
        """遅延初期化（必要時に呼び出される）"""
        if self._initialized:
            return

        try:
            db = self.connect()
            self.config = EngineConfig()
            self.config.validate()

            registry = ExperimentRegistry(PostgresExperimentRepository(db))
            self.controller = ExperimentController(
                registry=registry,
                config=self.config,
                event_store=PostgresEventStore(db),
            )
            self._initialized = True

        except Exception as e:
            click.echo(f"[初期化エラー] システムの初期化に失敗しました: {e}", err=True)
            sys.exit(1)

    def close(self) -> None:
        if self.controller is not None:
            self.controller.close()
        if self.db is not None:
            self.db.close()


# click の pass_context でCLIContextを共有
pass_context = click.make_pass_decorator(CLIContext, ensure=True)


@click.group()
@click.version_option(version=__version__, prog_name="experiment")
@click.option(
    '--log-level',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
    default='WARNING',
    help='ログレベル',
)
@pass_context
def experiment(ctx: CLIContext, log_level: str):
    """
    実験エンジン CLI

    A/Bテスト実験の作成・開始・停止・評価をターミナルから行えます。
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    click.get_current_context().call_on_close(ctx.close)


@experiment.command()
@click.option('--check-only', is_flag=True, help='接続確認のみ（変更なし）')
@pass_context
def init(ctx: CLIContext, check_only: bool):
    """データベースを確認し、スキーマを適用する"""
    click.echo("データベースを確認中...")

    try:
        db = ctx.connect()
        if not db.health_check():
            click.echo("[エラー] データベースに接続できません", err=True)
            sys.exit(1)
        click.echo(f"✓ データベースに接続しました (PostgreSQL {db.server_version()})")

        table_names = schema_table_names()
        missing_tables = [t for t in table_names if t not in db.existing_tables()]
        if missing_tables:
            click.echo(f"⚠ 必要なテーブルが不足しています: {', '.join(missing_tables)}", err=True)
        else:
            click.echo("✓ 必要なテーブルが存在します")

        if check_only:
            click.echo("\nチェックのみ完了しました。")
            return

        db.apply_schema()
        click.echo("✓ スキーマを適用しました")
        click.echo("\nシステムは使用可能です。")

    except ValueError as e:
        click.echo(f"[エラー] {e}", err=True)
        sys.exit(2)
    except Exception as e:
        click.echo(f"[エラー] 初期化に失敗しました: {e}", err=True)
        sys.exit(1)


@experiment.command(name="list")
@click.option('--status', type=click.Choice(sorted(STATUS_DESCRIPTIONS) + ['all']), default='all', help='ステータスでフィルタ')
@click.option('--owner', help='オーナーでフィルタ')
@click.option('--search', help='名前・説明・アルゴリズムの部分一致')
@click.option('--limit', type=int, default=100, show_default=True, help='最大件数')
@click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table', help='出力形式')
@pass_context
def list_experiments(ctx: CLIContext, status: str, owner: Optional[str], search: Optional[str],
                     limit: int, output_format: str):
    """実験の一覧を表示する"""
    ctx.initialize()

    try:
        criteria = ExperimentFilter.build(
            status=None if status == 'all' else status,
            owner=owner,
            search=search,
            limit=limit,
        )
        experiments = ctx.controller.list_experiments(criteria)

        if output_format == 'json':
            echo_json([e.to_dict() for e in experiments])
            return

        if not experiments:
            click.echo("該当する実験はありません。")
            click.echo("\nヒント: experiment create <definition.yaml> で実験を作成してください")
            return

        click.echo(f"実験 ({len(experiments)}件):\n")
        headers = ["ID", "名前", "状態", "オーナー", "バリアント", "作成日時"]
        rows = [
            [
                e.experiment_id,
                e.name[:28],
                e.status.value,
                e.owner or "-",
                ",".join(f"{v.variant_id}:{v.weight:g}" for v in e.variants),
                e.created_at.strftime("%Y-%m-%d %H:%M") if e.created_at else "-",
            ]
            for e in experiments
        ]
        echo_table(headers, rows)

    except Exception as e:
        click.echo(f"[エラー] 実験一覧の取得に失敗しました: {e}", err=True)
        sys.exit(1)


@experiment.command()
@click.argument('experiment_id')
@click.option('--format', 'output_format', type=click.Choice(['text', 'json']), default='text', help='出力形式')
@pass_context
def show(ctx: CLIContext, experiment_id: str, output_format: str):
    """実験の詳細を表示する"""
    ctx.initialize()

    try:
        exp = ctx.controller.get_experiment(experiment_id)
    except ExperimentNotFoundError as e:
        click.echo(f"[エラー] {e}", err=True)
        sys.exit(2)
    except Exception as e:
        click.echo(f"[エラー] 実験の取得に失敗しました: {e}", err=True)
        sys.exit(1)

    if output_format == 'json':
        echo_json(exp.to_dict())
        return

    click.echo(f"実験: {exp.experiment_id}")
    click.echo(f"  名前: {exp.name}")
    if exp.description:
        click.echo(f"  説明: {exp.description}")
    click.echo(f"  状態: {exp.status.value} ({STATUS_DESCRIPTIONS[exp.status.value]})")
    click.echo(f"  対象メトリクス: {exp.target_metric} ({exp.metric_kind(exp.target_metric).value})")
    if exp.guardrail_metrics:
        click.echo(f"  ガードレール: {', '.join(exp.guardrail_metrics)}")
    click.echo(f"  トラフィック: {exp.traffic_allocation:g}%")
    if exp.owner:
        click.echo(f"  オーナー: {exp.owner}")
    if exp.started_at:
        click.echo(f"  開始: {exp.started_at.isoformat()}")
    if exp.ended_at:
        click.echo(f"  終了: {exp.ended_at.isoformat()}")
    if exp.status.value == "completed":
        click.echo(f"  勝者: {exp.winner_variant_id or 'なし'} (有意: {'はい' if exp.is_significant else 'いいえ'})")

    click.echo("")
    headers = ["バリアント", "名前", "重み", "コントロール", "アルゴリズム"]
    rows = [
        [v.variant_id, v.name, f"{v.weight:g}", "✓" if v.is_control else "", v.algorithm or "-"]
        for v in exp.variants
    ]
    echo_table(headers, rows)


# 各コマンドを追加
definition_commands(experiment, pass_context)
lifecycle_commands(experiment, pass_context)
evaluate_command(experiment, pass_context)


if __name__ == '__main__':
    experiment()
