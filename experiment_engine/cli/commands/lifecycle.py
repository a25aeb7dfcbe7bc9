"""
状態遷移コマンド実装（start / pause / resume / stop / cancel / archive）
"""

import sys

import click

from experiment_engine.errors import ExperimentError


# コマンド名 -> (コントローラーのメソッド名, 完了メッセージ)
_TRANSITION_COMMANDS = {
    "start": ("start_experiment", "実験を開始しました"),
    "pause": ("pause_experiment", "実験を一時停止しました"),
    "resume": ("resume_experiment", "実験を再開しました"),
    "stop": ("stop_experiment", "実験を完了しました"),
    "cancel": ("cancel_experiment", "実験を中止しました"),
}


def lifecycle_commands(experiment_group, pass_context):
    """状態遷移コマンドを experiment グループに追加"""

    for name, (method, message) in _TRANSITION_COMMANDS.items():
        experiment_group.add_command(_make_transition_command(name, method, message, pass_context))

    @experiment_group.command()
    @click.argument('experiment_id')
    @click.option('--yes', is_flag=True, help='確認を省略')
    @pass_context
    def archive(ctx, experiment_id: str, yes: bool):
        """終了した実験をレジストリから削除する"""
        ctx.initialize()
        if not yes and not click.confirm(f"実験 {experiment_id} をアーカイブします。続行しますか？"):
            click.echo("アーカイブをキャンセルしました")
            return
        try:
            ctx.controller.archive_experiment(experiment_id)
        except ExperimentError as e:
            click.echo(f"[エラー] {e}", err=True)
            sys.exit(2)
        except Exception as e:
            click.echo(f"[エラー] アーカイブに失敗しました: {e}", err=True)
            sys.exit(1)
        click.echo(f"実験をアーカイブしました: {experiment_id}")


def _make_transition_command(name: str, method: str, message: str, pass_context):
    @click.command(name=name, help=f"実験を {name} する")
    @click.argument('experiment_id')
    @pass_context
    def transition(ctx, experiment_id: str):
        ctx.initialize()
        try:
            updated = getattr(ctx.controller, method)(experiment_id)
        except ExperimentError as e:
            click.echo(f"[エラー] {e}", err=True)
            sys.exit(2)
        except Exception as e:
            click.echo(f"[エラー] 状態遷移に失敗しました: {e}", err=True)
            sys.exit(1)

        click.echo(f"{message}: {experiment_id} ({updated.status.value})")
        if name == "stop":
            winner = updated.winner_variant_id or "なし"
            click.echo(f"  勝者: {winner} (有意: {'はい' if updated.is_significant else 'いいえ'})")

    return transition
