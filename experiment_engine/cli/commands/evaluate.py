"""
評価コマンド実装
"""

import sys
from typing import Optional

import click

from experiment_engine.errors import ExperimentError
from experiment_engine.cli.utils.output import echo_json, echo_table, fmt_lift, fmt_number, fmt_rate


def evaluate_command(experiment_group, pass_context):
    """evaluate コマンドを experiment グループに追加"""

    @experiment_group.command()
    @click.argument('experiment_id')
    @click.option('--control', 'control_variant_id', help='比較基準のバリアント（省略時はコントロール）')
    @click.option('--metric', help='評価するメトリクス（省略時は target_metric）')
    @click.option('--timeout', type=float, help='評価の打ち切り時間（秒）')
    @click.option('--format', 'output_format', type=click.Choice(['table', 'json']), default='table', help='出力形式')
    @pass_context
    def evaluate(ctx, experiment_id: str, control_variant_id: Optional[str], metric: Optional[str],
                 timeout: Optional[float], output_format: str):
        """イベントストアから集計を再構築して実験を評価する"""
        ctx.initialize()

        try:
            ctx.controller.restore_metrics(experiment_id)
            report = ctx.controller.evaluate(
                experiment_id,
                control_variant_id=control_variant_id,
                metric=metric,
                timeout_seconds=timeout,
            )
        except ExperimentError as e:
            click.echo(f"[エラー] {e}", err=True)
            sys.exit(2)
        except Exception as e:
            click.echo(f"[エラー] 評価に失敗しました: {e}", err=True)
            sys.exit(1)

        if output_format == 'json':
            echo_json(report.to_dict())
            return

        click.echo(
            f"実験: {report.experiment_id}  メトリクス: {report.metric} ({report.metric_kind.value})"
        )
        click.echo(
            f"参加者: {report.total_participants}  全体コンバージョン率: "
            f"{fmt_rate(report.overall_conversion_rate)}"
        )
        click.echo(f"判定: {report.status.value}  勝者: {report.winner_variant_id or 'なし'}\n")

        ci_label = f"{report.interval_level * 100:g}%CI"
        headers = ["バリアント", "n", "イベント", "率", "平均", "リフト", "p値", ci_label, "状態"]
        rows = []
        for result in report.results:
            interval = result.confidence_interval
            rows.append([
                result.variant_id + (" *" if result.is_control else ""),
                result.sample_size,
                result.event_count,
                fmt_rate(result.conversion_rate),
                fmt_number(result.mean),
                fmt_lift(result.lift_percent),
                fmt_number(result.p_value),
                f"[{interval[0]:+.4f}, {interval[1]:+.4f}]" if interval else "-",
                result.status.value,
            ])
        echo_table(headers, rows)

        if report.recommendations:
            click.echo("\n推奨:")
            for recommendation in report.recommendations:
                click.echo(f"  - {recommendation}")
