"""CLI 出力ヘルパー（表・JSON・数値整形）"""

from __future__ import annotations

import json
from numbers import Number
from typing import Any, Iterable, List, Optional, Sequence

import click


def _is_numeric(cell: Any) -> bool:
    return isinstance(cell, Number) and not isinstance(cell, bool)


def format_table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> str:
    """列幅をそろえた表を作る

    数値セルは右寄せ、それ以外は左寄せ。
    """
    raw_rows = [list(row) for row in rows]
    column_count = max([len(headers)] + [len(row) for row in raw_rows])
    header_cells = [str(h) for h in headers] + [""] * (column_count - len(headers))

    widths = [len(h) for h in header_cells]
    for row in raw_rows:
        for idx, cell in enumerate(row):
            widths[idx] = max(widths[idx], len(str(cell)))

    def render(row: Sequence[Any]) -> str:
        cells = []
        for idx, cell in enumerate(row):
            text = str(cell)
            cells.append(text.rjust(widths[idx]) if _is_numeric(cell) else text.ljust(widths[idx]))
        return " ".join(cells).rstrip()

    lines: List[str] = [render(header_cells), "-" * (sum(widths) + column_count - 1)]
    lines.extend(render(row) for row in raw_rows)
    return "\n".join(lines)


def echo_table(headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> None:
    click.echo(format_table(headers, rows))


def echo_json(data: Any) -> None:
    """JSON を出力（日本語はエスケープしない。datetime は文字列化）"""
    click.echo(json.dumps(data, ensure_ascii=False, indent=2, default=str))


def fmt_rate(value: Optional[float]) -> str:
    """比率をパーセント表記に（欠損は "-"）"""
    return "-" if value is None else f"{value * 100:.2f}%"


def fmt_number(value: Optional[float], digits: int = 4) -> str:
    return "-" if value is None else f"{value:.{digits}f}"


def fmt_lift(value: Optional[float]) -> str:
    return "-" if value is None else f"{value:+.2f}%"
