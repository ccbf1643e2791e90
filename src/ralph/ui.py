from __future__ import annotations

from collections.abc import Sequence

from rich.console import Console
from rich.table import Table
from rich.text import Text


def render_table(
    console: Console,
    *,
    headers: Sequence[str],
    rows: Sequence[Sequence[object]],
    title: str | None = None,
) -> None:
    table = Table(title=title)
    for header in headers:
        table.add_column(str(header))
    for row in rows:
        table.add_row(*(v if isinstance(v, Text) else str(v if v is not None else "") for v in row))
    console.print(table)


def info(console: Console, message: str) -> None:
    console.print(Text(message, style="cyan"))


def warn(console: Console, message: str) -> None:
    console.print(Text(message, style="yellow"))


def error(console: Console, message: str) -> None:
    console.print(Text(message, style="red"))


def bullet_list(console: Console, items: Sequence[str]) -> None:
    for item in items:
        console.print(f"  • {item}", markup=False)
