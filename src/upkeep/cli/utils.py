"""
CLI utility helpers: output formatting and error reporting.
"""

from __future__ import annotations

import json
from datetime import UTC, date, datetime
from typing import Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table

from upkeep.core.errors import UpkeepError, ValidationError

console = Console()
err_console = Console(stderr=True)


# ── Parsing helpers ──────────────────────────────────────────────────────


def parse_date(value: str, option: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise typer.BadParameter(f"expected YYYY-MM-DD, got {value!r}", param_hint=option) from e


def parse_now(value: str | None) -> datetime | None:
    """Parse ``--now``; naive values are taken as UTC."""
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise typer.BadParameter(f"expected an ISO timestamp, got {value!r}", param_hint="--now") from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


# ── Output helpers ───────────────────────────────────────────────────────


def output_json(payload: Any) -> None:
    console.print_json(json.dumps(payload, default=str))


def output_rows(rows: list[dict[str, Any]], *, title: str = "") -> None:
    """Render a list of dicts as a Rich table."""
    if not rows:
        console.print("[dim]No items.[/dim]")
        return
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in rows[0]:
        table.add_column(col, overflow="fold")
    for row in rows:
        table.add_row(*("" if v is None else str(v) for v in row.values()))
    console.print(table)


def output_summary(data: dict[str, Any], *, title: str = "") -> None:
    """Render a single dict as key-value pairs."""
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {v}")


def fail(error: Exception) -> NoReturn:
    """Print an error and exit with status 1."""
    if isinstance(error, ValidationError):
        err_console.print(f"[bold red]Invalid[/bold red]: {error.message}")
        for item in error.errors[1:]:
            err_console.print(f"  [red]-[/red] {item['loc']}: {item['msg']}")
    elif isinstance(error, UpkeepError):
        err_console.print(
            f"[bold red]Error[/bold red] ({error.category.value}): {error.message}"
        )
    else:
        err_console.print(f"[bold red]Error[/bold red]: {error}")
    raise typer.Exit(code=1)
