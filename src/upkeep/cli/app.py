"""
Root Typer application for the upkeep CLI.
"""

from __future__ import annotations

import typer
from typer import Typer

app = Typer(
    name="upkeep",
    help="upkeep - recurring maintenance work generation.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        from importlib.metadata import PackageNotFoundError
        from importlib.metadata import version as pkg_version

        from upkeep import __version__

        try:
            v = pkg_version("upkeep-core")
        except PackageNotFoundError:
            v = __version__
        typer.echo(f"upkeep {v}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(  # noqa: UP007
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """upkeep CLI - preview patterns, validate rules, run ticks."""


# ── Sub-command registration ─────────────────────────────────────────────

from upkeep.cli.generate import preview, tick  # noqa: E402
from upkeep.cli.rules import app as rules_app  # noqa: E402

app.command("preview")(preview)
app.command("tick")(tick)
app.add_typer(rules_app, name="rules", help="Rule definition checks.")
