"""
Root Typer application for the obs-spine CLI.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as pkg_version

import typer
from typer import Typer

app = Typer(
    name="obspine",
    help="obs-spine: sensor observation store.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# ── Version callback ─────────────────────────────────────────────────────


def _version_callback(value: bool) -> None:
    if value:
        try:
            v = pkg_version("obs-spine")
        except PackageNotFoundError:
            from obspine import __version__ as v
        typer.echo(f"obspine {v}")
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
    """obs-spine CLI: inspect and maintain an observation store."""


# ── Sub-command registration ─────────────────────────────────────────────

from obspine.cli.db import app as db_app  # noqa: E402
from obspine.cli.obs import app as obs_app  # noqa: E402

app.add_typer(db_app, name="db", help="Database operations.")
app.add_typer(obs_app, name="obs", help="Procedures, phenomena, results and removals.")
