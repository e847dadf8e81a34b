"""
CLI: ``obspine db``: database management commands.
"""

from __future__ import annotations

import typer

from obspine.cli.utils import console, open_store, output_dict

app = typer.Typer(no_args_is_help=True)


@app.command()
def init(
    database: str | None = typer.Option(None, "--database", "-d", help="Database URL or SQLite path"),
) -> None:
    """Initialise database schema (create tables)."""
    with open_store(database) as store:
        store.init_schema()
        console.print(f"[green]Schema ready[/green] on {store.engine.url.render_as_string(hide_password=True)}")


@app.command()
def stats(
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show row counts for all managed tables."""
    with open_store(database) as store:
        output_dict(store.stats(), as_json=json_out, title="Table Counts")
