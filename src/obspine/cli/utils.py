"""
CLI utility helpers: output formatting and store management.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from obspine.core.errors import ObsSpineError
from obspine.core.logging import configure_logging
from obspine.core.settings import get_settings
from obspine.om.store import ObservationStore

console = Console()
err_console = Console(stderr=True)


# ── Store helper ─────────────────────────────────────────────────────────


def database_url(database: str | None) -> str | None:
    """Accept a SQLAlchemy URL or a plain SQLite file path."""
    if database is None or "://" in database:
        return database
    return f"sqlite:///{database}"


@contextmanager
def open_store(database: str | None = None) -> Iterator[ObservationStore]:
    """Store on ``--database`` (default ``OBSPINE_DATABASE_URL``), errors rendered and exit 1."""
    url = database_url(database)
    try:
        settings = get_settings(database_url=url) if url else get_settings()
    except ObsSpineError as exc:
        err_console.print(f"[bold red]Error[/bold red] ({exc.category.value}): {exc.message}")
        raise typer.Exit(code=1) from exc
    configure_logging(level=settings.log_level, json_format=settings.log_format == "json", service="obspine-cli")
    store = ObservationStore(settings)
    try:
        store.init_schema()
        yield store
    except ObsSpineError as exc:
        err_console.print(f"[bold red]Error[/bold red] ({exc.category.value}): {exc.message}")
        raise typer.Exit(code=1) from exc
    finally:
        store.close()


# ── Output helpers ───────────────────────────────────────────────────────


def output_items(items: list[dict[str, Any]], *, as_json: bool = False, title: str = "") -> None:
    """Render a list of flat dicts as a Rich table or JSON."""
    if as_json:
        console.print_json(json.dumps(items, default=str))
        return
    if not items:
        console.print("[dim]No items.[/dim]")
        return
    _print_table(items, title=title)


def output_dict(data: dict[str, Any], *, as_json: bool = False, title: str = "") -> None:
    if as_json:
        console.print_json(json.dumps(data, default=str))
        return
    _print_dict(data, title=title)


# ── Private helpers ──────────────────────────────────────────────────────


def _print_table(items: list[dict[str, Any]], *, title: str = "") -> None:
    table = Table(title=title or None, show_lines=False, pad_edge=False)
    for col in items[0]:
        table.add_column(col, overflow="fold")
    for item in items:
        table.add_row(*("" if v is None else str(v) for v in item.values()))
    console.print(table)


def _print_dict(data: dict[str, Any], *, title: str = "") -> None:
    if title:
        console.print(f"[bold]{title}[/bold]")
    for k, v in data.items():
        console.print(f"  [cyan]{k}[/cyan]: {v}")
