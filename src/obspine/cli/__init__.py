"""
CLI layer for obs-spine.

Provides a Typer application with sub-commands that delegate to
``ObservationStore``. This package handles only terminal transport:
argument parsing, coloured output, and table formatting.

Entry point::

    obspine --help
"""

from obspine.cli.app import app

__all__ = ["app"]
