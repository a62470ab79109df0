"""Rebound CLI.

Operator tooling for the retry engine, built with Typer and organized into
command modules:

    cli/
    ├── __init__.py           # This file - app assembly and global options
    ├── helpers.py            # Logging state, config loading
    ├── output.py             # Rich formatting
    └── commands/
        ├── inspect.py        # classify, decide, categories
        ├── stats.py          # stats
        └── validate.py       # validate
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer

from rebound import __version__

from . import helpers as helpers
from .commands import categories, classify, decide, stats, validate
from .helpers import (
    configure_global_logging,
    set_log_file,
    set_log_format,
    set_log_level,
)
from .output import console

# =============================================================================
# Typer app definition
# =============================================================================

app = typer.Typer(
    name="rebound",
    help="Failure classification and retry decisions for job queues",
    add_completion=False,
)


# =============================================================================
# Global option callbacks
# =============================================================================


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"Rebound v{__version__}")
        raise typer.Exit()


def log_level_callback(value: str | None) -> str | None:
    if value:
        set_log_level(value)
    return value


def log_file_callback(value: Path | None) -> Path | None:
    if value:
        set_log_file(value)
    return value


def log_format_callback(value: str | None) -> str | None:
    if value:
        set_log_format(value)
    return value


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            "-L",
            callback=log_level_callback,
            help="Logging level (DEBUG, INFO, WARNING, ERROR)",
            envvar="REBOUND_LOG_LEVEL",
        ),
    ] = None,
    log_file: Annotated[
        Path | None,
        typer.Option(
            "--log-file",
            callback=log_file_callback,
            help="Path for log file output",
            envvar="REBOUND_LOG_FILE",
        ),
    ] = None,
    log_format: Annotated[
        str | None,
        typer.Option(
            "--log-format",
            callback=log_format_callback,
            help="Log format: json, console, or both",
            envvar="REBOUND_LOG_FORMAT",
        ),
    ] = None,
) -> None:
    """Rebound - failure classification and retry decisions for job queues."""
    configure_global_logging(console)


# =============================================================================
# Command registration
# =============================================================================

app.command()(classify)
app.command()(decide)
app.command()(categories)
app.command()(stats)
app.command()(validate)


__all__ = ["app", "console", "main"]
