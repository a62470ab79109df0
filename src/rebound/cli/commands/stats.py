"""Stats command for the Rebound CLI.

Reads per-category retry statistics from a SQLite attempt database written by
a running engine.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from rebound.core.constants import STATS_DEFAULT_WINDOW_HOURS
from rebound.state import RetryStats, SQLiteAttemptRecorder

from ..helpers import ErrorMessages
from ..output import console, create_stats_table, print_json


def stats(
    db_path: Path = typer.Option(
        Path("./state/attempts.db"),
        "--db",
        help="SQLite attempt database",
        envvar="REBOUND_DB",
    ),
    hours: float = typer.Option(
        float(STATS_DEFAULT_WINDOW_HOURS),
        "--hours",
        "-H",
        min=0,
        help="Only count records updated within this many hours",
    ),
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Show retry statistics per error category."""
    if not db_path.exists():
        console.print(f"[red]{ErrorMessages.STATS_DB_NOT_FOUND}:[/red] {db_path}")
        raise typer.Exit(1)

    result = asyncio.run(_load_stats(db_path, hours))

    if json_output:
        print_json(result.to_dict())
        return

    if result.total_records == 0:
        console.print(f"[dim]No attempt records in the last {hours:g}h.[/dim]")
        return
    console.print(create_stats_table(result))
    console.print(f"Total: [bold]{result.total_records}[/bold] job runs")


async def _load_stats(db_path: Path, hours: float) -> RetryStats:
    async with SQLiteAttemptRecorder(db_path) as recorder:
        return await recorder.get_retry_stats(hours)


__all__ = ["stats"]
