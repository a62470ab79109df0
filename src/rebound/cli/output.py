"""Rich output formatting for the Rebound CLI.

Shared console, color schemes for decision outcomes and table builders used
by the command modules.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.table import Table

from rebound.core.errors import DecisionOutcome

if TYPE_CHECKING:
    from rebound.core.errors import ErrorCategory, RetryDecision
    from rebound.core.policy import RetryPolicy
    from rebound.state import RetryStats

# =============================================================================
# Shared console instance
# =============================================================================

console = Console()


# =============================================================================
# Color schemes
# =============================================================================


class OutcomeColors:
    """Color mappings for decision outcomes and retryability."""

    OUTCOME: dict[DecisionOutcome, str] = {
        DecisionOutcome.RETRY: "green",
        DecisionOutcome.DEAD_LETTER: "red",
        DecisionOutcome.ABANDON: "yellow",
    }

    @classmethod
    def get_outcome_color(cls, outcome: DecisionOutcome) -> str:
        return cls.OUTCOME.get(outcome, "white")

    @staticmethod
    def get_retryable_color(retryable: bool) -> str:
        return "green" if retryable else "red"


# =============================================================================
# Formatters
# =============================================================================


def format_delay(delay_ms: int) -> str:
    """Format a delay in milliseconds for display.

    Examples:
        >>> format_delay(850)
        '850ms'
        >>> format_delay(2500)
        '2.5s'
        >>> format_delay(300000)
        '5m 0s'
    """
    if delay_ms < 1000:
        return f"{delay_ms}ms"
    seconds = delay_ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    return f"{minutes}m {int(seconds % 60)}s"


def format_outcome(decision: RetryDecision) -> str:
    color = OutcomeColors.get_outcome_color(decision.outcome)
    return f"[{color}]{decision.outcome.value.upper()}[/{color}]"


def print_json(data: Any) -> None:
    """Print data as indented JSON, without markup or wrapping."""
    console.print(
        json.dumps(data, indent=2, default=str),
        markup=False,
        highlight=False,
        soft_wrap=True,
    )


# =============================================================================
# Table builders
# =============================================================================


def create_categories_table(title: str = "Error Categories") -> Table:
    """Create a styled table for the category registry, in match order."""
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("#", justify="right", style="dim", width=3)
    table.add_column("Category", style="cyan", no_wrap=True)
    table.add_column("Retryable", width=9)
    table.add_column("Max", justify="right", width=4)
    table.add_column("Base", justify="right")
    table.add_column("Cap", justify="right")
    table.add_column("Mult", justify="right", width=5)
    table.add_column("DLQ after", justify="right", width=9)
    table.add_column("Remediator", style="dim")
    table.add_column("Patterns", justify="right", width=8)
    return table


def add_category_row(
    table: Table, index: int, category: ErrorCategory, policy: RetryPolicy
) -> None:
    color = OutcomeColors.get_retryable_color(category.retryable)
    remediator = getattr(category.remediator, "name", None) if category.remediator else None
    table.add_row(
        str(index),
        category.name,
        f"[{color}]{'yes' if category.retryable else 'no'}[/{color}]",
        str(policy.max_attempts),
        format_delay(policy.base_delay_ms),
        format_delay(policy.max_delay_ms),
        f"{policy.backoff_multiplier:g}",
        str(category.dead_letter_after) if category.dead_letter_after else "-",
        remediator or "-",
        str(len(category.patterns)),
    )


def create_stats_table(stats: RetryStats) -> Table:
    """Create a table of per-category retry statistics."""
    table = Table(
        title=f"Retries in the last {stats.window_hours:g}h",
        show_header=True,
        header_style="bold",
    )
    table.add_column("Category", style="cyan", no_wrap=True)
    table.add_column("Jobs", justify="right")
    table.add_column("Avg attempts", justify="right")
    for entry in stats.categories:
        table.add_row(entry.category, str(entry.count), f"{entry.average_attempts:.2f}")
    return table


__all__ = [
    "OutcomeColors",
    "add_category_row",
    "console",
    "create_categories_table",
    "create_stats_table",
    "format_delay",
    "format_outcome",
    "print_json",
]
