"""Inspection commands for the Rebound CLI.

- ``rebound classify``: which category an error message falls into
- ``rebound decide``: dry-run a full retry decision for a message
- ``rebound categories``: the registry in match order with resolved policies

All three work on the built-in categories, or on a YAML config given with
``--config``. ``decide`` uses an in-memory attempt recorder and publishes no
events.
"""

from __future__ import annotations

import asyncio
import random
from pathlib import Path

import typer

from rebound.core.errors import ErrorClassifier, FailureInfo, JobFailureContext
from rebound.events.base import NullEventPublisher
from rebound.execution.retry_engine import RetryDecisionEngine
from rebound.state.memory import InMemoryAttemptRecorder

from ..helpers import build_registry, load_engine_config
from ..output import (
    OutcomeColors,
    add_category_row,
    console,
    create_categories_table,
    format_delay,
    format_outcome,
    print_json,
)

_CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Engine configuration YAML (built-in categories if omitted)",
    envvar="REBOUND_CONFIG",
    exists=True,
    dir_okay=False,
    readable=True,
)


def _parse_code(code: str | None) -> int | str | None:
    if code is None:
        return None
    return int(code) if code.isdigit() else code


def classify(
    message: str = typer.Argument(..., help="Error message to classify"),
    code: str | None = typer.Option(
        None, "--code", help="Error code reported with the message (e.g. 429)"
    ),
    config_file: Path | None = _CONFIG_OPTION,
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Show the category an error message is classified into."""
    config = load_engine_config(config_file, console)
    registry = build_registry(config, console)
    snapshot = registry.snapshot()

    failure = FailureInfo(message=message, code=_parse_code(code))
    category = ErrorClassifier.classify_with(snapshot, failure.classification_text)
    policy = snapshot.resolve_policy(category)

    if json_output:
        print_json({
            "category": category.name,
            "retryable": category.retryable,
            "dead_letter_after": category.dead_letter_after,
            "policy": policy.to_dict(),
        })
        return

    color = OutcomeColors.get_retryable_color(category.retryable)
    console.print(f"Category:  [cyan]{category.name}[/cyan]")
    console.print(f"Retryable: [{color}]{'yes' if category.retryable else 'no'}[/{color}]")
    if category.description:
        console.print(f"[dim]{category.description}[/dim]")
    if category.retryable:
        console.print(
            f"Policy:    {policy.max_attempts} attempts, "
            f"base {format_delay(policy.base_delay_ms)}, "
            f"cap {format_delay(policy.max_delay_ms)}, "
            f"x{policy.backoff_multiplier:g}, jitter {policy.jitter_factor:g}"
        )


def decide(
    message: str = typer.Argument(..., help="Error message of the failed job"),
    attempts: int = typer.Option(
        0, "--attempts", "-a", min=0, help="Attempts made before this failure"
    ),
    code: str | None = typer.Option(None, "--code", help="Error code reported with the message"),
    job_id: str = typer.Option("dry-run", "--job-id", help="Job identifier to report"),
    queue: str = typer.Option("default", "--queue", help="Queue name to report"),
    seed: int | None = typer.Option(None, "--seed", help="Seed the jitter source"),
    config_file: Path | None = _CONFIG_OPTION,
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """Dry-run the retry decision for a failed job."""
    config = load_engine_config(config_file, console)
    registry = build_registry(config, console)
    engine = RetryDecisionEngine(
        registry,
        recorder=InMemoryAttemptRecorder(),
        publisher=NullEventPublisher(),
        rng=random.Random(seed) if seed is not None else None,
        side_channel_timeout_seconds=config.side_channel_timeout_seconds,
        remediation_timeout_seconds=config.remediation_timeout_seconds,
        error_summary_max_chars=config.error_summary_max_chars,
    )
    context = JobFailureContext(
        job_id=job_id,
        queue_name=queue,
        attempts_made=attempts,
        error=FailureInfo(message=message, code=_parse_code(code)),
    )
    decision = asyncio.run(engine.decide(context))

    if json_output:
        print_json(decision.to_dict())
        return

    console.print(f"Decision:  {format_outcome(decision)}")
    console.print(f"Category:  [cyan]{decision.category}[/cyan]")
    if decision.should_retry:
        console.print(f"Delay:     {format_delay(decision.delay_ms)} ({decision.delay_ms} ms)")
    console.print(f"Reason:    {decision.reason}")
    if decision.custom_action:
        console.print(f"Action:    [magenta]{decision.custom_action}[/magenta]")


def categories(
    config_file: Path | None = _CONFIG_OPTION,
    json_output: bool = typer.Option(False, "--json", "-j", help="Output as JSON"),
) -> None:
    """List error categories in match order with their resolved policies."""
    config = load_engine_config(config_file, console)
    registry = build_registry(config, console)
    snapshot = registry.snapshot()

    if json_output:
        print_json({
            "default_policy": snapshot.default_policy.to_dict(),
            "categories": [
                {
                    "name": c.name,
                    "retryable": c.retryable,
                    "dead_letter_after": c.dead_letter_after,
                    "remediator": getattr(c.remediator, "name", None),
                    "patterns": c.pattern_strings,
                    "policy": snapshot.resolve_policy(c).to_dict(),
                }
                for c in snapshot.categories
            ],
        })
        return

    table = create_categories_table()
    for index, category in enumerate(snapshot.categories, start=1):
        add_category_row(table, index, category, snapshot.resolve_policy(category))
    console.print(table)
    console.print("[dim]Unmatched errors are 'unknown' and use the default policy.[/dim]")


__all__ = ["categories", "classify", "decide"]
