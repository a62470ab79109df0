"""Validate command for the Rebound CLI.

Checks an engine configuration file in three layers: YAML syntax, the
pydantic schema, and whether its categories build a valid registry (unique
names, insert targets that exist, overrides that merge into valid policies).

Exit codes:
  0: Valid
  1: Schema or registry errors
  2: Cannot validate (file unreadable, YAML unparseable)
"""

from __future__ import annotations

from pathlib import Path
from typing import NoReturn

import typer
import yaml
from pydantic import ValidationError
from rich.markup import escape

from rebound.core.config import EngineConfig
from rebound.core.errors import CategoryName, CategoryRegistry

from ..output import console, print_json


def _fail(json_output: bool, label: str, error: Exception | str, code: int) -> NoReturn:
    if json_output:
        print_json({"valid": False, "error": f"{label}: {error}"})
    else:
        console.print(f"[red]{label}:[/red] {escape(str(error))}")
    raise typer.Exit(code)


def validate(
    config_file: Path = typer.Argument(
        ...,
        help="Path to engine configuration YAML",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
    json_output: bool = typer.Option(
        False, "--json", "-j", help="Output validation results as JSON"
    ),
) -> None:
    """Validate an engine configuration file."""
    try:
        raw_yaml = config_file.read_text()
    except OSError as e:
        _fail(json_output, "Cannot read config file", e, 2)

    try:
        data = yaml.safe_load(raw_yaml)
    except yaml.YAMLError as e:
        _fail(json_output, "YAML syntax error", e, 2)

    try:
        config = EngineConfig.model_validate(data or {})
    except ValidationError as e:
        _fail(json_output, "Schema validation failed", e, 1)

    try:
        registry = CategoryRegistry.from_config(config)
    except ValueError as e:
        _fail(json_output, "Invalid category configuration", e, 1)

    builtin = {c.value for c in CategoryName} if config.include_builtin_categories else set()
    configured = [c.name for c in config.categories]
    added = [name for name in configured if name not in builtin]
    overridden = [name for name in configured if name in builtin]
    summary = {
        "valid": True,
        "categories": len(registry),
        "configured_categories": configured,
        "added_categories": added,
        "overridden_categories": overridden,
        "default_policy": registry.default_policy.to_dict(),
        "recorder": config.recorder.backend,
        "webhook": config.webhook is not None,
    }

    if json_output:
        print_json(summary)
        return

    console.print(f"\nValidating [cyan]{config_file}[/cyan]...")
    console.print()
    console.print("[green]✓[/green] YAML syntax valid")
    console.print("[green]✓[/green] Schema validation passed (Pydantic)")
    console.print("[green]✓[/green] Category registry builds")
    console.print()
    console.print("[dim]Configuration summary:[/dim]")
    console.print(
        f"  Categories: {len(registry)} "
        f"({len(added)} added, {len(overridden)} overridden)"
    )
    console.print(f"  Default max attempts: {registry.default_policy.max_attempts}")
    console.print(f"  Recorder: {config.recorder.backend}")
    console.print(f"  Webhook: {'enabled' if config.webhook else 'disabled'}")


__all__ = ["validate"]
