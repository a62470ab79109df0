"""Shared utilities for Rebound CLI commands.

- Global logging state set by the top-level options
- Engine config loading with user-facing error handling
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from rebound.core.config import EngineConfig, LogConfig
from rebound.core.errors import CategoryRegistry
from rebound.core.logging import configure_logging, configure_logging_from, get_logger

_logger = get_logger("cli")


class ErrorMessages:
    """Constants for CLI error messages."""

    CONFIG_LOAD_ERROR = "Error loading config"
    STATS_DB_NOT_FOUND = "Attempt database not found"


# =============================================================================
# Logging configuration
# =============================================================================


@dataclass
class CliLoggingConfig:
    """CLI logging options collected by the global callbacks."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"
    file: Path | None = None
    format: Literal["json", "console", "both"] = "console"
    configured: bool = False
    # Options given on the command line; these win over a config file's logging section
    explicit: set[str] = field(default_factory=set)


_log_config = CliLoggingConfig()


def get_log_level() -> str:
    return _log_config.level


def set_log_level(level: str) -> None:
    _log_config.level = level.upper()  # type: ignore[assignment]
    _log_config.explicit.add("level")


def get_log_file() -> Path | None:
    return _log_config.file


def set_log_file(path: Path | None) -> None:
    """Send logs to a file as JSON (console format switches to json).

    Rich command output is separate from structured logging and still goes
    to the console.
    """
    _log_config.file = path
    _log_config.explicit.add("file_path")
    if path and _log_config.format == "console":
        _log_config.format = "json"


def get_log_format() -> str:
    return _log_config.format


def set_log_format(fmt: str) -> None:
    _log_config.format = fmt  # type: ignore[assignment]
    _log_config.explicit.add("format")


def configure_global_logging(console: Console) -> None:
    """Configure logging from the global CLI options, once per session.

    Raises:
        typer.Exit: If the logging options are inconsistent.
    """
    if _log_config.configured:
        return

    try:
        configure_logging(
            level=_log_config.level,
            format=_log_config.format,
            file_path=_log_config.file,
        )
        _log_config.configured = True
    except (ValueError, AttributeError) as e:
        console.print(f"[red]Logging configuration error:[/red] {escape(str(e))}")
        raise typer.Exit(1) from None


def reset_logging_state() -> None:
    """Reset logging state (primarily for testing)."""
    _log_config.level = "WARNING"
    _log_config.file = None
    _log_config.format = "console"
    _log_config.configured = False
    _log_config.explicit.clear()


def apply_config_logging(log_config: LogConfig, console: Console) -> None:
    """Reconfigure logging from a config file's ``logging`` section.

    Options given on the command line override the matching config fields.
    A log file given on the command line switches console format to json,
    as it does without a config file.

    Raises:
        typer.Exit: If the merged options are inconsistent.
    """
    overrides = {
        key: value
        for key, value in (
            ("level", _log_config.level),
            ("file_path", _log_config.file),
            ("format", _log_config.format),
        )
        if key in _log_config.explicit
    }
    merged = log_config.model_copy(update=overrides)
    if "file_path" in overrides and "format" not in overrides and merged.format == "console":
        merged = merged.model_copy(update={"format": "json"})

    try:
        configure_logging_from(merged)
    except (ValueError, AttributeError) as e:
        console.print(f"[red]Logging configuration error:[/red] {escape(str(e))}")
        raise typer.Exit(1) from None
    _log_config.configured = True


# =============================================================================
# Config loading
# =============================================================================


def load_engine_config(config_file: Path | None, console: Console) -> EngineConfig:
    """Load engine configuration, or the defaults when no file is given.

    A ``logging`` section in the file reconfigures logging, under any
    options given on the command line.

    Raises:
        typer.Exit: With code 2 if the file cannot be read or parsed, or
            code 1 if its logging section cannot be applied.
    """
    if config_file is None:
        return EngineConfig()

    try:
        config = EngineConfig.from_yaml(config_file)
    except (OSError, yaml.YAMLError, ValidationError) as e:
        console.print(f"[red]{ErrorMessages.CONFIG_LOAD_ERROR}:[/red] {escape(str(e))}")
        raise typer.Exit(2) from None

    if "logging" in config.model_fields_set:
        apply_config_logging(config.logging, console)

    _logger.debug("config_loaded", path=str(config_file), categories=len(config.categories))
    return config


def build_registry(config: EngineConfig, console: Console) -> CategoryRegistry:
    """Build the category registry a config describes.

    Raises:
        typer.Exit: With code 1 if the categories do not form a valid registry.
    """
    try:
        return CategoryRegistry.from_config(config)
    except ValueError as e:
        console.print(f"[red]Invalid category configuration:[/red] {escape(str(e))}")
        raise typer.Exit(1) from None


__all__ = [
    "CliLoggingConfig",
    "apply_config_logging",
    "build_registry",
    "ErrorMessages",
    "configure_global_logging",
    "get_log_file",
    "get_log_format",
    "get_log_level",
    "load_engine_config",
    "reset_logging_state",
    "set_log_file",
    "set_log_format",
    "set_log_level",
]
