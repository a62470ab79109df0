"""Structured logging for Rebound.

structlog on top of stdlib logging. Every entry carries the emitting
component, and entries written while a JobContext is active also carry the
failed job's identity (job_id, queue_name, attempts_made, run_id). Output is
human-readable console, JSON, or both, with optional size-rotated files.

Example:
    configure_logging(level="DEBUG", format="json")
    logger = get_logger("retry_engine")

    with with_context(JobContext(job_id="job-17", queue_name="codegen")):
        logger.info("error_classified", category="rate_limit")
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

if TYPE_CHECKING:
    from rebound.core.config import LogConfig

# Keys containing any of these (case-insensitive) are redacted
SENSITIVE_PATTERNS = frozenset({
    "api_key",
    "apikey",
    "api-key",
    "token",
    "secret",
    "password",
    "credential",
    "bearer",
    "authorization",
})

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]
LogFormat = Literal["json", "console", "both"]


@dataclass(frozen=True)
class JobContext:
    """Immutable context for correlating log entries of one failure evaluation.

    Attributes:
        job_id: Identifier of the failed job.
        queue_name: Queue the job was consumed from.
        attempts_made: Prior attempts at the time of the failure.
        run_id: Optional identifier of the job run (defaults to the job itself).
    """

    job_id: str
    queue_name: str = ""
    attempts_made: int | None = None
    run_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert context to a dictionary for logging (excludes unset values)."""
        result: dict[str, Any] = {"job_id": self.job_id}
        if self.queue_name:
            result["queue_name"] = self.queue_name
        if self.attempts_made is not None:
            result["attempts_made"] = self.attempts_made
        if self.run_id is not None:
            result["run_id"] = self.run_id
        return result


# Task-safe context variable; each asyncio task sees its own copy
_current_context: ContextVar[JobContext | None] = ContextVar(
    "rebound_context", default=None
)


def get_current_context() -> JobContext | None:
    """Active JobContext, or None outside any with_context block."""
    return _current_context.get()


@contextmanager
def with_context(ctx: JobContext) -> Iterator[JobContext]:
    """Make ``ctx`` the active JobContext inside the block.

    The previous context is restored on exit, including on error. Each
    asyncio task sees its own value.
    """
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in SENSITIVE_PATTERNS)


def _sanitize_value(key: str, value: Any) -> Any:
    return "[REDACTED]" if _is_sensitive(key) else value


def _sanitize_event_dict(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Redact sensitive keys, including keys of nested dicts one level down."""
    return {
        key: (
            {k: _sanitize_value(k, v) for k, v in value.items()}
            if isinstance(value, dict)
            else _sanitize_value(key, value)
        )
        for key, value in event_dict.items()
    }


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    event_dict.setdefault("timestamp", datetime.now(UTC).isoformat())
    return event_dict


def _add_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Merge the active JobContext into the entry.

    Keys bound explicitly on the call win over context fields.
    """
    ctx = _current_context.get()
    if ctx is None:
        return event_dict
    return {**ctx.to_dict(), **event_dict}


class ReboundLogger:
    """Component logger over structlog.

    Resolves the structlog logger on each call, so module-level instances
    pick up a configure_logging() that runs after import.
    """

    def __init__(self, component: str, **initial_context: Any) -> None:
        self._component = component
        self._context: dict[str, Any] = {"component": component, **initial_context}

    def bind(self, **context: Any) -> ReboundLogger:
        """Return a logger carrying extra bound fields."""
        child = ReboundLogger(self._component)
        child._context = {**self._context, **context}
        return child

    def _emit(self, method: str, event: str, kw: dict[str, Any]) -> None:
        bound: structlog.stdlib.BoundLogger = structlog.get_logger().bind(**self._context)
        getattr(bound, method)(event, **kw)

    def debug(self, event: str, **kw: Any) -> None:
        self._emit("debug", event, kw)

    def info(self, event: str, **kw: Any) -> None:
        self._emit("info", event, kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._emit("warning", event, kw)

    def error(self, event: str, **kw: Any) -> None:
        self._emit("error", event, kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Log at error level with the active exception's traceback."""
        self._emit("exception", event, kw)


def _build_processors(
    renderer: Processor,
    include_timestamps: bool,
    include_context: bool,
) -> list[Processor]:
    chain: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        _sanitize_event_dict,
    ]
    if include_context:
        chain.append(_add_context)
    if include_timestamps:
        chain.append(_add_timestamp)
    chain += [
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]
    return chain


def _build_handlers(
    format: LogFormat,  # noqa: A002
    file_path: Path | None,
    max_file_size_mb: int,
    backup_count: int,
) -> list[logging.Handler]:
    """Console output goes to stderr; JSON goes to the file, or stdout without one."""
    handlers: list[logging.Handler] = []
    if format in ("console", "both"):
        handlers.append(logging.StreamHandler(sys.stderr))
    if format in ("json", "both"):
        if file_path is not None:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(
                RotatingFileHandler(
                    file_path,
                    maxBytes=max_file_size_mb * 1024 * 1024,
                    backupCount=backup_count,
                    encoding="utf-8",
                )
            )
        else:
            handlers.append(logging.StreamHandler(sys.stdout))
    return handlers


def configure_logging(
    level: LogLevel = "INFO",
    format: LogFormat = "console",  # noqa: A002
    file_path: Path | None = None,
    max_file_size_mb: int = 50,
    backup_count: int = 5,
    include_timestamps: bool = True,
    include_context: bool = True,
) -> None:
    """Configure structured logging for the process.

    Replaces any handlers already on the root logger. Call it once at
    startup; later calls reconfigure from scratch.

    Args:
        level: Minimum level emitted.
        format: "console" (human-readable, stderr), "json" (structured,
            stdout or file_path) or "both" (console to stderr and JSON to
            file_path).
        file_path: Log file, rotated by size. Required for "both".
        max_file_size_mb: Size at which the log file rotates.
        backup_count: Rotated files kept.
        include_timestamps: Add an ISO8601 UTC timestamp to every entry.
        include_context: Add the active JobContext fields to every entry.

    Raises:
        ValueError: If format is "both" and no file_path is given.
        AttributeError: If level is not a logging level name.
    """
    if format == "both" and file_path is None:
        raise ValueError("file_path is required when format='both'")

    numeric_level: int = getattr(logging, level)
    handlers = _build_handlers(format, file_path, max_file_size_mb, backup_count)

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    for handler in handlers:
        handler.setLevel(numeric_level)
        root.addHandler(handler)
    root.setLevel(numeric_level)

    renderer: Processor = (
        structlog.processors.JSONRenderer()
        if format == "json"
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    # Not cached, so loggers created at import time follow reconfiguration
    structlog.configure(
        processors=_build_processors(renderer, include_timestamps, include_context),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def configure_logging_from(config: LogConfig) -> None:
    """Configure logging from the ``logging`` section of an engine config.

    Raises:
        ValueError: If format is "both" and no file_path is given.
    """
    configure_logging(
        level=config.level,
        format=config.format,
        file_path=config.file_path,
        max_file_size_mb=config.max_file_size_mb,
        backup_count=config.backup_count,
        include_timestamps=config.include_timestamps,
        include_context=config.include_context,
    )


def get_logger(component: str, **initial_context: Any) -> ReboundLogger:
    """Logger for a component such as "retry_engine" or "event_bus"."""
    return ReboundLogger(component, **initial_context)
