"""Configuration models for the Rebound retry engine.

Pydantic models for loading and validating YAML engine configuration:
the global default policy, category overrides and additions, side-channel
timeouts, the attempt store, the webhook publisher and logging.
"""

from __future__ import annotations

import dataclasses
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from rebound.core.constants import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_BASE_DELAY_MS,
    DEFAULT_JITTER_FACTOR,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY_MS,
    ERROR_SUMMARY_MAX_CHARS,
    REMEDIATION_TIMEOUT_SECONDS,
    SIDE_CHANNEL_TIMEOUT_SECONDS,
)
from rebound.core.errors.codes import CategoryName
from rebound.core.errors.models import ErrorCategory, compile_patterns
from rebound.core.policy import PolicyOverride, RetryPolicy
from rebound.events.types import RetryEventType
from rebound.execution.remediation import REMEDIATORS, get_remediator

_BUILTIN_NAMES = frozenset(c.value for c in CategoryName) - {CategoryName.UNKNOWN.value}


class RetryPolicyConfig(BaseModel):
    """Global default retry policy."""

    max_attempts: int = Field(
        default=DEFAULT_MAX_ATTEMPTS, ge=1, description="Attempt budget per job"
    )
    base_delay_ms: int = Field(
        default=DEFAULT_BASE_DELAY_MS, ge=0, description="Delay before the first retry"
    )
    max_delay_ms: int = Field(
        default=DEFAULT_MAX_DELAY_MS, ge=0, description="Cap on the computed delay"
    )
    backoff_multiplier: float = Field(
        default=DEFAULT_BACKOFF_MULTIPLIER, gt=0, description="Delay growth per attempt"
    )
    jitter_factor: float = Field(
        default=DEFAULT_JITTER_FACTOR,
        ge=0,
        le=1,
        description="Random spread as a fraction of the delay",
    )

    @model_validator(mode="after")
    def _validate_delay_range(self) -> RetryPolicyConfig:
        if self.base_delay_ms > self.max_delay_ms:
            raise ValueError(
                f"base_delay_ms ({self.base_delay_ms}) must not exceed "
                f"max_delay_ms ({self.max_delay_ms})"
            )
        return self

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(**self.model_dump())


class PolicyOverrideConfig(BaseModel):
    """Partial policy for one category; unset fields use the default."""

    max_attempts: int | None = Field(default=None, ge=1)
    base_delay_ms: int | None = Field(default=None, ge=0)
    max_delay_ms: int | None = Field(default=None, ge=0)
    backoff_multiplier: float | None = Field(default=None, gt=0)
    jitter_factor: float | None = Field(default=None, ge=0, le=1)

    def to_override(self) -> PolicyOverride:
        return PolicyOverride(**self.model_dump())


class CategoryConfig(BaseModel):
    """A category to add, or changes to an existing category of the same name."""

    name: str = Field(min_length=1, description="Unique category name")
    patterns: list[str] = Field(
        default_factory=list,
        description="Case-insensitive regexes; replace existing patterns when given",
    )
    retryable: bool | None = Field(default=None, description="Defaults to True for new categories")
    policy: PolicyOverrideConfig | None = None
    dead_letter_after: int | None = Field(default=None, ge=1)
    remediator: str | None = Field(default=None, description="Name of a built-in remediator")
    insert_before: str | None = Field(
        default=None, description="Insert a new category ahead of this one"
    )
    description: str = ""

    @field_validator("name")
    @classmethod
    def _check_name(cls, v: str) -> str:
        if v == CategoryName.UNKNOWN.value:
            raise ValueError("'unknown' is reserved for unmatched errors")
        return v

    @field_validator("patterns")
    @classmethod
    def _check_patterns(cls, v: list[str]) -> list[str]:
        compile_patterns(v)
        return v

    @field_validator("remediator")
    @classmethod
    def _check_remediator(cls, v: str | None) -> str | None:
        if v is not None and v not in REMEDIATORS:
            known = ", ".join(sorted(REMEDIATORS))
            raise ValueError(f"unknown remediator '{v}' (known: {known})")
        return v

    def to_category(self) -> ErrorCategory:
        """Build a new category from this entry.

        Raises:
            ValueError: If no patterns are configured.
        """
        if not self.patterns:
            raise ValueError(f"category '{self.name}' needs at least one pattern")
        return ErrorCategory.from_strings(
            self.name,
            self.patterns,
            retryable=True if self.retryable is None else self.retryable,
            policy_override=self.policy.to_override() if self.policy else None,
            dead_letter_after=self.dead_letter_after,
            remediator=get_remediator(self.remediator) if self.remediator else None,
            description=self.description,
        )

    def apply_to(self, existing: ErrorCategory) -> ErrorCategory:
        """Return ``existing`` with the fields set in this entry replaced.

        A policy entry is layered onto the existing override.
        """
        changes: dict[str, Any] = {}
        if self.patterns:
            changes["patterns"] = compile_patterns(self.patterns)
        if self.retryable is not None:
            changes["retryable"] = self.retryable
        if self.policy is not None:
            base = existing.policy_override or PolicyOverride()
            changes["policy_override"] = base.combined(self.policy.to_override())
        if self.dead_letter_after is not None:
            changes["dead_letter_after"] = self.dead_letter_after
        if self.remediator is not None:
            changes["remediator"] = get_remediator(self.remediator)
        if self.description:
            changes["description"] = self.description
        return dataclasses.replace(existing, **changes)


class LogConfig(BaseModel):
    """Configuration for structured logging."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Minimum log level to capture",
    )
    format: Literal["json", "console", "both"] = Field(
        default="console",
        description="json for structured, console for human-readable, "
        "both for console to stderr and JSON to file",
    )
    file_path: Path | None = Field(
        default=None,
        description="Path for log file output (required if format='both')",
    )
    max_file_size_mb: int = Field(default=50, gt=0, le=1000)
    backup_count: int = Field(default=5, ge=0, le=100)
    include_timestamps: bool = True
    include_context: bool = True

    @model_validator(mode="after")
    def _check_file_path_required(self) -> LogConfig:
        if self.format == "both" and self.file_path is None:
            raise ValueError("file_path is required when format='both'")
        return self


class RecorderConfig(BaseModel):
    """Where attempt records are persisted."""

    backend: Literal["memory", "sqlite"] = "memory"
    path: Path = Field(
        default=Path("./state/attempts.db"),
        description="SQLite database file (sqlite backend only)",
    )


class WebhookConfig(BaseModel):
    """HTTP webhook publisher for lifecycle events."""

    url: str | None = None
    url_env: str | None = Field(default=None, description="Env var holding the URL")
    headers: dict[str, str] = Field(default_factory=dict)
    event_types: list[RetryEventType] | None = Field(
        default=None, description="Event types to forward (all if omitted)"
    )
    timeout: float = Field(default=5.0, gt=0)
    max_retries: int = Field(default=1, ge=0)
    retry_delay: float = Field(default=0.5, ge=0)

    @model_validator(mode="after")
    def _check_target(self) -> WebhookConfig:
        if not self.url and not self.url_env:
            raise ValueError("webhook requires url or url_env")
        return self


class EngineConfig(BaseModel):
    """Complete retry engine configuration."""

    default_policy: RetryPolicyConfig = Field(default_factory=RetryPolicyConfig)
    categories: list[CategoryConfig] = Field(default_factory=list)
    include_builtin_categories: bool = Field(
        default=True, description="Start from the built-in category table"
    )
    side_channel_timeout_seconds: float = Field(
        default=SIDE_CHANNEL_TIMEOUT_SECONDS,
        gt=0,
        description="Bound on each attempt-record write and event publish",
    )
    remediation_timeout_seconds: float = Field(
        default=REMEDIATION_TIMEOUT_SECONDS,
        gt=0,
        description="Bound on asynchronous remediators; exceeding it vetoes the retry",
    )
    error_summary_max_chars: int = Field(default=ERROR_SUMMARY_MAX_CHARS, ge=1)
    recorder: RecorderConfig = Field(default_factory=RecorderConfig)
    webhook: WebhookConfig | None = None
    logging: LogConfig = Field(default_factory=LogConfig)

    @model_validator(mode="after")
    def _check_categories(self) -> EngineConfig:
        known = set(_BUILTIN_NAMES) if self.include_builtin_categories else set()
        for entry in self.categories:
            if entry.name not in known:
                if not entry.patterns:
                    raise ValueError(f"category '{entry.name}' needs at least one pattern")
                if entry.insert_before is not None and entry.insert_before not in known:
                    raise ValueError(
                        f"category '{entry.name}': cannot insert before unknown "
                        f"category '{entry.insert_before}'"
                    )
                known.add(entry.name)
        return self

    @classmethod
    def from_yaml(cls, path: Path) -> EngineConfig:
        """Load engine configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data or {})

    @classmethod
    def from_yaml_string(cls, yaml_str: str) -> EngineConfig:
        """Load engine configuration from a YAML string."""
        data = yaml.safe_load(yaml_str)
        return cls.model_validate(data or {})


__all__ = [
    "CategoryConfig",
    "EngineConfig",
    "LogConfig",
    "PolicyOverrideConfig",
    "RecorderConfig",
    "RetryPolicyConfig",
    "WebhookConfig",
]
