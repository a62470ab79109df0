"""Retry policy value types.

A RetryPolicy is fully resolved and immutable. Categories carry an optional
PolicyOverride whose set fields replace the global default field by field.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields, replace
from typing import Any

from rebound.core.constants import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_BASE_DELAY_MS,
    DEFAULT_JITTER_FACTOR,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY_MS,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Resolved retry policy for one category.

    Attributes:
        max_attempts: Attempt budget; no retry once this many attempts were made.
        base_delay_ms: Delay before the first retry.
        max_delay_ms: Cap on the computed delay.
        backoff_multiplier: Growth factor per prior attempt.
        jitter_factor: Fraction of the delay used as random spread (0.0-1.0).
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS
    max_delay_ms: int = DEFAULT_MAX_DELAY_MS
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    jitter_factor: float = DEFAULT_JITTER_FACTOR

    def __post_init__(self) -> None:
        """Validate policy invariants."""
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.base_delay_ms < 0:
            raise ValueError(f"base_delay_ms must be >= 0, got {self.base_delay_ms}")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"max_delay_ms ({self.max_delay_ms}) must be >= "
                f"base_delay_ms ({self.base_delay_ms})"
            )
        if self.backoff_multiplier <= 0:
            raise ValueError(
                f"backoff_multiplier must be > 0, got {self.backoff_multiplier}"
            )
        if not 0.0 <= self.jitter_factor <= 1.0:
            raise ValueError(f"jitter_factor must be 0.0-1.0, got {self.jitter_factor}")

    def merged(self, override: PolicyOverride | None) -> RetryPolicy:
        """Return a new policy with the override's set fields applied.

        Raises:
            ValueError: If the merged policy violates an invariant.
        """
        if override is None:
            return self
        changes = override.as_changes()
        if not changes:
            return self
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PolicyOverride:
    """Partial policy; None fields fall through to the default."""

    max_attempts: int | None = None
    base_delay_ms: int | None = None
    max_delay_ms: int | None = None
    backoff_multiplier: float | None = None
    jitter_factor: float | None = None

    def as_changes(self) -> dict[str, Any]:
        """Fields that are set, keyed by RetryPolicy field name."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }

    def combined(self, other: PolicyOverride | None) -> PolicyOverride:
        """Layer ``other`` on top of this override."""
        if other is None:
            return self
        return replace(self, **other.as_changes())


__all__ = ["PolicyOverride", "RetryPolicy"]
