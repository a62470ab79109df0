"""Data models for failure classification and retry decisions.

Contains the dataclasses that flow through one decision:
- ErrorCategory: A named, ordered pattern matcher with its retry settings
- FailureInfo: The raw error reported by the worker
- JobFailureContext: One failed job handed to the engine
- RetryDecision: The engine's answer
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from rebound.core.policy import PolicyOverride

from .codes import DecisionOutcome

if TYPE_CHECKING:
    from rebound.execution.remediation import Remediator


def compile_patterns(strings: Iterable[str]) -> tuple[re.Pattern[str], ...]:
    """Compile regex strings into case-insensitive Pattern objects.

    Raises:
        ValueError: If a pattern is not a valid regular expression.
    """
    compiled: list[re.Pattern[str]] = []
    for pattern in strings:
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except re.error as e:
            raise ValueError(f"Invalid pattern {pattern!r}: {e}") from e
    return tuple(compiled)


@dataclass(frozen=True)
class ErrorCategory:
    """A named class of job failures with its own retry behavior.

    Attributes:
        name: Unique category identifier (e.g., "network_timeout").
        patterns: Ordered case-insensitive matchers checked against the error text.
        retryable: If False the job is never retried.
        policy_override: Fields replacing the global default policy.
        dead_letter_after: Failed-attempt threshold for dead-lettering a
            non-retryable job (defaults to 1).
        remediator: Optional hook run before committing to a retry.
        description: Human-readable summary for operators.
    """

    name: str
    patterns: tuple[re.Pattern[str], ...] = ()
    retryable: bool = True
    policy_override: PolicyOverride | None = None
    dead_letter_after: int | None = None
    remediator: Remediator | None = field(default=None, compare=False)
    description: str = ""
    _matcher: re.Pattern[str] | None = field(
        default=None, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("category name must not be empty")
        if self.dead_letter_after is not None and self.dead_letter_after < 1:
            raise ValueError(
                f"dead_letter_after must be >= 1, got {self.dead_letter_after}"
            )
        # Merge all patterns into one alternation so matching is a single search
        if self.patterns:
            alternation = "|".join(f"(?:{p.pattern})" for p in self.patterns)
            object.__setattr__(
                self, "_matcher", re.compile(alternation, re.IGNORECASE)
            )

    @classmethod
    def from_strings(
        cls,
        name: str,
        patterns: Iterable[str],
        *,
        retryable: bool = True,
        policy_override: PolicyOverride | None = None,
        dead_letter_after: int | None = None,
        remediator: Remediator | None = None,
        description: str = "",
    ) -> ErrorCategory:
        """Build a category from regex strings."""
        return cls(
            name=name,
            patterns=compile_patterns(patterns),
            retryable=retryable,
            policy_override=policy_override,
            dead_letter_after=dead_letter_after,
            remediator=remediator,
            description=description,
        )

    def matches(self, text: str) -> bool:
        """Check whether any pattern matches ``text``."""
        if self._matcher is None:
            return False
        return self._matcher.search(text) is not None

    @property
    def pattern_strings(self) -> list[str]:
        return [p.pattern for p in self.patterns]


@dataclass(frozen=True)
class FailureInfo:
    """Raw error reported for a failed job.

    Attributes:
        message: Error message text.
        code: Optional numeric or string error code (e.g., 429, "ECONNRESET").
    """

    message: str
    code: int | str | None = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> FailureInfo:
        """Build from an exception, picking up ``code``/``status_code`` if present."""
        message = str(exc) or type(exc).__name__
        code = getattr(exc, "code", None)
        if code is None:
            code = getattr(exc, "status_code", None)
        if not isinstance(code, (int, str)):
            code = None
        return cls(message=message, code=code)

    @property
    def classification_text(self) -> str:
        """Text matched against category patterns."""
        if self.code is None:
            return self.message
        return f"{self.message} (code={self.code})"

    def summary(self, max_chars: int) -> str:
        """Error text truncated to ``max_chars``."""
        return self.classification_text[:max_chars]


@dataclass
class JobFailureContext:
    """One failed job, as handed to the decision engine.

    The payload is shared with the caller; remediators may mutate it in place
    so that the re-enqueued job carries repair context.

    Attributes:
        job_id: Queue job identifier.
        queue_name: Name of the queue the job belongs to.
        attempts_made: Number of attempts made before this failure (0-based).
        error: The failure being evaluated.
        payload: Job data; opaque to the engine.
        run_id: Optional job run identity for attempt records.
    """

    job_id: str
    queue_name: str
    attempts_made: int
    error: FailureInfo
    payload: dict[str, Any] = field(default_factory=dict)
    run_id: str | None = None

    def __post_init__(self) -> None:
        if self.attempts_made < 0:
            raise ValueError(f"attempts_made must be >= 0, got {self.attempts_made}")


@dataclass(frozen=True)
class RetryDecision:
    """Decision returned for every failed job.

    Attributes:
        should_retry: Whether the job should be re-enqueued.
        delay_ms: Delay before the retry (0 when not retrying).
        category: Name of the category the error was classified into.
        reason: Human-readable explanation for operators.
        move_to_dead_letter: Route to dead-letter (only meaningful when not retrying).
        custom_action: Optional tag for non-standard paths.
    """

    should_retry: bool
    delay_ms: int
    category: str
    reason: str
    move_to_dead_letter: bool = False
    custom_action: str | None = None

    @classmethod
    def retry(cls, delay_ms: int, category: str, reason: str, **kw: Any) -> RetryDecision:
        return cls(should_retry=True, delay_ms=delay_ms, category=category, reason=reason, **kw)

    @classmethod
    def abandon(
        cls,
        category: str,
        reason: str,
        *,
        move_to_dead_letter: bool,
        custom_action: str | None = None,
    ) -> RetryDecision:
        return cls(
            should_retry=False,
            delay_ms=0,
            category=category,
            reason=reason,
            move_to_dead_letter=move_to_dead_letter,
            custom_action=custom_action,
        )

    @property
    def outcome(self) -> DecisionOutcome:
        if self.should_retry:
            return DecisionOutcome.RETRY
        if self.move_to_dead_letter:
            return DecisionOutcome.DEAD_LETTER
        return DecisionOutcome.ABANDON

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "should_retry": self.should_retry,
            "delay_ms": self.delay_ms,
            "category": self.category,
            "reason": self.reason,
            "move_to_dead_letter": self.move_to_dead_letter,
            "outcome": self.outcome.value,
        }
        if self.custom_action is not None:
            result["custom_action"] = self.custom_action
        return result


__all__ = [
    "ErrorCategory",
    "FailureInfo",
    "JobFailureContext",
    "RetryDecision",
    "compile_patterns",
]
