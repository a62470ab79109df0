"""Ordered, pattern-based error classification.

The registry holds an ordered list of ErrorCategory records. Classification
walks the list in order and returns the first category whose patterns match
the error text; errors matching nothing fall into the synthetic "unknown"
category, which is retryable under the global default policy.

The registry is copy-on-write. Every admin mutation builds a new immutable
RegistrySnapshot and swaps one reference, so a decision that took a snapshot
is never affected by later changes and readers never lock.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

from rebound.core.constants import LOG_ERROR_PREVIEW_CHARS
from rebound.core.logging import get_logger
from rebound.core.policy import PolicyOverride, RetryPolicy
from rebound.execution.remediation import StructuralRepairRemediator

from .codes import CategoryName
from .models import ErrorCategory, FailureInfo, compile_patterns

if TYPE_CHECKING:
    from rebound.core.config import EngineConfig

_logger = get_logger("classifier")


# =============================================================================
# Default pattern strings for the built-in categories.
# Kept at module scope so the patterns are easily reviewable/testable as data.
# =============================================================================

_NETWORK_TIMEOUT_PATTERNS: list[str] = [
    r"timeout",
    r"timed out",
    r"ECONNRESET",
    r"ENOTFOUND",
    r"ECONNREFUSED",
    r"ETIMEDOUT",
    r"socket hang up",
    r"connection.?reset",
    r"connection.?refused",
    r"network.?unreachable",
]

_RATE_LIMIT_PATTERNS: list[str] = [
    r"rate.?limit",
    r"too many requests",
    r"\b429\b",
    r"quota exceeded",
]

_TRANSIENT_PARSE_PATTERNS: list[str] = [
    r"unexpected token",
    r"invalid json",
    r"json parse error",
    r"malformed json",
    r"unexpected end of json",
    r"JSONDecodeError",
    r"malformed structured output",
]

_CONTENT_POLICY_PATTERNS: list[str] = [
    r"content filter",
    r"safety filter",
    r"inappropriate content",
    r"content policy",
]

_STRUCTURAL_VALIDATION_PATTERNS: list[str] = [
    r"missing required field",
    r"invalid component structure",
    r"ast validation failed",
    r"syntax error in generated code",
]

_AUTH_PATTERNS: list[str] = [
    r"unauthorized",
    r"invalid.?api.?key",
    r"authentication failed",
    r"forbidden",
    r"\b401\b",
    r"\b403\b",
]

_SERVER_ERROR_PATTERNS: list[str] = [
    r"internal server error",
    r"bad gateway",
    r"service unavailable",
    r"\b50[0234]\b",
]

_INPUT_VALIDATION_PATTERNS: list[str] = [
    r"validation error",
    r"invalid input",
    r"bad request",
    r"\b400\b",
]

_RESOURCE_EXHAUSTED_PATTERNS: list[str] = [
    r"out of memory",
    r"resource exhausted",
    r"disk full",
    r"no space left",
    r"MemoryError",
]


UNKNOWN_CATEGORY = ErrorCategory(
    name=CategoryName.UNKNOWN.value,
    retryable=True,
    description="No pattern matched; retried under the default policy",
)


def builtin_categories() -> list[ErrorCategory]:
    """Build the built-in categories in classification order."""
    return [
        ErrorCategory(
            name=CategoryName.NETWORK_TIMEOUT.value,
            patterns=compile_patterns(_NETWORK_TIMEOUT_PATTERNS),
            policy_override=PolicyOverride(
                max_attempts=5, base_delay_ms=2000, backoff_multiplier=1.5
            ),
            description="Connection resets, refusals and timeouts",
        ),
        ErrorCategory(
            name=CategoryName.RATE_LIMIT.value,
            patterns=compile_patterns(_RATE_LIMIT_PATTERNS),
            policy_override=PolicyOverride(
                max_attempts=10,
                base_delay_ms=5000,
                max_delay_ms=300_000,
                backoff_multiplier=2.0,
            ),
            description="Upstream throttling (HTTP 429, quota)",
        ),
        ErrorCategory(
            name=CategoryName.TRANSIENT_PARSE_ERROR.value,
            patterns=compile_patterns(_TRANSIENT_PARSE_PATTERNS),
            policy_override=PolicyOverride(max_attempts=2, base_delay_ms=500),
            description="Malformed structured output from a model",
        ),
        ErrorCategory(
            name=CategoryName.CONTENT_POLICY_VIOLATION.value,
            patterns=compile_patterns(_CONTENT_POLICY_PATTERNS),
            retryable=False,
            dead_letter_after=1,
            description="Request refused by a content or safety filter",
        ),
        ErrorCategory(
            name=CategoryName.STRUCTURAL_VALIDATION_ERROR.value,
            patterns=compile_patterns(_STRUCTURAL_VALIDATION_PATTERNS),
            retryable=False,
            dead_letter_after=1,
            remediator=StructuralRepairRemediator(),
            description="Generated output failed structural validation",
        ),
        ErrorCategory(
            name=CategoryName.AUTH_ERROR.value,
            patterns=compile_patterns(_AUTH_PATTERNS),
            retryable=False,
            dead_letter_after=1,
            description="Rejected credentials (HTTP 401/403)",
        ),
        ErrorCategory(
            name=CategoryName.SERVER_ERROR.value,
            patterns=compile_patterns(_SERVER_ERROR_PATTERNS),
            policy_override=PolicyOverride(
                max_attempts=3, base_delay_ms=3000, backoff_multiplier=2.0
            ),
            description="Upstream 5xx failures",
        ),
        ErrorCategory(
            name=CategoryName.INPUT_VALIDATION_ERROR.value,
            patterns=compile_patterns(_INPUT_VALIDATION_PATTERNS),
            retryable=False,
            dead_letter_after=1,
            description="Rejected input (HTTP 400)",
        ),
        ErrorCategory(
            name=CategoryName.RESOURCE_EXHAUSTED.value,
            patterns=compile_patterns(_RESOURCE_EXHAUSTED_PATTERNS),
            policy_override=PolicyOverride(
                max_attempts=2, base_delay_ms=10_000, max_delay_ms=60_000
            ),
            description="Memory or disk exhaustion",
        ),
    ]


# =============================================================================
# Registry
# =============================================================================


@dataclass(frozen=True)
class RegistrySnapshot:
    """Immutable view of the registry used for one decision."""

    categories: tuple[ErrorCategory, ...]
    default_policy: RetryPolicy

    def classify(self, text: str) -> ErrorCategory:
        """Return the first matching category, or the unknown category."""
        for category in self.categories:
            if category.matches(text):
                return category
        return UNKNOWN_CATEGORY

    def resolve_policy(self, category: ErrorCategory) -> RetryPolicy:
        """Default policy merged with the category override."""
        return self.default_policy.merged(category.policy_override)

    def get(self, name: str) -> ErrorCategory | None:
        for category in self.categories:
            if category.name == name:
                return category
        return None


class CategoryRegistry:
    """Ordered registry of error categories plus the global default policy.

    Reads go through :meth:`snapshot` and never block. Mutations are rare
    admin operations; they are serialized by an internal lock and replace the
    snapshot atomically.

    Example:
        registry = CategoryRegistry()
        registry.add(
            ErrorCategory.from_strings("gpu_oom", [r"CUDA out of memory"]),
            before="resource_exhausted",
        )
        registry.update_default_policy(max_attempts=4)
    """

    def __init__(
        self,
        categories: Iterable[ErrorCategory] | None = None,
        default_policy: RetryPolicy | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            categories: Categories in classification order. Defaults to the
                built-in categories.
            default_policy: Global default policy. Defaults to RetryPolicy().

        Raises:
            ValueError: On duplicate or reserved names, or an override that
                does not merge into a valid policy.
        """
        initial = tuple(builtin_categories() if categories is None else categories)
        policy = default_policy or RetryPolicy()
        seen: set[str] = set()
        for category in initial:
            self._check_name(category.name, seen)
            seen.add(category.name)
            _validate_override(policy, category)
        self._snapshot = RegistrySnapshot(categories=initial, default_policy=policy)
        self._write_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: EngineConfig) -> CategoryRegistry:
        """Build a registry from engine configuration.

        Config entries naming an existing category update it in place (keeping
        its position, patterns and remediator unless given); new names are
        appended or inserted before ``insert_before``.
        """
        base = builtin_categories() if config.include_builtin_categories else []
        registry = cls(base, default_policy=config.default_policy.to_policy())
        for entry in config.categories:
            existing = registry.get(entry.name)
            if existing is not None:
                registry.replace(entry.apply_to(existing))
            else:
                registry.add(entry.to_category(), before=entry.insert_before)
        return registry

    @staticmethod
    def _check_name(name: str, seen: set[str] | dict[str, Any]) -> None:
        if name == UNKNOWN_CATEGORY.name:
            raise ValueError(f"category name '{name}' is reserved")
        if name in seen:
            raise ValueError(f"category '{name}' is already registered")

    def snapshot(self) -> RegistrySnapshot:
        """Current immutable view; safe to use from any thread or task."""
        return self._snapshot

    @property
    def categories(self) -> tuple[ErrorCategory, ...]:
        return self._snapshot.categories

    @property
    def default_policy(self) -> RetryPolicy:
        return self._snapshot.default_policy

    def names(self) -> list[str]:
        return [c.name for c in self._snapshot.categories]

    def get(self, name: str) -> ErrorCategory | None:
        return self._snapshot.get(name)

    def __len__(self) -> int:
        return len(self._snapshot.categories)

    def __iter__(self) -> Iterator[ErrorCategory]:
        return iter(self._snapshot.categories)

    def add(self, category: ErrorCategory, *, before: str | None = None) -> None:
        """Register a category.

        Appended after all existing categories unless ``before`` names a
        registered category, in which case it is inserted ahead of it and
        therefore wins overlapping matches.

        Raises:
            ValueError: On a duplicate/reserved name, unknown ``before`` target,
                or an override that does not merge into a valid policy.
        """
        with self._write_lock:
            current = self._snapshot
            self._check_name(category.name, {c.name for c in current.categories})
            _validate_override(current.default_policy, category)

            categories = list(current.categories)
            if before is None:
                categories.append(category)
            else:
                names = [c.name for c in categories]
                if before not in names:
                    raise ValueError(f"cannot insert before unknown category '{before}'")
                categories.insert(names.index(before), category)

            self._snapshot = replace(current, categories=tuple(categories))

        _logger.info(
            "category_added",
            category=category.name,
            before=before,
            retryable=category.retryable,
            pattern_count=len(category.patterns),
        )

    def replace(self, category: ErrorCategory) -> None:
        """Replace a registered category of the same name, keeping its position.

        Raises:
            ValueError: If no category has that name, or the override does not
                merge into a valid policy.
        """
        with self._write_lock:
            current = self._snapshot
            names = [c.name for c in current.categories]
            if category.name not in names:
                raise ValueError(f"category '{category.name}' is not registered")
            _validate_override(current.default_policy, category)
            categories = list(current.categories)
            categories[names.index(category.name)] = category
            self._snapshot = replace(current, categories=tuple(categories))

        _logger.info("category_replaced", category=category.name)

    def update_default_policy(self, **changes: Any) -> RetryPolicy:
        """Merge field changes onto the global default policy.

        Takes effect for decisions started afterwards.

        Raises:
            ValueError: If the merged default, or any category's merged
                policy, would be invalid.
            TypeError: If a field name is not a RetryPolicy field.
        """
        override = PolicyOverride(**changes)
        with self._write_lock:
            current = self._snapshot
            policy = current.default_policy.merged(override)
            for category in current.categories:
                _validate_override(policy, category)
            self._snapshot = replace(current, default_policy=policy)

        _logger.info("default_policy_updated", **policy.to_dict())
        return policy


def _validate_override(default: RetryPolicy, category: ErrorCategory) -> None:
    try:
        default.merged(category.policy_override)
    except ValueError as e:
        raise ValueError(f"category '{category.name}': {e}") from e


# =============================================================================
# Error Classifier
# =============================================================================


class ErrorClassifier:
    """Maps raw error text to a registered category.

    Classification is total and deterministic: the first registered category
    whose patterns match wins, and anything unmatched is "unknown".
    """

    def __init__(self, registry: CategoryRegistry | None = None) -> None:
        self.registry = registry if registry is not None else CategoryRegistry()

    def classify(self, error_message: str) -> ErrorCategory:
        """Classify an error message against the current registry."""
        return self.classify_with(self.registry.snapshot(), error_message)

    def classify_failure(self, failure: FailureInfo) -> ErrorCategory:
        """Classify a FailureInfo (message plus optional code)."""
        return self.classify(failure.classification_text)

    @staticmethod
    def classify_with(snapshot: RegistrySnapshot, error_message: str) -> ErrorCategory:
        """Classify against a specific snapshot.

        Never raises; on an unexpected matcher failure the error is logged and
        the unknown category is returned.
        """
        text = error_message if isinstance(error_message, str) else str(error_message)
        try:
            category = snapshot.classify(text)
        except Exception:
            _logger.exception(
                "classification_failed", message=text[:LOG_ERROR_PREVIEW_CHARS]
            )
            return UNKNOWN_CATEGORY
        _logger.debug(
            "error_classified",
            category=category.name,
            retryable=category.retryable,
            message=text[:LOG_ERROR_PREVIEW_CHARS],
        )
        return category


__all__ = [
    "CategoryRegistry",
    "ErrorClassifier",
    "RegistrySnapshot",
    "UNKNOWN_CATEGORY",
    "builtin_categories",
]
