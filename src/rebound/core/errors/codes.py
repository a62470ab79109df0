"""Category names and decision outcomes.

Built-in Category Taxonomy
==========================

Categories are checked in the order listed; the first category with a
matching pattern wins.

    | Category | Retryable | Attempts | Base delay | Max delay | Multiplier |
    |----------|-----------|----------|------------|-----------|------------|
    | network_timeout | Yes | 5 | 2s | 30s | 1.5 |
    | rate_limit | Yes | 10 | 5s | 5 min | 2.0 |
    | transient_parse_error | Yes | 2 | 0.5s | 30s | 2.0 |
    | content_policy_violation | No | - | - | - | - |
    | structural_validation_error | No* | - | - | - | - |
    | auth_error | No | - | - | - | - |
    | server_error | Yes | 3 | 3s | 30s | 2.0 |
    | input_validation_error | No | - | - | - | - |
    | resource_exhausted | Yes | 2 | 10s | 60s | 2.0 |
    | unknown | Yes | default | default | default | default |

    *Carries the structural repair remediator, which only runs when the
    category is configured as retryable.

Non-retryable categories dead-letter after one failed attempt.
"""

from __future__ import annotations

from enum import Enum


class CategoryName(str, Enum):
    """Names of the built-in error categories.

    Inherits from ``str`` so members compare equal to plain category names.
    """

    NETWORK_TIMEOUT = "network_timeout"
    RATE_LIMIT = "rate_limit"
    TRANSIENT_PARSE_ERROR = "transient_parse_error"
    CONTENT_POLICY_VIOLATION = "content_policy_violation"
    STRUCTURAL_VALIDATION_ERROR = "structural_validation_error"
    AUTH_ERROR = "auth_error"
    SERVER_ERROR = "server_error"
    INPUT_VALIDATION_ERROR = "input_validation_error"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    UNKNOWN = "unknown"


class DecisionOutcome(str, Enum):
    """What the queue runtime should do with the failed job."""

    RETRY = "retry"
    """Re-enqueue after ``delay_ms``."""

    DEAD_LETTER = "dead_letter"
    """Stop retrying and move the job to the dead-letter destination."""

    ABANDON = "abandon"
    """Stop retrying without dead-lettering."""


CUSTOM_HANDLER_REJECTION = "custom_handler_rejection"
"""custom_action tag set when a remediator vetoes a retry."""

ANALYSIS_FALLBACK = "analysis_fallback"
"""custom_action tag set when the engine fell back to the default policy."""


__all__ = [
    "ANALYSIS_FALLBACK",
    "CUSTOM_HANDLER_REJECTION",
    "CategoryName",
    "DecisionOutcome",
]
