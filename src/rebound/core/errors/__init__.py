"""Error classification models and the category registry.

Re-exports all public symbols so callers can import from ``rebound.core.errors``.
"""

from rebound.core.errors.codes import (
    ANALYSIS_FALLBACK,
    CUSTOM_HANDLER_REJECTION,
    CategoryName,
    DecisionOutcome,
)
from rebound.core.errors.models import (
    ErrorCategory,
    FailureInfo,
    JobFailureContext,
    RetryDecision,
    compile_patterns,
)
from rebound.core.errors.classifier import (
    UNKNOWN_CATEGORY,
    CategoryRegistry,
    ErrorClassifier,
    RegistrySnapshot,
    builtin_categories,
)

__all__ = [
    "ANALYSIS_FALLBACK",
    "CUSTOM_HANDLER_REJECTION",
    "CategoryName",
    "CategoryRegistry",
    "DecisionOutcome",
    "ErrorCategory",
    "ErrorClassifier",
    "FailureInfo",
    "JobFailureContext",
    "RegistrySnapshot",
    "RetryDecision",
    "UNKNOWN_CATEGORY",
    "builtin_categories",
    "compile_patterns",
]
