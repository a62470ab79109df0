"""Core domain models, configuration and logging."""

from rebound.core.config import CategoryConfig, EngineConfig, RetryPolicyConfig
from rebound.core.errors import (
    CategoryRegistry,
    ErrorCategory,
    ErrorClassifier,
    FailureInfo,
    JobFailureContext,
    RetryDecision,
)
from rebound.core.policy import PolicyOverride, RetryPolicy

__all__ = [
    "CategoryConfig",
    "CategoryRegistry",
    "EngineConfig",
    "ErrorCategory",
    "ErrorClassifier",
    "FailureInfo",
    "JobFailureContext",
    "PolicyOverride",
    "RetryDecision",
    "RetryPolicy",
    "RetryPolicyConfig",
]
