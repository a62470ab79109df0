"""Rebound - failure classification and retry decisions for job queues.

The queue/worker runtime hands every failed job to a
:class:`~rebound.execution.retry_engine.RetryDecisionEngine`, which classifies
the error, applies the per-category retry policy and tells the caller whether
to re-enqueue (and after how long) or route the job to dead-letter.
"""

__version__ = "0.4.0"

from rebound.core.errors import (
    CategoryName,
    CategoryRegistry,
    DecisionOutcome,
    ErrorCategory,
    ErrorClassifier,
    FailureInfo,
    JobFailureContext,
    RetryDecision,
)
from rebound.core.policy import PolicyOverride, RetryPolicy
from rebound.execution.backoff import DelayCalculator, compute_delay
from rebound.execution.retry_engine import RetryDecisionEngine

__all__ = [
    "__version__",
    "CategoryName",
    "CategoryRegistry",
    "DecisionOutcome",
    "DelayCalculator",
    "ErrorCategory",
    "ErrorClassifier",
    "FailureInfo",
    "JobFailureContext",
    "PolicyOverride",
    "RetryDecision",
    "RetryDecisionEngine",
    "RetryPolicy",
    "compute_delay",
]
