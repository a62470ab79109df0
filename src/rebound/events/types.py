"""Lifecycle event types published by the retry engine.

All models are Pydantic v2 BaseModel so events serialize directly to JSON for
external buses and webhooks.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class RetryEventType(str, Enum):
    """Lifecycle events emitted once per decision."""

    SCHEDULED = "retry.scheduled"
    """The job will be retried after a delay."""

    EXHAUSTED = "retry.exhausted"
    """The category's attempt budget is used up."""

    ABANDONED = "retry.abandoned"
    """The category is not retryable, or a remediator vetoed the retry."""


class RetryEvent(BaseModel):
    """Event delivered to the event bus.

    ``metadata`` carries category, attempts_made, delay_ms and reason.
    """

    model_config = ConfigDict(frozen=True)

    type: RetryEventType
    job_id: str
    queue_name: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = Field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        """JSON-compatible dict (enum values and ISO timestamps)."""
        return self.model_dump(mode="json")


__all__ = ["RetryEvent", "RetryEventType"]
