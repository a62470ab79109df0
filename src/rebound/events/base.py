"""Abstract base for lifecycle event publishers."""

from __future__ import annotations

from abc import ABC, abstractmethod

from rebound.events.types import RetryEvent


class EventPublisher(ABC):
    """Destination for retry lifecycle events.

    Publishing is best-effort and fire-and-forget: the engine bounds every
    call with a timeout and ignores failures, so implementations should
    return quickly and must not rely on being awaited to completion.
    """

    @abstractmethod
    async def publish(self, event: RetryEvent) -> None:
        """Publish one event.

        Args:
            event: The lifecycle event to deliver.
        """
        ...

    async def close(self) -> None:
        """Release resources. Default: nothing to release."""
        return None


class NullEventPublisher(EventPublisher):
    """Publisher that drops every event."""

    async def publish(self, event: RetryEvent) -> None:
        return None


__all__ = ["EventPublisher", "NullEventPublisher"]
