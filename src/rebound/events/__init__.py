"""Retry lifecycle events and their publishers."""

from rebound.events.base import EventPublisher, NullEventPublisher
from rebound.events.bus import EventBus
from rebound.events.types import RetryEvent, RetryEventType
from rebound.events.webhook import WebhookEventPublisher

__all__ = [
    "EventBus",
    "EventPublisher",
    "NullEventPublisher",
    "RetryEvent",
    "RetryEventType",
    "WebhookEventPublisher",
]
