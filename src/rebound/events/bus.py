"""Async in-process pub/sub bus for retry lifecycle events.

Routes RetryEvents from the decision engine to downstream consumers
(dashboards, alerting, webhooks). Publishing only enqueues, so a slow
subscriber never stalls the decision path. Each subscriber keeps a bounded
history of the events delivered to it; when it is full the oldest event is
dropped.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from rebound.core.logging import get_logger
from rebound.events.base import EventPublisher
from rebound.events.types import RetryEvent, RetryEventType

_logger = get_logger("event_bus")

EventFilter = Callable[[RetryEvent], bool] | None
EventCallback = Callable[[RetryEvent], Any]

# A subscriber failing this many times in a row stops receiving events
DISABLE_AFTER_FAILURES = 10


@dataclass(slots=True)
class _Subscription:
    callback: EventCallback
    event_types: frozenset[RetryEventType] | None
    event_filter: EventFilter
    history: deque[RetryEvent]
    failures: int = field(default=0)

    @property
    def disabled(self) -> bool:
        return self.failures >= DISABLE_AFTER_FAILURES

    def wants(self, event: RetryEvent) -> bool:
        """Type check, then the predicate. A raising predicate propagates."""
        if self.event_types is not None and event.type not in self.event_types:
            return False
        return self.event_filter is None or bool(self.event_filter(event))


class EventBus(EventPublisher):
    """Async pub/sub event bus with bounded per-subscriber history.

    Usage::

        bus = EventBus(max_queue_size=500)
        await bus.start()

        # Only events that end a job's retries
        sub_id = bus.subscribe(
            alert_on_give_up,
            event_types={RetryEventType.EXHAUSTED, RetryEventType.ABANDONED},
        )

        engine = RetryDecisionEngine(publisher=bus)
        ...
        await bus.shutdown()
    """

    def __init__(self, *, max_queue_size: int = 1000) -> None:
        self._history_size = max_queue_size
        self._subscriptions: dict[str, _Subscription] = {}
        self._queue: asyncio.Queue[RetryEvent] = asyncio.Queue()
        self._drain_task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    async def start(self) -> None:
        """Begin delivering queued events. No-op if already running."""
        if self._running:
            return
        self._running = True
        self._drain_task = asyncio.create_task(self._drain(), name="rebound-event-bus")

    async def publish(self, event: RetryEvent) -> None:
        """Queue an event for delivery. Events published before start() are dropped."""
        if not self._running:
            _logger.debug("event_bus.dropped_not_running", event_type=event.type.value)
            return
        self._queue.put_nowait(event)

    def subscribe(
        self,
        callback: EventCallback,
        *,
        event_types: Iterable[RetryEventType] | None = None,
        event_filter: EventFilter = None,
    ) -> str:
        """Register a subscriber.

        Args:
            callback: Sync or async callable receiving each RetryEvent.
            event_types: Deliver only these types (all when omitted).
            event_filter: Predicate checked after the type filter.

        Returns:
            Subscription ID to pass to unsubscribe() and recent_events().
        """
        sub_id = uuid.uuid4().hex
        self._subscriptions[sub_id] = _Subscription(
            callback=callback,
            event_types=None if event_types is None else frozenset(event_types),
            event_filter=event_filter,
            history=deque(maxlen=self._history_size),
        )
        _logger.info("event_bus.subscribed", sub_id=sub_id)
        return sub_id

    def unsubscribe(self, sub_id: str) -> bool:
        """Remove a subscriber. Returns False if the ID is unknown."""
        if self._subscriptions.pop(sub_id, None) is None:
            return False
        _logger.info("event_bus.unsubscribed", sub_id=sub_id)
        return True

    def recent_events(self, sub_id: str) -> list[RetryEvent]:
        """Events most recently delivered to a subscriber, oldest first."""
        sub = self._subscriptions.get(sub_id)
        return [] if sub is None else list(sub.history)

    async def shutdown(self) -> None:
        """Stop the drain task, then deliver whatever is still queued."""
        self._running = False
        task, self._drain_task = self._drain_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            await self._fan_out(event)

        _logger.info("event_bus.shutdown", subscribers=len(self._subscriptions))

    async def close(self) -> None:
        await self.shutdown()

    async def _drain(self) -> None:
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except TimeoutError:
                continue
            await self._fan_out(event)

    async def _fan_out(self, event: RetryEvent) -> None:
        # Snapshot: callbacks may (un)subscribe during delivery
        for sub_id, sub in list(self._subscriptions.items()):
            if sub.disabled:
                continue
            try:
                wanted = sub.wants(event)
            except Exception:
                _logger.warning(
                    "event_bus.filter_failed",
                    sub_id=sub_id,
                    event_type=event.type.value,
                    exc_info=True,
                )
                continue
            if wanted:
                sub.history.append(event)
                await self._deliver(sub_id, sub, event)

    async def _deliver(self, sub_id: str, sub: _Subscription, event: RetryEvent) -> None:
        try:
            outcome = sub.callback(event)
            if asyncio.iscoroutine(outcome):
                await outcome
        except Exception:
            sub.failures += 1
            _logger.warning(
                "event_bus.callback_failed",
                sub_id=sub_id,
                event_type=event.type.value,
                failures=sub.failures,
                exc_info=True,
            )
            if sub.disabled:
                _logger.error(
                    "event_bus.subscriber_disabled",
                    sub_id=sub_id,
                    failures=sub.failures,
                )
            return
        sub.failures = 0


__all__ = ["DISABLE_AFTER_FAILURES", "EventBus"]
