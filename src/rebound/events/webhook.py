"""HTTP webhook publisher for retry lifecycle events using httpx.

Posts each event as JSON to a configurable endpoint so an external event
bus, alerting system or dashboard can consume it.
"""

from __future__ import annotations

import asyncio
import os
import re
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

import httpx

from rebound import __version__
from rebound.core.logging import get_logger
from rebound.events.base import EventPublisher
from rebound.events.types import RetryEvent, RetryEventType

if TYPE_CHECKING:
    from rebound.core.config import WebhookConfig

_logger = get_logger("events.webhook")

# ${VAR} references in header values
_ENV_REF = re.compile(r"\$\{(\w+)\}")

_ERROR_BODY_PREVIEW = 100


class _Transient(Exception):
    """A delivery failure worth another attempt (5xx, timeout, connection)."""


class _Rejected(Exception):
    """The endpoint refused the event (4xx); retrying will not help."""


def _env_value(name: str, header: str) -> str:
    value = os.environ.get(name)
    if value is None:
        _logger.warning("webhook.env_var_missing", header=header, var_name=name)
        return ""
    return value


class WebhookEventPublisher(EventPublisher):
    """Publishes RetryEvents to an HTTP endpoint.

    Server errors (5xx), timeouts and connection errors are retried up to
    ``max_retries`` times; client errors (4xx) are not. Failures are logged
    and never raised. publish() delivers in a background task, so a caller's
    timeout never cuts retries short; close() waits for those tasks.

    Example usage:
        publisher = WebhookEventPublisher(
            url="https://alerts.example.com/hooks/retries",
            headers={"Authorization": "Bearer ${ALERTS_TOKEN}"},
            event_types={RetryEventType.EXHAUSTED, RetryEventType.ABANDONED},
        )
        engine = RetryDecisionEngine(publisher=publisher)
    """

    def __init__(
        self,
        url: str | None = None,
        url_env: str | None = None,
        headers: dict[str, str] | None = None,
        event_types: Iterable[RetryEventType] | None = None,
        timeout: float = 5.0,
        max_retries: int = 1,
        retry_delay: float = 0.5,
    ) -> None:
        """Initialize the webhook publisher.

        Args:
            url: Endpoint URL. Takes precedence over ``url_env``.
            url_env: Environment variable to read the URL from.
            headers: Extra request headers; values may reference ${ENV_VARS}.
            event_types: Event types to forward. Defaults to all.
            timeout: Per-request timeout in seconds.
            max_retries: Extra attempts after a transient failure.
            retry_delay: Seconds to wait between attempts.
        """
        self._url = url or (os.environ.get(url_env, "") if url_env else None)
        self._headers = self._expand_env_headers(headers or {})
        self._event_types = frozenset(RetryEventType if event_types is None else event_types)
        self._timeout = timeout
        self._max_retries = max_retries
        self._retry_delay = retry_delay

        self._client: httpx.AsyncClient | None = None
        self._warned_no_url = False
        self._pending: set[asyncio.Task[bool]] = set()

    @classmethod
    def from_config(cls, config: WebhookConfig) -> WebhookEventPublisher:
        return cls(
            url=config.url,
            url_env=config.url_env,
            headers=config.headers,
            event_types=config.event_types,
            timeout=config.timeout,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
        )

    @staticmethod
    def _expand_env_headers(headers: dict[str, str]) -> dict[str, str]:
        """Substitute ${VAR} references; unset variables become empty strings."""
        expanded: dict[str, str] = {}
        for header, value in headers.items():
            expanded[header] = _ENV_REF.sub(lambda m: _env_value(m.group(1), header), value)
        return expanded

    @property
    def event_types(self) -> frozenset[RetryEventType]:
        return self._event_types

    @staticmethod
    def _build_payload(event: RetryEvent) -> dict[str, Any]:
        return {
            "event_type": event.type.value,
            "event": event.to_payload(),
            "source": {"name": "rebound", "version": __version__},
        }

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout), headers=self._headers
            )
        return self._client

    async def _post_once(self, client: httpx.AsyncClient, payload: dict[str, Any]) -> None:
        """One delivery attempt.

        Raises:
            _Transient: On a 5xx response, timeout or connection error.
            _Rejected: On any other non-success response.
        """
        assert self._url, "webhook URL is not configured"
        try:
            response = await client.post(self._url, json=payload)
        except httpx.TimeoutException as e:
            raise _Transient("request timed out") from e
        except httpx.RequestError as e:
            raise _Transient(str(e)) from e

        if response.is_success:
            return
        detail = f"HTTP {response.status_code}: {response.text[:_ERROR_BODY_PREVIEW]}"
        if response.status_code >= 500:
            raise _Transient(detail)
        raise _Rejected(detail)

    async def _deliver(self, payload: dict[str, Any]) -> str | None:
        """Post with retries. Returns None on success, else the last error."""
        client = await self._get_client()
        error: str | None = None
        for attempt in range(1, self._max_retries + 2):
            if attempt > 1:
                await asyncio.sleep(self._retry_delay)
            try:
                await self._post_once(client, payload)
                return None
            except _Transient as e:
                error = str(e)
                _logger.debug("webhook.attempt_failed", attempt=attempt, error=error)
            except _Rejected as e:
                return str(e)
        return error

    async def send(self, event: RetryEvent) -> bool:
        """Post one event.

        Returns:
            True if delivered or filtered out, False if no URL is configured
            or delivery failed.
        """
        if not self._url:
            if not self._warned_no_url:
                _logger.warning("webhook.url_not_configured")
                self._warned_no_url = True
            return False
        if event.type not in self._event_types:
            return True

        try:
            error = await self._deliver(self._build_payload(event))
        except Exception as e:
            _logger.warning("webhook.unexpected_error", error=str(e), exc_info=True)
            return False

        if error is None:
            _logger.debug("webhook.event_sent", event_type=event.type.value, job_id=event.job_id)
            return True
        _logger.warning(
            "webhook.event_failed",
            event_type=event.type.value,
            job_id=event.job_id,
            error=error,
        )
        return False

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _drain_timeout(self) -> float:
        """Longest a single send can take, retries included."""
        return (self._max_retries + 1) * self._timeout + self._max_retries * self._retry_delay

    async def publish(self, event: RetryEvent) -> None:
        """Start delivering an event in the background and return at once.

        Delivery (retries included) outlives the caller's timeout; close()
        waits for deliveries still in flight.
        """
        task = asyncio.create_task(self.send(event), name=f"rebound-webhook-{event.job_id}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def close(self) -> None:
        """Wait for in-flight deliveries, then close the pooled HTTP client."""
        if self._pending:
            _logger.debug("webhook.draining", pending=len(self._pending))
            done, _ = await asyncio.wait(self._pending, timeout=self._drain_timeout())
            for task in self._pending - done:
                task.cancel()
            self._pending.clear()

        client, self._client = self._client, None
        if client is not None and not client.is_closed:
            await client.aclose()


__all__ = ["WebhookEventPublisher"]
