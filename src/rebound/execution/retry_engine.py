"""Retry decision engine.

Evaluates one failed job at a time:

    classify -> record attempt -> retryable? -> budget left? -> remediator
             -> compute delay -> publish lifecycle event -> RetryDecision

The engine never raises for job failures. Attempt recording and event
publishing are best-effort side channels bounded by a short timeout; an
unexpected internal error produces a conservative fallback decision under
the global default policy.

Example usage:
    engine = RetryDecisionEngine(recorder=InMemoryAttemptRecorder())

    decision = await engine.decide(
        JobFailureContext(
            job_id="job-17",
            queue_name="codegen",
            attempts_made=job.attempts_made,
            error=FailureInfo.from_exception(exc),
            payload=job.data,
        )
    )
    if decision.should_retry:
        await queue.enqueue(job, delay_ms=decision.delay_ms)
    elif decision.move_to_dead_letter:
        await dead_letter.put(job, reason=decision.reason)
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from types import TracebackType
from typing import TYPE_CHECKING, Any

from rebound.core.constants import (
    ERROR_SUMMARY_MAX_CHARS,
    LOG_ERROR_PREVIEW_CHARS,
    REMEDIATION_TIMEOUT_SECONDS,
    SIDE_CHANNEL_TIMEOUT_SECONDS,
    STATS_DEFAULT_WINDOW_HOURS,
)
from rebound.core.errors import (
    ANALYSIS_FALLBACK,
    CUSTOM_HANDLER_REJECTION,
    UNKNOWN_CATEGORY,
    CategoryRegistry,
    ErrorCategory,
    ErrorClassifier,
    JobFailureContext,
    RegistrySnapshot,
    RetryDecision,
)
from rebound.core.logging import JobContext, get_logger, with_context
from rebound.core.policy import RetryPolicy
from rebound.events.base import EventPublisher, NullEventPublisher
from rebound.events.types import RetryEvent, RetryEventType
from rebound.events.webhook import WebhookEventPublisher
from rebound.execution.backoff import DelayCalculator, UniformSource, backoff_delay
from rebound.state.base import AttemptRecorder, RetryStats
from rebound.state.memory import InMemoryAttemptRecorder
from rebound.state.sqlite_backend import SQLiteAttemptRecorder

if TYPE_CHECKING:
    from rebound.core.config import EngineConfig, RecorderConfig

_logger = get_logger("retry_engine")


def create_recorder(config: RecorderConfig) -> AttemptRecorder:
    """Build the configured attempt recorder (not yet opened)."""
    if config.backend == "sqlite":
        return SQLiteAttemptRecorder(config.path)
    return InMemoryAttemptRecorder()


class RetryDecisionEngine:
    """Decides retry, dead-letter or abandon for every failed job.

    Safe to call concurrently from many tasks. Each decision works on one
    registry snapshot; the only shared state is the copy-on-write registry.
    The recorder and publisher are injected; both are called once per
    decision and their failures never change the returned decision.
    """

    def __init__(
        self,
        registry: CategoryRegistry | None = None,
        recorder: AttemptRecorder | None = None,
        publisher: EventPublisher | None = None,
        rng: UniformSource | None = None,
        *,
        side_channel_timeout_seconds: float = SIDE_CHANNEL_TIMEOUT_SECONDS,
        remediation_timeout_seconds: float = REMEDIATION_TIMEOUT_SECONDS,
        error_summary_max_chars: int = ERROR_SUMMARY_MAX_CHARS,
    ) -> None:
        """Initialize the engine.

        Args:
            registry: Category registry. Defaults to the built-in categories.
            recorder: Attempt store. Defaults to an in-memory recorder.
            publisher: Lifecycle event sink. Defaults to discarding events.
            rng: Random source for jitter (inject a seeded one in tests).
            side_channel_timeout_seconds: Bound on each record/publish call.
            remediation_timeout_seconds: Bound on asynchronous remediators.
            error_summary_max_chars: Length of the stored error summary.
        """
        self._registry = registry if registry is not None else CategoryRegistry()
        self._classifier = ErrorClassifier(self._registry)
        self._recorder = recorder if recorder is not None else InMemoryAttemptRecorder()
        self._publisher = publisher if publisher is not None else NullEventPublisher()
        self._delays = DelayCalculator(rng)
        self._side_channel_timeout = side_channel_timeout_seconds
        self._remediation_timeout = remediation_timeout_seconds
        self._error_summary_max_chars = error_summary_max_chars

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        recorder: AttemptRecorder | None = None,
        publisher: EventPublisher | None = None,
        rng: UniformSource | None = None,
    ) -> RetryDecisionEngine:
        """Build an engine from configuration.

        The recorder and publisher are created from ``config.recorder`` and
        ``config.webhook`` unless given. Call :meth:`open` (or use the engine
        as an async context manager) before deciding when the recorder needs it.
        """
        if recorder is None:
            recorder = create_recorder(config.recorder)
        if publisher is None and config.webhook is not None:
            publisher = WebhookEventPublisher.from_config(config.webhook)
        return cls(
            CategoryRegistry.from_config(config),
            recorder=recorder,
            publisher=publisher,
            rng=rng,
            side_channel_timeout_seconds=config.side_channel_timeout_seconds,
            remediation_timeout_seconds=config.remediation_timeout_seconds,
            error_summary_max_chars=config.error_summary_max_chars,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def open(self) -> None:
        await self._recorder.open()

    async def close(self) -> None:
        """Close the recorder and publisher."""
        await self._recorder.close()
        await self._publisher.close()

    async def __aenter__(self) -> RetryDecisionEngine:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    # =========================================================================
    # Accessors and admin operations
    # =========================================================================

    @property
    def registry(self) -> CategoryRegistry:
        return self._registry

    @property
    def classifier(self) -> ErrorClassifier:
        return self._classifier

    @property
    def recorder(self) -> AttemptRecorder:
        return self._recorder

    @property
    def publisher(self) -> EventPublisher:
        return self._publisher

    def add_error_category(self, category: ErrorCategory, before: str | None = None) -> None:
        """Register a category; later decisions see it.

        Raises:
            ValueError: On a duplicate name or unknown ``before`` target.
        """
        self._registry.add(category, before=before)

    def update_default_policy(self, **changes: Any) -> RetryPolicy:
        """Change fields of the global default policy for later decisions."""
        return self._registry.update_default_policy(**changes)

    async def health_check(self) -> bool:
        """Whether the attempt store is reachable. Never raises."""
        try:
            return await asyncio.wait_for(
                self._recorder.health_check(), timeout=self._side_channel_timeout
            )
        except TimeoutError:
            _logger.warning("retry_engine.health_check_timeout")
        except Exception:
            _logger.warning("retry_engine.health_check_failed", exc_info=True)
        return False

    async def get_retry_stats(self, hours: float = STATS_DEFAULT_WINDOW_HOURS) -> RetryStats:
        """Per-category retry statistics from the attempt store."""
        return await self._recorder.get_retry_stats(hours)

    # =========================================================================
    # Decision
    # =========================================================================

    async def decide(self, context: JobFailureContext) -> RetryDecision:
        """Evaluate one failed job.

        Never raises; every call records one attempt and publishes one
        lifecycle event (both best-effort).

        Args:
            context: The failed job.

        Returns:
            The decision the caller should apply.
        """
        log_ctx = JobContext(
            job_id=context.job_id,
            queue_name=context.queue_name,
            attempts_made=context.attempts_made,
            run_id=context.run_id,
        )
        with with_context(log_ctx):
            snapshot = self._registry.snapshot()
            category: ErrorCategory | None = None
            try:
                category = ErrorClassifier.classify_with(
                    snapshot, context.error.classification_text
                )
                await self._record(context, category.name)
                decision, event_type = await self._evaluate(context, snapshot, category)
            except Exception:
                _logger.exception(
                    "retry_engine.analysis_failed",
                    error_preview=str(context.error.message)[:LOG_ERROR_PREVIEW_CHARS],
                )
                if category is None:
                    await self._record(context, UNKNOWN_CATEGORY.name)
                decision, event_type = self._fallback(context, snapshot.default_policy)

            await self._publish(event_type, context, decision)
            _logger.info("retry_engine.decision", **decision.to_dict())
            return decision

    async def _evaluate(
        self,
        context: JobFailureContext,
        snapshot: RegistrySnapshot,
        category: ErrorCategory,
    ) -> tuple[RetryDecision, RetryEventType]:
        attempts = context.attempts_made

        if not category.retryable:
            threshold = category.dead_letter_after or 1
            decision = RetryDecision.abandon(
                category.name,
                f"error category '{category.name}' is not retryable",
                move_to_dead_letter=attempts + 1 >= threshold,
            )
            return decision, RetryEventType.ABANDONED

        policy = snapshot.resolve_policy(category)
        if attempts >= policy.max_attempts:
            decision = RetryDecision.abandon(
                category.name,
                f"max attempts ({policy.max_attempts}) exceeded",
                move_to_dead_letter=True,
            )
            return decision, RetryEventType.EXHAUSTED

        if category.remediator is not None and not await self._run_remediator(
            category, context
        ):
            decision = RetryDecision.abandon(
                category.name,
                "custom handler rejected retry",
                move_to_dead_letter=True,
                custom_action=CUSTOM_HANDLER_REJECTION,
            )
            return decision, RetryEventType.ABANDONED

        delay_ms = self._delays.compute(attempts, policy)
        decision = RetryDecision.retry(
            delay_ms,
            category.name,
            f"retrying after {category.name} error "
            f"(attempt {attempts + 1}/{policy.max_attempts})",
        )
        return decision, RetryEventType.SCHEDULED

    def _fallback(
        self, context: JobFailureContext, policy: RetryPolicy
    ) -> tuple[RetryDecision, RetryEventType]:
        """Conservative decision under the default policy."""
        attempts = context.attempts_made
        if attempts < policy.max_attempts:
            try:
                delay_ms = self._delays.compute(attempts, policy)
            except Exception:
                _logger.warning("retry_engine.fallback_jitter_failed", exc_info=True)
                delay_ms = round(backoff_delay(attempts, policy))
            decision = RetryDecision.retry(
                delay_ms,
                UNKNOWN_CATEGORY.name,
                "fallback retry after analysis error",
                custom_action=ANALYSIS_FALLBACK,
            )
            return decision, RetryEventType.SCHEDULED

        decision = RetryDecision.abandon(
            UNKNOWN_CATEGORY.name,
            "analysis failed and max attempts reached",
            move_to_dead_letter=True,
            custom_action=ANALYSIS_FALLBACK,
        )
        return decision, RetryEventType.EXHAUSTED

    async def _run_remediator(self, category: ErrorCategory, context: JobFailureContext) -> bool:
        """Run the category's remediator. Exceptions and timeouts veto."""
        remediator = category.remediator
        assert remediator is not None
        try:
            result = remediator.attempt(context.error, context)
            if inspect.isawaitable(result):
                result = await asyncio.wait_for(result, timeout=self._remediation_timeout)
        except TimeoutError:
            _logger.warning(
                "retry_engine.remediator_timeout",
                category=category.name,
                timeout_seconds=self._remediation_timeout,
            )
            return False
        except Exception:
            _logger.exception("retry_engine.remediator_failed", category=category.name)
            return False

        if not result:
            _logger.info("retry_engine.remediator_vetoed", category=category.name)
        return bool(result)

    # =========================================================================
    # Side channels
    # =========================================================================

    async def _record(self, context: JobFailureContext, category: str) -> None:
        summary = context.error.summary(self._error_summary_max_chars)
        await self._best_effort(
            "attempt_recorder.write",
            lambda: self._recorder.record_attempt(
                context.job_id,
                category,
                context.attempts_made,
                summary,
                run_id=context.run_id,
            ),
        )

    async def _publish(
        self,
        event_type: RetryEventType,
        context: JobFailureContext,
        decision: RetryDecision,
    ) -> None:
        metadata: dict[str, Any] = {
            "category": decision.category,
            "attempts_made": context.attempts_made,
            "delay_ms": decision.delay_ms,
            "reason": decision.reason,
            "move_to_dead_letter": decision.move_to_dead_letter,
        }
        if decision.custom_action is not None:
            metadata["custom_action"] = decision.custom_action
        await self._best_effort(
            "event_publisher.publish",
            lambda: self._publisher.publish(
                RetryEvent(
                    type=event_type,
                    job_id=context.job_id,
                    queue_name=context.queue_name,
                    metadata=metadata,
                )
            ),
        )

    async def _best_effort(self, operation: str, call: Callable[[], Awaitable[None]]) -> None:
        """Await a collaborator call with a timeout, logging and swallowing failures."""
        try:
            await asyncio.wait_for(call(), timeout=self._side_channel_timeout)
        except TimeoutError:
            _logger.warning(
                f"{operation}_timeout", timeout_seconds=self._side_channel_timeout
            )
        except Exception:
            _logger.warning(f"{operation}_failed", exc_info=True)


__all__ = ["RetryDecisionEngine", "create_recorder"]
