"""Tests for rebound.execution.retry_engine.

Covers the decision state machine, the reference scenarios, remediator
handling, best-effort side channels, the conservative fallback path,
concurrency and admin changes between decisions.
"""

from __future__ import annotations

import asyncio
import dataclasses
import random
import textwrap
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from structlog.testing import capture_logs

from rebound.core.config import EngineConfig
from rebound.core.errors import (
    CategoryRegistry,
    DecisionOutcome,
    ErrorCategory,
    RegistrySnapshot,
)
from rebound.core.logging import get_current_context
from rebound.core.policy import PolicyOverride, RetryPolicy
from rebound.events.base import EventPublisher
from rebound.events.types import RetryEvent, RetryEventType
from rebound.execution.backoff import DelayCalculator
from rebound.execution.remediation import CallableRemediator
from rebound.execution.retry_engine import RetryDecisionEngine, create_recorder
from rebound.state import AttemptRecorder, InMemoryAttemptRecorder, SQLiteAttemptRecorder
from tests.helpers import make_context

# ─── Helpers ──────────────────────────────────────────────────────────


class RecordingPublisher(EventPublisher):
    """Publisher that keeps every event."""

    def __init__(self) -> None:
        self.events: list[RetryEvent] = []

    async def publish(self, event: RetryEvent) -> None:
        self.events.append(event)


class SlowRecorder(InMemoryAttemptRecorder):
    async def record_attempt(self, *args, **kwargs) -> None:
        await asyncio.sleep(10)


class _RaisingUniform:
    def uniform(self, a: float, b: float) -> float:
        raise RuntimeError("entropy pool empty")


def _registry_with(*categories: ErrorCategory) -> CategoryRegistry:
    return CategoryRegistry(list(categories))


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def engine(recorder, publisher, rng) -> RetryDecisionEngine:
    return RetryDecisionEngine(recorder=recorder, publisher=publisher, rng=rng)


# ─── Reference scenarios ──────────────────────────────────────────────


class TestScenarios:
    """End-to-end decisions for the documented reference cases."""

    @pytest.mark.asyncio
    async def test_connection_reset_first_failure(self, engine):
        decision = await engine.decide(make_context("ECONNRESET", 0))
        assert decision.should_retry is True
        assert decision.category == "network_timeout"
        assert 1900 <= decision.delay_ms <= 2100
        assert decision.reason == "retrying after network_timeout error (attempt 1/5)"

    @pytest.mark.asyncio
    async def test_rate_limit_with_one_attempt_left(self, engine):
        decision = await engine.decide(make_context("429 Too Many Requests", 9))
        assert decision.should_retry is True
        assert decision.category == "rate_limit"
        assert 285_000 <= decision.delay_ms <= 300_000  # capped, then jittered

    @pytest.mark.asyncio
    @pytest.mark.parametrize("attempts", [0, 1, 5, 50])
    async def test_invalid_api_key_always_dead_letters(self, engine, attempts):
        decision = await engine.decide(make_context("invalid api key", attempts))
        assert decision.should_retry is False
        assert decision.move_to_dead_letter is True
        assert decision.category == "auth_error"
        assert decision.outcome is DecisionOutcome.DEAD_LETTER

    @pytest.mark.asyncio
    async def test_unrecognized_error_retries_under_default(self, engine):
        decision = await engine.decide(make_context("flux capacitor overload", 0))
        assert decision.category == "unknown"
        assert decision.should_retry is True
        assert decision.reason == "retrying after unknown error (attempt 1/3)"


# ─── State machine ────────────────────────────────────────────────────


class TestNonRetryable:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("attempts", [0, 1, 2, 10])
    async def test_never_retries(self, engine, attempts):
        decision = await engine.decide(make_context("blocked by content filter", attempts))
        assert decision.should_retry is False
        assert decision.delay_ms == 0
        assert decision.reason == "error category 'content_policy_violation' is not retryable"

    @pytest.mark.asyncio
    async def test_dead_letter_threshold_counts_current_attempt(self, recorder):
        category = ErrorCategory.from_strings(
            "quota_hard", [r"hard quota"], retryable=False, dead_letter_after=3
        )
        engine = RetryDecisionEngine(_registry_with(category), recorder=recorder)
        early = await engine.decide(make_context("hard quota reached", 0))
        late = await engine.decide(make_context("hard quota reached", 2))
        assert early.move_to_dead_letter is False
        assert early.outcome is DecisionOutcome.ABANDON
        assert late.move_to_dead_letter is True

    @pytest.mark.asyncio
    async def test_publishes_abandoned(self, engine, publisher):
        await engine.decide(make_context("401 Unauthorized", 0))
        assert [e.type for e in publisher.events] == [RetryEventType.ABANDONED]

    @pytest.mark.asyncio
    async def test_remediator_not_consulted(self, recorder):
        hook = MagicMock(return_value=True)
        category = ErrorCategory.from_strings(
            "fatal", [r"fatal"], retryable=False, remediator=CallableRemediator(hook)
        )
        engine = RetryDecisionEngine(_registry_with(category), recorder=recorder)
        await engine.decide(make_context("fatal error", 0))
        hook.assert_not_called()


class TestAttemptBudget:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(("attempts", "should_retry"), [(0, True), (2, True), (3, False)])
    async def test_budget_boundary(self, engine, attempts, should_retry):
        decision = await engine.decide(make_context("kaboom", attempts))
        assert decision.should_retry is should_retry

    @pytest.mark.asyncio
    async def test_exhausted_dead_letters(self, engine, publisher):
        decision = await engine.decide(make_context("ECONNRESET", 5))
        assert decision.should_retry is False
        assert decision.move_to_dead_letter is True
        assert decision.reason == "max attempts (5) exceeded"
        assert publisher.events[-1].type is RetryEventType.EXHAUSTED

    @pytest.mark.asyncio
    async def test_remediator_not_consulted_when_exhausted(self, recorder):
        hook = MagicMock(return_value=True)
        category = ErrorCategory.from_strings(
            "flaky",
            [r"flaky"],
            policy_override=PolicyOverride(max_attempts=1),
            remediator=CallableRemediator(hook),
        )
        engine = RetryDecisionEngine(_registry_with(category), recorder=recorder)
        decision = await engine.decide(make_context("flaky backend", 1))
        assert decision.should_retry is False
        hook.assert_not_called()


class TestDelay:
    @pytest.mark.asyncio
    async def test_delay_within_documented_bounds(self, engine, registry):
        policy = registry.snapshot().resolve_policy(registry.get("network_timeout"))
        low, high = DelayCalculator.bounds(2, policy)
        for _ in range(50):
            decision = await engine.decide(make_context("socket hang up", 2))
            assert low <= decision.delay_ms <= high

    @pytest.mark.asyncio
    async def test_seeded_engines_agree(self):
        a = RetryDecisionEngine(rng=random.Random(3))
        b = RetryDecisionEngine(rng=random.Random(3))
        ctx = make_context("502 Bad Gateway", 1)
        assert await a.decide(ctx) == await b.decide(ctx)

    @pytest.mark.asyncio
    async def test_publishes_scheduled_with_metadata(self, engine, publisher):
        decision = await engine.decide(make_context("ECONNRESET", 1, job_id="j-9"))
        event = publisher.events[-1]
        assert event.type is RetryEventType.SCHEDULED
        assert event.job_id == "j-9"
        assert event.queue_name == "codegen"
        assert event.metadata["category"] == "network_timeout"
        assert event.metadata["attempts_made"] == 1
        assert event.metadata["delay_ms"] == decision.delay_ms
        assert event.metadata["reason"] == decision.reason


class TestIdempotence:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "message", ["ECONNRESET", "invalid api key", "kaboom", "out of memory", "bad request"]
    )
    async def test_same_input_same_decision(self, engine, message):
        first = await engine.decide(make_context(message, 1))
        second = await engine.decide(make_context(message, 1))
        assert dataclasses.replace(first, delay_ms=0) == dataclasses.replace(second, delay_ms=0)


# ─── Remediators ──────────────────────────────────────────────────────


class TestRemediators:
    def _engine(self, remediator, recorder, publisher, timeout=5.0) -> RetryDecisionEngine:
        category = ErrorCategory.from_strings("repairable", [r"repairable"], remediator=remediator)
        return RetryDecisionEngine(
            _registry_with(category),
            recorder=recorder,
            publisher=publisher,
            remediation_timeout_seconds=timeout,
        )

    @pytest.mark.asyncio
    async def test_veto_dead_letters_with_attempts_left(self, recorder, publisher):
        engine = self._engine(CallableRemediator(lambda e, c: False), recorder, publisher)
        decision = await engine.decide(make_context("repairable failure", 0))
        assert decision.should_retry is False
        assert decision.move_to_dead_letter is True
        assert decision.reason == "custom handler rejected retry"
        assert decision.custom_action == "custom_handler_rejection"
        assert publisher.events[-1].type is RetryEventType.ABANDONED

    @pytest.mark.asyncio
    async def test_approval_proceeds_to_retry(self, recorder, publisher):
        engine = self._engine(CallableRemediator(lambda e, c: True), recorder, publisher)
        decision = await engine.decide(make_context("repairable failure", 0))
        assert decision.should_retry is True
        assert decision.custom_action is None

    @pytest.mark.asyncio
    async def test_async_remediator_awaited(self, recorder, publisher):
        async def approve(error, context):
            context.payload["repaired"] = True
            return True

        engine = self._engine(CallableRemediator(approve), recorder, publisher)
        context = make_context("repairable failure", 0)
        decision = await engine.decide(context)
        assert decision.should_retry is True
        assert context.payload["repaired"] is True

    @pytest.mark.asyncio
    async def test_exception_is_veto(self, recorder, publisher):
        def explode(error, context):
            raise RuntimeError("hook crashed")

        engine = self._engine(CallableRemediator(explode), recorder, publisher)
        decision = await engine.decide(make_context("repairable failure", 0))
        assert decision.should_retry is False
        assert decision.move_to_dead_letter is True
        assert decision.custom_action == "custom_handler_rejection"

    @pytest.mark.asyncio
    async def test_timeout_is_veto(self, recorder, publisher):
        async def stall(error, context):
            await asyncio.sleep(10)
            return True

        engine = self._engine(CallableRemediator(stall), recorder, publisher, timeout=0.05)
        decision = await asyncio.wait_for(
            engine.decide(make_context("repairable failure", 0)), timeout=2
        )
        assert decision.should_retry is False
        assert decision.custom_action == "custom_handler_rejection"

    @pytest.mark.asyncio
    async def test_invoked_once_per_failure(self, recorder, publisher):
        hook = MagicMock(return_value=True)
        engine = self._engine(CallableRemediator(hook), recorder, publisher)
        for attempt in range(3):
            await engine.decide(make_context("repairable failure", attempt))
        assert hook.call_count == 3

    @pytest.mark.asyncio
    async def test_structural_repair_when_configured_retryable(self, recorder, publisher):
        registry = CategoryRegistry()
        structural = registry.get("structural_validation_error")
        registry.replace(dataclasses.replace(structural, retryable=True))
        engine = RetryDecisionEngine(registry, recorder=recorder, publisher=publisher)

        context = make_context(
            "AST validation failed: missing import",
            0,
            payload={"generated_code": "const x = y"},
        )
        decision = await engine.decide(context)
        assert decision.should_retry is True
        assert context.payload["retry_context"]["fix_attempt"] is True

        unfixable = make_context("AST validation failed: wrong arity", 0, payload={})
        vetoed = await engine.decide(unfixable)
        assert vetoed.should_retry is False
        assert vetoed.move_to_dead_letter is True


# ─── Side channels ────────────────────────────────────────────────────


class TestAttemptRecording:
    @pytest.mark.asyncio
    async def test_every_decision_records_once(self, publisher):
        mock_recorder = AsyncMock(spec=AttemptRecorder)
        engine = RetryDecisionEngine(recorder=mock_recorder, publisher=publisher)
        for message in ["ECONNRESET", "invalid api key", "kaboom"]:
            await engine.decide(make_context(message, 0))
        assert mock_recorder.record_attempt.await_count == 3
        assert len(publisher.events) == 3

    @pytest.mark.asyncio
    async def test_record_contents(self, engine, recorder):
        await engine.decide(make_context("HTTP 503 upstream", 2, job_id="j-1", run_id="r-7"))
        record = await recorder.get_record("j-1", "r-7")
        assert record is not None
        assert record.category == "server_error"
        assert record.attempts_made == 2
        assert record.last_error_summary == "HTTP 503 upstream"

    @pytest.mark.asyncio
    async def test_summary_truncated(self, recorder):
        engine = RetryDecisionEngine(recorder=recorder, error_summary_max_chars=10)
        await engine.decide(make_context("x" * 50, 0, job_id="long"))
        record = await recorder.get_record("long")
        assert record.last_error_summary == "x" * 10

    @pytest.mark.asyncio
    async def test_summary_includes_code(self, engine, recorder):
        await engine.decide(make_context("upstream rejected", 0, code=429))
        record = await recorder.get_record("job-1")
        assert record.last_error_summary == "upstream rejected (code=429)"
        assert record.category == "rate_limit"

    @pytest.mark.asyncio
    async def test_recorder_failure_does_not_change_decision(self, publisher, rng):
        failing = AsyncMock(spec=AttemptRecorder)
        failing.record_attempt.side_effect = RuntimeError("database is locked")
        engine = RetryDecisionEngine(recorder=failing, publisher=publisher, rng=rng)
        decision = await engine.decide(make_context("ECONNRESET", 0))
        assert decision.should_retry is True
        assert decision.category == "network_timeout"
        assert decision.custom_action is None
        assert len(publisher.events) == 1

    @pytest.mark.asyncio
    async def test_slow_recorder_is_bounded(self, publisher):
        engine = RetryDecisionEngine(
            recorder=SlowRecorder(), publisher=publisher, side_channel_timeout_seconds=0.05
        )
        decision = await asyncio.wait_for(engine.decide(make_context("ECONNRESET", 0)), timeout=2)
        assert decision.should_retry is True

    @pytest.mark.asyncio
    async def test_unopened_sqlite_recorder_is_absorbed(self, tmp_path, publisher):
        engine = RetryDecisionEngine(
            recorder=SQLiteAttemptRecorder(tmp_path / "a.db"), publisher=publisher
        )
        decision = await engine.decide(make_context("invalid api key", 0))
        assert decision.move_to_dead_letter is True


class TestEventPublishing:
    @pytest.mark.asyncio
    async def test_publisher_failure_does_not_change_decision(self, recorder):
        failing = AsyncMock(spec=EventPublisher)
        failing.publish.side_effect = ConnectionError("bus down")
        engine = RetryDecisionEngine(recorder=recorder, publisher=failing)
        decision = await engine.decide(make_context("kaboom", 0))
        assert decision.should_retry is True
        failing.publish.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_slow_publisher_is_bounded(self, recorder):
        class Stalling(EventPublisher):
            async def publish(self, event):
                await asyncio.sleep(10)

        engine = RetryDecisionEngine(
            recorder=recorder, publisher=Stalling(), side_channel_timeout_seconds=0.05
        )
        decision = await asyncio.wait_for(engine.decide(make_context("kaboom", 0)), timeout=2)
        assert decision.should_retry is True

    @pytest.mark.asyncio
    async def test_one_event_per_decision(self, engine, publisher):
        await engine.decide(make_context("ECONNRESET", 0))
        await engine.decide(make_context("ECONNRESET", 5))
        await engine.decide(make_context("forbidden", 0))
        assert [e.type for e in publisher.events] == [
            RetryEventType.SCHEDULED,
            RetryEventType.EXHAUSTED,
            RetryEventType.ABANDONED,
        ]


# ─── Fallback ─────────────────────────────────────────────────────────


class TestFallback:
    """Unexpected internal errors produce a conservative decision."""

    @pytest.mark.asyncio
    async def test_retries_under_default_when_attempts_remain(self, engine, recorder, publisher):
        with patch.object(
            RegistrySnapshot, "resolve_policy", side_effect=RuntimeError("corrupt override")
        ):
            decision = await engine.decide(make_context("ECONNRESET", 1))
        assert decision.should_retry is True
        assert decision.category == "unknown"
        assert decision.reason == "fallback retry after analysis error"
        assert decision.custom_action == "analysis_fallback"
        assert 1900 <= decision.delay_ms <= 2100
        assert publisher.events[-1].type is RetryEventType.SCHEDULED
        assert len(recorder.records) == 1

    @pytest.mark.asyncio
    async def test_dead_letters_when_default_budget_spent(self, engine, publisher):
        with patch.object(
            RegistrySnapshot, "resolve_policy", side_effect=RuntimeError("corrupt override")
        ):
            decision = await engine.decide(make_context("ECONNRESET", 3))
        assert decision.should_retry is False
        assert decision.move_to_dead_letter is True
        assert decision.reason == "analysis failed and max attempts reached"
        assert publisher.events[-1].type is RetryEventType.EXHAUSTED

    @pytest.mark.asyncio
    async def test_broken_jitter_source_falls_back_to_plain_backoff(self, recorder):
        engine = RetryDecisionEngine(recorder=recorder, rng=_RaisingUniform())
        decision = await engine.decide(make_context("kaboom", 1))
        assert decision.should_retry is True
        assert decision.delay_ms == 2000
        assert decision.custom_action == "analysis_fallback"

    @pytest.mark.asyncio
    async def test_fallback_is_logged(self, engine):
        with capture_logs() as logs:
            with patch.object(
                RegistrySnapshot, "resolve_policy", side_effect=RuntimeError("corrupt")
            ):
                await engine.decide(make_context("ECONNRESET", 0))
        events = [entry["event"] for entry in logs]
        assert "retry_engine.analysis_failed" in events
        assert "retry_engine.decision" in events


# ─── Concurrency and admin ────────────────────────────────────────────


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_decisions(self, engine, recorder, publisher):
        messages = ["ECONNRESET", "429", "invalid api key", "kaboom", "out of memory"]
        contexts = [
            make_context(messages[i % len(messages)], i % 3, job_id=f"job-{i}")
            for i in range(100)
        ]
        decisions = await asyncio.gather(*(engine.decide(c) for c in contexts))
        assert len(decisions) == 100
        assert len(recorder.records) == 100
        assert len(publisher.events) == 100
        for context, decision in zip(contexts, decisions, strict=True):
            record = await recorder.get_record(context.job_id)
            assert record.category == decision.category

    @pytest.mark.asyncio
    async def test_job_context_isolated_per_decision(self, recorder):
        seen: list[tuple[str, str | None]] = []

        async def observe(error, context):
            await asyncio.sleep(0)
            current = get_current_context()
            seen.append((context.job_id, current.job_id if current else None))
            return True

        category = ErrorCategory.from_strings(
            "observed", [r"observed"], remediator=CallableRemediator(observe)
        )
        engine = RetryDecisionEngine(_registry_with(category), recorder=recorder)
        await asyncio.gather(
            *(engine.decide(make_context("observed", 0, job_id=f"j-{i}")) for i in range(10))
        )
        assert len(seen) == 10
        assert all(job_id == current for job_id, current in seen)
        assert get_current_context() is None

    @pytest.mark.asyncio
    async def test_decision_is_logged(self, engine):
        with capture_logs() as logs:
            await engine.decide(make_context("kaboom", 0, job_id="ctx-job"))
        decision_logs = [e for e in logs if e["event"] == "retry_engine.decision"]
        assert decision_logs
        assert decision_logs[0]["category"] == "unknown"
        assert decision_logs[0]["outcome"] == "retry"


class TestAdmin:
    @pytest.mark.asyncio
    async def test_added_category_applies_to_later_decisions(self, engine):
        before = await engine.decide(make_context("CUDA out of memory", 0))
        assert before.category == "resource_exhausted"

        engine.add_error_category(
            ErrorCategory.from_strings("gpu_oom", [r"CUDA out of memory"], retryable=False),
            before="resource_exhausted",
        )
        after = await engine.decide(make_context("CUDA out of memory", 0))
        assert after.category == "gpu_oom"
        assert after.should_retry is False

    @pytest.mark.asyncio
    async def test_update_default_policy(self, engine):
        policy = engine.update_default_policy(max_attempts=1)
        assert policy == RetryPolicy(max_attempts=1)
        decision = await engine.decide(make_context("kaboom", 1))
        assert decision.should_retry is False
        assert decision.reason == "max attempts (1) exceeded"

    def test_exposes_registry_and_classifier(self, engine):
        assert engine.classifier.registry is engine.registry
        assert engine.classifier.classify("ECONNRESET").name == "network_timeout"


class TestLifecycleAndHealth:
    @pytest.mark.asyncio
    async def test_health_check_in_memory(self, engine):
        assert await engine.health_check() is True

    @pytest.mark.asyncio
    async def test_health_check_failure_returns_false(self):
        recorder = AsyncMock(spec=AttemptRecorder)
        recorder.health_check.side_effect = RuntimeError("gone")
        assert await RetryDecisionEngine(recorder=recorder).health_check() is False

    @pytest.mark.asyncio
    async def test_sqlite_engine_context_manager(self, tmp_path):
        config = EngineConfig.model_validate(
            {"recorder": {"backend": "sqlite", "path": str(tmp_path / "attempts.db")}}
        )
        async with RetryDecisionEngine.from_config(config) as engine:
            assert isinstance(engine.recorder, SQLiteAttemptRecorder)
            assert await engine.health_check() is True
            await engine.decide(make_context("ECONNRESET", 0, job_id="persisted"))
            stats = await engine.get_retry_stats(hours=1)
        assert stats.total_records == 1
        assert stats.categories[0].category == "network_timeout"

    def test_from_config_applies_overrides(self):
        config = EngineConfig.from_yaml_string(
            textwrap.dedent(
                """
            default_policy: {max_attempts: 4}
            side_channel_timeout_seconds: 0.5
            categories:
              - name: rate_limit
                policy: {max_attempts: 20}
                """
            )
        )
        engine = RetryDecisionEngine.from_config(config)
        snapshot = engine.registry.snapshot()
        assert snapshot.default_policy.max_attempts == 4
        assert snapshot.resolve_policy(snapshot.get("rate_limit")).max_attempts == 20
        assert isinstance(engine.recorder, InMemoryAttemptRecorder)

    @pytest.mark.asyncio
    async def test_webhook_delivery_not_cut_by_side_channel_timeout(self):
        config = EngineConfig.model_validate(
            {
                "side_channel_timeout_seconds": 0.01,
                "webhook": {"url": "https://example.com/hook", "retry_delay": 0},
            }
        )

        async def slow_post(url, json):
            await asyncio.sleep(0.05)
            response = MagicMock()
            response.is_success = True
            return response

        client = AsyncMock()
        client.is_closed = False
        client.post = AsyncMock(side_effect=slow_post)

        async with RetryDecisionEngine.from_config(config) as engine:
            engine.publisher._client = client
            decision = await engine.decide(make_context("ECONNRESET", 0))
        assert decision.should_retry is True
        client.post.assert_awaited_once()

    def test_create_recorder(self, tmp_path):
        config = EngineConfig.model_validate(
            {"recorder": {"backend": "sqlite", "path": str(tmp_path / "x.db")}}
        )
        assert isinstance(create_recorder(config.recorder), SQLiteAttemptRecorder)
        assert isinstance(create_recorder(EngineConfig().recorder), InMemoryAttemptRecorder)
