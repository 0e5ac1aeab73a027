"""Tests for the retry engine state machine."""

from __future__ import annotations

from unittest.mock import AsyncMock, call, patch

import pytest

from llm_dispatch.gateway.retry import RetryEngine
from llm_dispatch.gateway.types import (
    AttemptResult,
    ErrorClass,
    FailureReason,
    ModelTreatment,
    PreparedCall,
    UsageMetadata,
)

PREPARED = PreparedCall(
    task_type="extract",
    model_name="m1",
    treatment=ModelTreatment.NON_TUNED,
    body={"contents": []},
)

OK = AttemptResult.success('{"a": 1}', UsageMetadata(total_token_count=3))
TRANSIENT = AttemptResult.failure(ErrorClass.TRANSIENT_SERVER_ERROR, "503 unavailable")
MALFORMED = AttemptResult.failure(ErrorClass.MALFORMED_RESPONSE, "not JSON")
SAFETY = AttemptResult.failure(ErrorClass.SAFETY_BLOCKED, "blocked: SAFETY")
STALE = AttemptResult.failure(ErrorClass.STALE_CACHE, "CachedContent not found")


def rate_limited(ms: int) -> AttemptResult:
    return AttemptResult.failure(ErrorClass.INTERNAL_RATE_LIMIT, "limiter", retry_after_ms=ms)


def scripted(*results: AttemptResult) -> AsyncMock:
    return AsyncMock(side_effect=list(results))


@pytest.fixture
def engine():
    return RetryEngine(initial_delay_ms=1000, max_delay_ms=30000)


class TestAttemptResult:
    def test_usage_alone_counts_as_success(self):
        assert AttemptResult.success("", UsageMetadata()).succeeded is True

    def test_empty_result_is_not_success(self):
        assert AttemptResult.success("", None).succeeded is False


class TestRetryEngine:
    @pytest.mark.asyncio
    async def test_success_first_attempt(self, engine, no_sleep):
        attempt_fn = scripted(OK)

        outcome = await engine.execute(attempt_fn, PREPARED, max_attempts=5)

        assert outcome.succeeded is True
        assert outcome.first_attempt_failed is False
        assert outcome.attempts == 1
        assert outcome.response_text == '{"a": 1}'
        assert outcome.usage_metadata.total_token_count == 3
        attempt_fn.assert_awaited_once_with(PREPARED)
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_single_shot_failure_exits_without_backoff(self, engine, no_sleep):
        attempt_fn = scripted(TRANSIENT, OK)

        outcome = await engine.execute(attempt_fn, PREPARED, max_attempts=1)

        assert outcome.succeeded is False
        assert outcome.failure_reason == FailureReason.FAILED_FIRST_ATTEMPT
        assert outcome.error_class == ErrorClass.TRANSIENT_SERVER_ERROR
        assert attempt_fn.await_count == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_single_shot_rate_limit_exits_immediately(self, engine, no_sleep):
        attempt_fn = scripted(rate_limited(2000), OK)

        outcome = await engine.execute(attempt_fn, PREPARED, max_attempts=1)

        assert outcome.failure_reason == FailureReason.FAILED_FIRST_ATTEMPT
        assert outcome.error_class == ErrorClass.INTERNAL_RATE_LIMIT
        assert attempt_fn.await_count == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limit_wait_does_not_consume_attempts(self, engine, no_sleep):
        attempt_fn = scripted(rate_limited(200), rate_limited(300), TRANSIENT, OK)

        outcome = await engine.execute(attempt_fn, PREPARED, max_attempts=2)

        assert outcome.succeeded is True
        assert outcome.attempts == 2
        assert outcome.first_attempt_failed is True
        assert attempt_fn.await_count == 4
        assert no_sleep.await_args_list == [call(0.2), call(0.3), call(1.0)]

    @pytest.mark.asyncio
    async def test_exhausted_retries(self, engine, no_sleep):
        attempt_fn = scripted(TRANSIENT, MALFORMED, TRANSIENT)

        outcome = await engine.execute(attempt_fn, PREPARED, max_attempts=3)

        assert outcome.succeeded is False
        assert outcome.failure_reason == FailureReason.EXHAUSTED_RETRIES
        assert outcome.error_class == ErrorClass.TRANSIENT_SERVER_ERROR
        assert outcome.attempts == 3
        assert no_sleep.await_args_list == [call(1.0), call(2.0)]

    @pytest.mark.asyncio
    async def test_delays_non_decreasing_and_capped(self, no_sleep):
        engine = RetryEngine(initial_delay_ms=1000, max_delay_ms=2500)
        attempt_fn = scripted(*([TRANSIENT] * 5))

        await engine.execute(attempt_fn, PREPARED, max_attempts=5)

        delays = [c.args[0] for c in no_sleep.await_args_list]
        assert delays == [1.0, 2.0, 2.5, 2.5]
        assert delays == sorted(delays)

    @pytest.mark.asyncio
    async def test_jitter_added_to_delay(self, engine):
        attempt_fn = scripted(TRANSIENT, OK)

        with (
            patch("llm_dispatch.gateway.retry.asyncio.sleep", new_callable=AsyncMock) as mock_sleep,
            patch("llm_dispatch.gateway.retry.random.uniform", return_value=250) as mock_uniform,
        ):
            await engine.execute(attempt_fn, PREPARED, max_attempts=3)

        mock_uniform.assert_called_once_with(0, 500)
        mock_sleep.assert_awaited_once_with(1.25)

    @pytest.mark.asyncio
    async def test_safety_block_never_retried(self, engine, no_sleep):
        attempt_fn = scripted(SAFETY, OK)

        outcome = await engine.execute(attempt_fn, PREPARED, max_attempts=5)

        assert outcome.succeeded is False
        assert outcome.failure_reason == FailureReason.NON_RETRYABLE_ERROR
        assert outcome.error_class == ErrorClass.SAFETY_BLOCKED
        assert attempt_fn.await_count == 1
        no_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stale_cache_invalidates_before_retry(self, engine, no_sleep):
        attempt_fn = scripted(STALE, OK)
        on_stale = AsyncMock()

        outcome = await engine.execute(attempt_fn, PREPARED, max_attempts=3, on_stale_cache=on_stale)

        assert outcome.succeeded is True
        on_stale.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stale_cache_invalidates_on_single_shot(self, engine, no_sleep):
        on_stale = AsyncMock()

        outcome = await engine.execute(scripted(STALE), PREPARED, max_attempts=1, on_stale_cache=on_stale)

        assert outcome.failure_reason == FailureReason.FAILED_FIRST_ATTEMPT
        on_stale.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unclassified_is_retryable(self, engine, no_sleep):
        attempt_fn = scripted(AttemptResult.failure(ErrorClass.UNCLASSIFIED, "?"), OK)

        outcome = await engine.execute(attempt_fn, PREPARED, max_attempts=2)

        assert outcome.succeeded is True
        assert outcome.attempts == 2

    def test_calculate_next_delay(self):
        assert RetryEngine.calculate_next_delay(1000, 30000) == 2000
        assert RetryEngine.calculate_next_delay(20000, 30000) == 30000
