"""Retry Engine: runs one prepared call under a bounded attempt budget.

States: ATTEMPTING -> SUCCESS | RETRYABLE_FAILURE | NON_RETRYABLE_FAILURE |
RATE_LIMITED_WAIT. The engine never builds requests itself; it is given an
attempt function that turns a ``PreparedCall`` into an ``AttemptResult``.

Usage:
    engine = RetryEngine(initial_delay_ms=1000, max_delay_ms=30000)
    outcome = await engine.execute(attempt_fn, prepared, max_attempts=5)
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable

from llm_dispatch.gateway.types import (
    AttemptResult,
    ErrorClass,
    FailureReason,
    PreparedCall,
    RetryOutcome,
)

logger = logging.getLogger(__name__)

AttemptFn = Callable[[PreparedCall], Awaitable[AttemptResult]]
StaleCacheHook = Callable[[], Awaitable[None]]

JITTER_MAX_MS = 500


class RetryEngine:
    """Exponential backoff with jitter, capped at ``max_delay_ms``."""

    def __init__(self, initial_delay_ms: int = 1000, max_delay_ms: int = 30000):
        self.initial_delay_ms = initial_delay_ms
        self.max_delay_ms = max_delay_ms

    @staticmethod
    def calculate_next_delay(current_delay_ms: int, max_delay_ms: int) -> int:
        """Double the delay, never beyond the ceiling."""
        return min(current_delay_ms * 2, max_delay_ms)

    async def execute(
        self,
        attempt_fn: AttemptFn,
        prepared: PreparedCall,
        max_attempts: int,
        on_stale_cache: StaleCacheHook | None = None,
    ) -> RetryOutcome:
        """Run ``attempt_fn`` until success, a terminal error, or the budget runs out.

        Internal rate-limit waits do not consume an attempt, except with
        ``max_attempts == 1`` where any failure ends the run immediately.
        """
        max_attempts = max(1, max_attempts)
        attempt = 1
        current_delay = min(self.initial_delay_ms, self.max_delay_ms)

        while True:
            result = await attempt_fn(prepared)

            if result.succeeded:
                if attempt > 1:
                    logger.info("%s succeeded on attempt %d/%d", prepared.model_name, attempt, max_attempts)
                return RetryOutcome(
                    response_text=result.response_text,
                    usage_metadata=result.usage_metadata,
                    succeeded=True,
                    first_attempt_failed=attempt > 1,
                    attempts=attempt,
                )

            error_class = result.error_class or ErrorClass.UNCLASSIFIED

            if error_class == ErrorClass.INTERNAL_RATE_LIMIT:
                if max_attempts == 1:
                    logger.info("%s rate limited on single-shot attempt, giving up", prepared.model_name)
                    return self._failure(FailureReason.FAILED_FIRST_ATTEMPT, attempt, result, error_class)
                logger.debug(
                    "%s rate limited, waiting %dms (attempt %d not consumed)",
                    prepared.model_name,
                    result.retry_after_ms,
                    attempt,
                )
                await asyncio.sleep(result.retry_after_ms / 1000)
                continue

            if not error_class.retryable:
                logger.warning(
                    "%s failed with non-retryable %s: %s",
                    prepared.model_name,
                    error_class.value,
                    result.error_detail,
                )
                return self._failure(FailureReason.NON_RETRYABLE_ERROR, attempt, result, error_class)

            if error_class == ErrorClass.STALE_CACHE and on_stale_cache is not None:
                await on_stale_cache()

            if attempt == 1 and max_attempts == 1:
                logger.info(
                    "%s failed single-shot attempt with %s: %s",
                    prepared.model_name,
                    error_class.value,
                    result.error_detail,
                )
                return self._failure(FailureReason.FAILED_FIRST_ATTEMPT, attempt, result, error_class)

            if attempt >= max_attempts:
                logger.error(
                    "%s exhausted %d attempts, last error %s: %s",
                    prepared.model_name,
                    max_attempts,
                    error_class.value,
                    result.error_detail,
                )
                return self._failure(FailureReason.EXHAUSTED_RETRIES, attempt, result, error_class)

            delay_ms = current_delay + random.uniform(0, JITTER_MAX_MS)
            logger.warning(
                "%s attempt %d/%d failed with %s, retrying in %.0fms",
                prepared.model_name,
                attempt,
                max_attempts,
                error_class.value,
                delay_ms,
            )
            await asyncio.sleep(delay_ms / 1000)
            current_delay = self.calculate_next_delay(current_delay, self.max_delay_ms)
            attempt += 1

    @staticmethod
    def _failure(
        reason: FailureReason,
        attempts: int,
        result: AttemptResult,
        error_class: ErrorClass,
    ) -> RetryOutcome:
        return RetryOutcome(
            succeeded=False,
            first_attempt_failed=True,
            attempts=attempts,
            failure_reason=reason,
            error_class=error_class,
            error_detail=result.error_detail,
        )
