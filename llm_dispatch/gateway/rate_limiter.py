"""Per-model rate limiter: sliding window with a block period.

One ``ModelRateLimiter`` per model name, created lazily by the registry and
kept for its lifetime. Each limiter tracks independent buckets per key so
unrelated logical streams sharing a model are not cross-throttled.

``consume`` never raises when a bucket is exhausted: it returns the wait in
milliseconds and the caller decides whether to wait or give up. It contains
no await points, so it is atomic under asyncio's cooperative scheduling.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field

from llm_dispatch.gateway.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    """``points`` grants per rolling ``window_seconds``; block ``block_seconds`` once exceeded."""

    points: int = 50
    window_seconds: float = 60.0
    block_seconds: float = 30.0

    def validate(self) -> None:
        if self.points <= 0:
            raise ConfigurationError(f"Rate limit points must be positive, got {self.points}")
        if self.window_seconds <= 0:
            raise ConfigurationError(f"Rate limit window must be positive, got {self.window_seconds}")
        if self.block_seconds < 0:
            raise ConfigurationError(f"Rate limit block duration must be >= 0, got {self.block_seconds}")


@dataclass
class _KeyBucket:
    """Sliding window of grant timestamps for a single key."""

    grants: deque[float] = field(default_factory=deque)
    blocked_until: float = 0.0

    def prune(self, now: float, window: float) -> None:
        cutoff = now - window
        while self.grants and self.grants[0] <= cutoff:
            self.grants.popleft()


class ModelRateLimiter:
    """Rate limiter for one model.

    Usage:
        limiter = registry.acquire("gemini-2.0-flash")
        wait_ms = limiter.consume("extract:3")
        if wait_ms:
            await asyncio.sleep(wait_ms / 1000)
    """

    def __init__(
        self,
        model_name: str,
        policy: RateLimitPolicy,
        clock: Callable[[], float] = time.monotonic,
    ):
        policy.validate()
        self.model_name = model_name
        self.policy = policy
        self._clock = clock
        self._buckets: dict[str, _KeyBucket] = {}

    def consume(self, key: str, points: int = 1) -> int:
        """Try to take ``points`` units for ``key``.

        Returns:
            0 if granted, otherwise milliseconds until the next slot opens.
        """
        bucket = self._buckets.setdefault(key, _KeyBucket())
        now = self._clock()

        if bucket.blocked_until > now:
            return _to_ms(bucket.blocked_until - now)

        bucket.prune(now, self.policy.window_seconds)

        if len(bucket.grants) + points <= self.policy.points:
            bucket.grants.extend([now] * points)
            return 0

        # Exhausted: block the key, and never less than the window needs
        if self.policy.block_seconds > 0:
            bucket.blocked_until = now + self.policy.block_seconds
        window_free_at = bucket.grants[0] + self.policy.window_seconds if bucket.grants else now
        wait = max(bucket.blocked_until, window_free_at) - now

        logger.debug(
            "Rate limit hit for model %s key %s, next slot in %.2fs",
            self.model_name,
            key,
            wait,
        )
        return _to_ms(wait)

    def get_stats(self, key: str | None = None) -> dict:
        """Current usage for one key, or totals across keys."""
        now = self._clock()
        buckets = [self._buckets[key]] if key and key in self._buckets else list(self._buckets.values())
        for b in buckets:
            b.prune(now, self.policy.window_seconds)
        return {
            "model": self.model_name,
            "key": key,
            "points": self.policy.points,
            "window_seconds": self.policy.window_seconds,
            "block_seconds": self.policy.block_seconds,
            "keys_tracked": len(self._buckets),
            "granted_in_window": sum(len(b.grants) for b in buckets),
            "blocked_keys": sum(1 for b in buckets if b.blocked_until > now),
        }


def _to_ms(seconds: float) -> int:
    return max(1, math.ceil(seconds * 1000))


class RateLimiterRegistry:
    """Lazily creates and keeps one ``ModelRateLimiter`` per model name."""

    def __init__(
        self,
        default_policy: RateLimitPolicy | None = None,
        policies: dict[str, RateLimitPolicy] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_policy = default_policy or RateLimitPolicy()
        self._policies = policies or {}
        self._clock = clock
        self._limiters: dict[str, ModelRateLimiter] = {}

    def acquire(self, model_name: str) -> ModelRateLimiter:
        """Return the limiter for ``model_name``, creating it on first use.

        Raises:
            ConfigurationError: if the policy for this model is invalid.
        """
        limiter = self._limiters.get(model_name)
        if limiter is None:
            policy = self._policies.get(model_name, self.default_policy)
            limiter = ModelRateLimiter(model_name, policy, clock=self._clock)
            self._limiters[model_name] = limiter
            logger.info(
                "Created rate limiter for model %s: %d points / %.0fs, block %.0fs",
                model_name,
                policy.points,
                policy.window_seconds,
                policy.block_seconds,
            )
        return limiter

    def get_all_stats(self) -> list[dict]:
        return [limiter.get_stats() for limiter in self._limiters.values()]
