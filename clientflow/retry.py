"""Exponential backoff for async operations.

``RetryPolicy`` describes how many times and how long to wait;
``retry_async`` executes an operation under a policy. The sleep function
is injectable so callers (and tests) control the clock.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff curve.

    Args:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1).
        base_delay: Delay before the first retry, in seconds.
        multiplier: Growth factor per retry.
        max_delay: Cap on any single delay.
        jitter: Jitter factor (0.0-1.0); 0 gives exact delays.
        retry_on: Exception types that are safe to retry.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.0
    retry_on: tuple[type[BaseException], ...] = (Exception,)

    def delay_for(self, retry_number: int) -> float:
        """Delay before retry ``retry_number`` (0-based): base * multiplier**n."""
        delay = min(self.base_delay * (self.multiplier**retry_number), self.max_delay)
        if self.jitter:
            jitter_amount = delay * self.jitter
            delay += random.uniform(-jitter_amount, jitter_amount)
        return max(0.0, delay)

    def should_retry(self, exc: BaseException) -> bool:
        return isinstance(exc, self.retry_on)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Callable[[int, BaseException, float], None] | None = None,
) -> T:
    """Run ``operation`` until it succeeds or the policy is exhausted.

    Non-retryable exceptions propagate immediately; after the last retry
    the final exception propagates.
    """
    for attempt in range(policy.max_retries + 1):
        try:
            return await operation()
        except Exception as exc:
            if not policy.should_retry(exc) or attempt == policy.max_retries:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "Retry %d/%d (%s), waiting %.1fs",
                attempt + 1,
                policy.max_retries,
                type(exc).__name__,
                delay,
            )
            if on_retry is not None:
                on_retry(attempt + 1, exc, delay)
            await sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
