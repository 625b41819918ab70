"""In-job retries with exponential backoff.

Used where one job talks to a flaky upstream several times (the dividend
feed importer pulls each ticker under its own retry loop). Stage-level
retries are different: the pipeline runner re-enqueues the whole job.

Example:
    >>> policy = ExponentialBackoff(attempts=4, base_delay=1.0, jitter=0)
    >>> list(policy.schedule())
    [1.0, 2.0, 4.0]
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import TypeVar

from fibra.core.errors import OperationCancelledError, is_retryable

T = TypeVar("T")

RetryHook = Callable[[int, Exception, float], None]


@dataclass(frozen=True)
class ExponentialBackoff:
    """How many times to try and how long to wait in between.

    ``attempts`` counts every call, the first one included. The wait before
    attempt ``n + 1`` is ``base_delay * factor ** (n - 1)``, capped at
    ``max_delay`` and spread by ``jitter`` (a fraction of the delay).
    """

    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    factor: float = 2.0
    jitter: float = 0.25
    # False retries anything except cancellation
    transient_only: bool = True

    def delay_after(self, attempt: int, rng: random.Random | None = None) -> float:
        """Seconds to wait after failed attempt number *attempt* (1-based)."""
        delay = min(self.base_delay * self.factor ** (attempt - 1), self.max_delay)
        if self.jitter:
            spread = delay * self.jitter
            delay += (rng or random).uniform(-spread, spread)
        return max(delay, 0.0)

    def schedule(self) -> Iterator[float]:
        """Un-jittered waits between attempts."""
        for attempt in range(1, self.attempts):
            yield min(self.base_delay * self.factor ** (attempt - 1), self.max_delay)

    def allows(self, attempt: int, error: Exception) -> bool:
        if attempt >= self.attempts or isinstance(error, OperationCancelledError):
            return False
        return is_retryable(error) if self.transient_only else True


async def retry_async(
    call: Callable[[], Awaitable[T]],
    policy: ExponentialBackoff,
    *,
    on_retry: RetryHook | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await ``call()`` until it returns or *policy* gives up.

    *call* is a zero-argument factory so every attempt gets a fresh
    awaitable. The last error propagates unchanged.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await call()
        except Exception as e:
            if not policy.allows(attempt, e):
                raise
            delay = policy.delay_after(attempt)
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await sleep(delay)


__all__ = ["ExponentialBackoff", "RetryHook", "retry_async"]
