"""Per-domain crawl-delay limiting.

Robots policies publish a crawl delay per domain. Requests to the same
domain must be spaced by at least that delay; different domains proceed
independently.

Example::

    limiter = CrawlDelayLimiter()
    await limiter.acquire("www.bmv.com.mx", delay=3.0)   # first call: 0.0
    await limiter.acquire("www.bmv.com.mx", delay=3.0)   # waits ~3s
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field


@dataclass
class DomainSlot:
    """Spacing state for a single domain."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_request: float | None = None
    total_delay: float = 0.0
    requests: int = 0


@dataclass
class CrawlDelayLimiter:
    """Keyed limiter that serializes requests per domain.

    Attributes:
        clock: Monotonic time source (overridable in tests)
        sleep: Async sleep (overridable in tests)
    """

    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    _slots: dict[str, DomainSlot] = field(default_factory=dict, init=False)

    def _slot(self, domain: str) -> DomainSlot:
        key = domain.lower()
        if key not in self._slots:
            self._slots[key] = DomainSlot()
        return self._slots[key]

    async def acquire(self, domain: str, delay: float) -> float:
        """Wait until a request to *domain* is allowed; return seconds waited."""
        slot = self._slot(domain)
        async with slot.lock:
            waited = 0.0
            if slot.last_request is not None and delay > 0:
                wait = slot.last_request + delay - self.clock()
                if wait > 0:
                    await self.sleep(wait)
                    waited = wait
            slot.last_request = self.clock()
            slot.total_delay += waited
            slot.requests += 1
            return waited

    def applied_delays(self) -> dict[str, float]:
        """Seconds spent waiting, per domain."""
        return {k: v.total_delay for k, v in self._slots.items()}

    def remove(self, domain: str) -> None:
        self._slots.pop(domain.lower(), None)


__all__ = ["CrawlDelayLimiter", "DomainSlot"]
