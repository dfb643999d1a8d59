"""
Per-domain request throttle.

Holds the last request time per hostname and makes callers wait until the
minimum interval has elapsed. Clock and sleep are injectable so tests can run
without real waiting.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional
from urllib.parse import urlsplit

logger = logging.getLogger("rate_limiter")


def domain_of(url: str) -> str:
    host = urlsplit(url).hostname or url
    return host.lower()


class DomainRateLimiter:
    def __init__(
        self,
        min_interval_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval_seconds = max(0.0, float(min_interval_seconds))
        self._clock = clock
        self._sleep = sleep
        self._last_fetch: Dict[str, float] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def last_fetch(self, url_or_domain: str) -> Optional[float]:
        return self._last_fetch.get(domain_of(url_or_domain))

    def seconds_until_allowed(self, url: str) -> float:
        last = self._last_fetch.get(domain_of(url))
        if last is None:
            return 0.0
        return max(0.0, self.min_interval_seconds - (self._clock() - last))

    async def acquire(self, url: str) -> float:
        """Wait for the domain's slot, record it, and return seconds waited."""
        domain = domain_of(url)
        lock = self._locks.setdefault(domain, asyncio.Lock())
        async with lock:
            wait = self.seconds_until_allowed(url)
            if wait > 0:
                logger.debug("Throttling %s for %.2fs", domain, wait)
                await self._sleep(wait)
            self._last_fetch[domain] = self._clock()
            return wait
