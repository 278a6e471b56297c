from __future__ import annotations

import asyncio
import logging
import random
import time


logger = logging.getLogger(__name__)


class PageThrottle:
    """Keep a minimum gap between page loads on the gated site."""

    def __init__(self, min_interval_seconds: float, jitter_seconds: float = 0.0) -> None:
        self._min_interval = max(0.0, float(min_interval_seconds))
        self._jitter = max(0.0, float(jitter_seconds))
        self._lock = asyncio.Lock()
        self._next_allowed = 0.0

    def next_allowed_in_seconds(self) -> float:
        return max(0.0, self._next_allowed - time.monotonic())

    async def wait(self) -> None:
        async with self._lock:
            delay = self.next_allowed_in_seconds()
            if delay > 0:
                logger.debug("throttling page load for %.1fs", delay)
                await asyncio.sleep(delay)
            gap = self._min_interval
            if self._jitter:
                gap += random.uniform(0.0, self._jitter)
            self._next_allowed = time.monotonic() + gap
