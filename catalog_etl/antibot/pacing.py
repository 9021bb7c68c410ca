"""Request pacing for a single worker."""
from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional

LOGGER = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]


class RateLimiter:
    """Enforce a minimum interval between consecutive calls.

    The limiter is owned by one worker and shared by every caller inside it,
    so the interval holds across category boundaries too.

    Parameters
    ----------
    min_interval : float
        Minimum seconds between the start of two consecutive calls
    jitter : float
        Extra random delay in ``[0, jitter]`` added on top of the interval
    clock, sleep : callable, optional
        Injectable time source and sleeper (``time.monotonic`` and
        ``asyncio.sleep`` by default)
    """

    def __init__(
        self,
        min_interval: float,
        *,
        jitter: float = 0.0,
        clock: Optional[Clock] = None,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        if min_interval < 0:
            raise ValueError("min_interval must be non-negative")
        self.min_interval = min_interval
        self.jitter = jitter
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._last_call: Optional[float] = None
        self._lock = asyncio.Lock()

    async def wait(self) -> float:
        """Block until the next call is allowed; returns the seconds slept."""
        async with self._lock:
            delay = 0.0
            if self._last_call is not None:
                elapsed = self._clock() - self._last_call
                delay = max(0.0, self.min_interval - elapsed)
                if self.jitter:
                    delay += random.uniform(0.0, self.jitter)
            if delay > 0:
                LOGGER.debug("Rate limiter sleeping %.2fs", delay)
                await self._sleep(delay)
            self._last_call = self._clock()
            return delay


async def pause(seconds: float, jitter: float = 0.0, sleep: Optional[Sleeper] = None) -> None:
    """Sleep for ``seconds`` plus a random share of ``jitter``."""
    delay = seconds + (random.uniform(0.0, jitter) if jitter else 0.0)
    if delay > 0:
        await (sleep or asyncio.sleep)(delay)
