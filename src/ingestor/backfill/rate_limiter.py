"""Global request budget shared by every channel.

The provider limits requests per account, not per product, so a single
RateLimiter instance gates every outbound candles call in the process.
"""

import asyncio
import time
from collections.abc import Callable

from ingestor.logging import get_logger

logger = get_logger(__name__)


class RateLimiter:
    """Admit at most `max_calls` acquisitions per `interval` seconds.

    Slots are handed out at a steady cadence of interval / max_calls. Each
    caller reserves the next free slot when it calls acquire() and sleeps
    until that slot arrives, so callers are released in submission order and
    no channel can starve another. Requests are delayed, never dropped.

    K back-to-back acquisitions therefore span (K - 1) * interval / max_calls
    from first release to last: with max_calls=10 and interval=1.0 the tenth
    call goes out at 0.9s and the eleventh at 1.0s. Any half-open span of one interval
    holds at most max_calls releases, and the last of K releases never
    precedes (ceil(K / max_calls) - 1) full intervals.
    """

    def __init__(
        self,
        max_calls: int,
        interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_calls <= 0:
            raise ValueError(f"max_calls must be positive, got {max_calls}")
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self._max_calls = max_calls
        self._interval = interval
        self._spacing = interval / max_calls
        self._clock = clock
        self._next_slot = 0.0
        self._lock = asyncio.Lock()

    @property
    def spacing(self) -> float:
        """Seconds between consecutive slots."""
        return self._spacing

    async def acquire(self) -> None:
        """Block until this caller's slot is reached."""
        async with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot)
            self._next_slot = slot + self._spacing
        delay = slot - now
        if delay > 0:
            logger.debug("rate_limit_wait", delay=round(delay, 3))
            await asyncio.sleep(delay)
