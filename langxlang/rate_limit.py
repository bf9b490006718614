"""
Cooldown gate shared by provider adapters.

Requests are keyed by (credential, model). Each request reserves the next
free slot for its key before awaiting it, so concurrent callers line up one
interval apart instead of resetting each other's wait.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Hashable, Optional

log = logging.getLogger(__name__)


class RateLimiter:
    """
    Per-key cooldown gate.

    Args:
        clock: Monotonic clock returning seconds. Injectable for tests.
        sleep: Coroutine function used to wait. Injectable for tests.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.clock = clock
        self.sleep = sleep
        # key -> earliest time the next request for that key may start
        self._ready_at: Dict[Hashable, float] = {}

    async def wait(self, key: Hashable, interval: Optional[float]) -> None:
        """
        Wait for the cooldown of `key`, then install a new one of `interval` seconds.

        The slot is reserved before sleeping; no await happens between reading
        and updating the schedule.
        """
        now = self.clock()
        start = max(now, self._ready_at.get(key, now))
        if interval:
            self._ready_at[key] = start + interval
        elif start > now:
            # Unlimited request still queues behind a pending cooldown
            self._ready_at[key] = start
        delay = start - now
        if delay > 0:
            log.debug("Rate limit: waiting %.3fs for %r", delay, key)
            await self.sleep(delay)

    def reset(self, key: Optional[Hashable] = None) -> None:
        if key is None:
            self._ready_at.clear()
        else:
            self._ready_at.pop(key, None)
