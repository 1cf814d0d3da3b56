"""Per-domain admission control."""

import asyncio
import time
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional
import structlog

logger = structlog.get_logger()


@dataclass
class DomainWindow:
    """Sliding-window state for one domain."""

    timestamps: deque = field(default_factory=deque)
    active: int = 0
    min_interval: float = 0.0
    last_request: Optional[float] = None


class DomainRateLimiter:
    """
    Admits requests per domain under two limits: at most ``max_per_minute``
    in any trailing window and at most ``max_concurrent`` in flight.

    Domains are independent; a throttled domain never delays another one.
    Callers pair ``wait_for_slot`` with an immediate ``record_request`` and
    call ``release`` when the request is done (or use ``slot()``).
    """

    def __init__(
        self,
        max_per_minute: int = 60,
        max_concurrent: int = 1,
        window: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize rate limiter.

        Args:
            max_per_minute: Requests admitted per domain per window (0 blocks all)
            max_concurrent: Simultaneous in-flight requests per domain
            window: Window length in seconds
            clock: Monotonic time source
        """
        self.max_per_minute = max_per_minute
        self.max_concurrent = max(1, max_concurrent)
        self.window = window
        self.clock = clock
        self._domains: dict[str, DomainWindow] = {}
        self._conditions: dict[str, asyncio.Condition] = {}

    def _state(self, domain: str) -> DomainWindow:
        state = self._domains.get(domain)
        if state is None:
            state = self._domains[domain] = DomainWindow()
        return state

    def _condition(self, domain: str) -> asyncio.Condition:
        condition = self._conditions.get(domain)
        if condition is None:
            condition = self._conditions[domain] = asyncio.Condition()
        return condition

    def _prune(self, state: DomainWindow, now: float) -> None:
        cutoff = now - self.window
        while state.timestamps and state.timestamps[0] <= cutoff:
            state.timestamps.popleft()

    def _delay(self, domain: str) -> Optional[float]:
        """
        Seconds until a slot could open; 0 if admissible now.

        None means only a release() can open a slot.
        """
        state = self._state(domain)
        now = self.clock()
        self._prune(state, now)

        delays = [0.0]
        if len(state.timestamps) >= self.max_per_minute:
            if not state.timestamps:
                # max_per_minute == 0: never admitted
                return None
            delays.append(state.timestamps[0] + self.window - now)
        if state.min_interval and state.last_request is not None:
            delays.append(state.last_request + state.min_interval - now)

        delay = max(delays)
        if state.active >= self.max_concurrent:
            return None if delay <= 0 else delay
        return max(0.0, delay)

    def can_request(self, domain: str) -> bool:
        return self._delay(domain) == 0.0

    def set_min_interval(self, domain: str, seconds: float) -> None:
        """Enforce a minimum gap between requests (e.g. robots.txt Crawl-delay)."""
        self._state(domain).min_interval = max(0.0, seconds)
        logger.info("rate_limit_min_interval", domain=domain, seconds=seconds)

    async def wait_for_slot(self, domain: str) -> float:
        """
        Suspend until ``domain`` can admit one more request.

        Args:
            domain: Hostname

        Returns:
            Seconds spent waiting
        """
        started = self.clock()
        condition = self._condition(domain)
        async with condition:
            while True:
                delay = self._delay(domain)
                if delay == 0.0:
                    break
                try:
                    # A release() notifies early; otherwise wake when the window rolls
                    await asyncio.wait_for(condition.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass

        waited = self.clock() - started
        if waited > 0.01:
            logger.debug("rate_limit_waited", domain=domain, seconds=round(waited, 3))
        return waited

    def record_request(self, domain: str) -> float:
        """
        Commit one unit of window usage and one active request.

        Synchronous, so calling it right after ``wait_for_slot`` returns is
        atomic with respect to other tasks.

        Returns:
            Timestamp recorded
        """
        state = self._state(domain)
        now = self.clock()
        state.timestamps.append(now)
        state.last_request = now
        state.active += 1
        return now

    async def release(self, domain: str) -> None:
        """Mark one request to ``domain`` as finished and wake waiters."""
        state = self._state(domain)
        state.active = max(0, state.active - 1)
        condition = self._condition(domain)
        async with condition:
            condition.notify_all()

    @asynccontextmanager
    async def slot(self, domain: str) -> AsyncIterator[None]:
        await self.wait_for_slot(domain)
        self.record_request(domain)
        try:
            yield None
        finally:
            await self.release(domain)

    def get_stats(self, domain: str) -> dict:
        state = self._state(domain)
        self._prune(state, self.clock())
        return {"window_count": len(state.timestamps), "active": state.active}

    def reset(self) -> None:
        """Clear all tracking data."""
        self._domains.clear()
