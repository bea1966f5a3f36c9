"""
Fixed Delay Rate Limiter Module

Spaces out operations of the same kind (search targets, detail pages) by a
fixed minimum interval. Only the remainder of the interval is slept, so time
already spent on network I/O counts towards the delay.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict

from auction_scraper.config import config


logger = logging.getLogger(__name__)


@dataclass
class PaceState:
    """Track timing for one kind of operation."""

    interval: float
    last_operation: float = 0.0
    waits: int = 0
    total_slept: float = 0.0


class FixedDelayRateLimiter:
    """
    Per-kind fixed delay limiter.

    Features:
    - One interval per operation kind ("target", "item", ...)
    - Sleeps only the part of the interval not already elapsed
    - Injectable clock and sleep for tests

    Example:
        limiter = FixedDelayRateLimiter({"target": 3.0, "item": 2.0})
        await limiter.wait("item")
        # Now safe to fetch the next detail page
        limiter.mark("item")
    """

    def __init__(
        self,
        intervals: Dict[str, float] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Initialize the rate limiter.

        Args:
            intervals: Seconds between operations, per kind (default from config)
            clock: Monotonic time source
            sleep: Async sleep function
        """
        if intervals is None:
            intervals = {
                "target": config.run.inter_target_delay,
                "item": config.run.inter_item_delay,
            }
        self._states: Dict[str, PaceState] = {
            kind: PaceState(interval=interval) for kind, interval in intervals.items()
        }
        self._clock = clock
        self._sleep = sleep

    def _get_state(self, kind: str) -> PaceState:
        if kind not in self._states:
            raise KeyError(f"No interval configured for operation kind '{kind}'")
        return self._states[kind]

    def remaining(self, kind: str) -> float:
        """
        Seconds still to wait before the next operation of this kind.

        Args:
            kind: Operation kind

        Returns:
            Seconds remaining (0 if the interval already elapsed)
        """
        state = self._get_state(kind)
        if not state.last_operation:
            return 0.0
        elapsed = self._clock() - state.last_operation
        return max(0.0, state.interval - elapsed)

    async def wait(self, kind: str) -> float:
        """
        Block until the next operation of this kind may start.

        The interval is measured from the last `mark()` of the same kind.

        Args:
            kind: Operation kind

        Returns:
            Seconds actually slept
        """
        state = self._get_state(kind)
        delay = self.remaining(kind)
        if delay > 0:
            await self._sleep(delay)
            state.total_slept += delay
        state.waits += 1
        return delay

    def mark(self, kind: str) -> None:
        """Record that an operation of this kind just finished."""
        self._get_state(kind).last_operation = self._clock()

    def get_stats(self) -> dict:
        """Get pacing statistics per kind."""
        return {
            kind: {
                "interval": state.interval,
                "waits": state.waits,
                "total_slept": round(state.total_slept, 2),
            }
            for kind, state in self._states.items()
        }
