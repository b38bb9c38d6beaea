"""
Clock abstraction for timers, expiry checks and backoff delays.

Every time-dependent component takes a clock so tests can drive virtual
time instead of waiting on real timers.
"""

from __future__ import annotations

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    """Source of monotonic time and asynchronous sleeps."""

    def now(self) -> float:
        """Current time in seconds, for measuring durations and deadlines."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for ``seconds``."""
        ...


class SystemClock:
    """Clock backed by ``time.monotonic`` and ``asyncio.sleep``."""

    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(0.0, seconds))


class ManualClock:
    """Virtual clock driven explicitly by tests.

    With ``auto_advance`` enabled, ``sleep`` moves time forward immediately
    and returns, which makes backoff delays instantaneous. With it disabled,
    sleepers stay suspended until ``advance`` moves time past their deadline.

    Example:
        >>> clock = ManualClock(start=1000.0)
        >>> clock.advance(30)
        >>> clock.now()
        1030.0
    """

    def __init__(self, start: float = 1_000_000.0, auto_advance: bool = True) -> None:
        self._now = start
        self._auto_advance = auto_advance
        self._sleepers: list[tuple[float, asyncio.Future[None]]] = []
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        """Move time forward and wake every sleeper whose deadline passed."""
        self._now += seconds
        due = [s for s in self._sleepers if s[0] <= self._now]
        self._sleepers = [s for s in self._sleepers if s[0] > self._now]
        for _, waiter in due:
            if not waiter.done():
                waiter.set_result(None)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if self._auto_advance:
            self.advance(seconds)
            await asyncio.sleep(0)
            return

        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._sleepers.append((self._now + seconds, waiter))
        await waiter

    @property
    def pending_sleepers(self) -> int:
        """Number of suspended sleepers."""
        return sum(1 for _, waiter in self._sleepers if not waiter.done())


_default_clock: Clock = SystemClock()


def default_clock() -> Clock:
    """Get the process-wide default clock."""
    return _default_clock
