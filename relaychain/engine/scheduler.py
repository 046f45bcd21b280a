"""Clock and timer abstraction.

Every delay in the engine (scripted thinking phases, the persistence
queue's debounce, rate-limit windows) goes through a Scheduler so tests
can drive time by hand instead of sleeping.
"""
from __future__ import annotations

import abc
import asyncio
import heapq
import itertools
import time
from collections.abc import Callable
from typing import Any


class TimerHandle(abc.ABC):
    @abc.abstractmethod
    def cancel(self) -> None:
        """Cancel the timer. Safe to call more than once."""


class Scheduler(abc.ABC):
    """Time source plus sleep and one-shot timers."""

    @abc.abstractmethod
    def now(self) -> float:
        """Current time in seconds."""

    @abc.abstractmethod
    async def sleep(self, seconds: float) -> None:
        """Suspend the caller for ``seconds``."""

    @abc.abstractmethod
    def call_later(self, seconds: float, callback: Callable[[], Any]) -> TimerHandle:
        """Run ``callback`` once after ``seconds``."""


class _AsyncioHandle(TimerHandle):
    def __init__(self, handle: asyncio.TimerHandle) -> None:
        self._handle = handle

    def cancel(self) -> None:
        self._handle.cancel()


class AsyncioScheduler(Scheduler):
    """Wall-clock scheduler backed by the running event loop."""

    def now(self) -> float:
        return time.time()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def call_later(self, seconds: float, callback: Callable[[], Any]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return _AsyncioHandle(loop.call_later(seconds, callback))


class _ManualHandle(TimerHandle):
    def __init__(self) -> None:
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler(Scheduler):
    """Deterministic scheduler whose clock only moves when told to.

    ``advance()`` fires every timer that falls due and lets the woken
    coroutines run. With ``auto_advance=True`` a ``sleep()`` moves the
    clock forward itself and returns after one loop iteration, which is
    handy when a test only cares about ordering, not about racing timers.
    """

    def __init__(self, start: float = 0.0, *, auto_advance: bool = False) -> None:
        self._now = start
        self._auto_advance = auto_advance
        self._seq = itertools.count()
        self._timers: list[tuple[float, int, _ManualHandle, Callable[[], Any]]] = []
        self.slept: list[float] = []

    def now(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        if self._auto_advance:
            self._now += max(0.0, seconds)
            await asyncio.sleep(0)
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()

        def _wake() -> None:
            if not future.done():
                future.set_result(None)

        handle = self.call_later(seconds, _wake)
        try:
            await future
        finally:
            handle.cancel()

    def call_later(self, seconds: float, callback: Callable[[], Any]) -> TimerHandle:
        handle = _ManualHandle()
        heapq.heappush(
            self._timers, (self._now + max(0.0, seconds), next(self._seq), handle, callback),
        )
        return handle

    @property
    def pending(self) -> int:
        """Number of timers that are neither fired nor cancelled."""
        return sum(1 for _, _, h, _ in self._timers if not h.cancelled and not h.fired)

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in order."""
        target = self._now + seconds
        while self._timers and self._timers[0][0] <= target:
            due, _, handle, callback = heapq.heappop(self._timers)
            self._now = max(self._now, due)
            if handle.cancelled:
                continue
            handle.fired = True
            callback()
            await self.settle()
        self._now = target
        await self.settle()

    @staticmethod
    async def settle(rounds: int = 10) -> None:
        """Give woken tasks a few loop iterations to make progress."""
        for _ in range(rounds):
            await asyncio.sleep(0)
