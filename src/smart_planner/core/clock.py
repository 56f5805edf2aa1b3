# src/smart_planner/core/clock.py

from __future__ import annotations

import asyncio
import contextlib
import time


class SystemClock:
    """Wall-clock time; waits with a single asyncio timeout."""

    def now(self) -> float:
        return time.time()

    async def wait(self, wakeup: asyncio.Event, deadline: float | None) -> None:
        if deadline is None:
            await wakeup.wait()
            return

        timeout = deadline - self.now()
        if timeout <= 0:
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(wakeup.wait(), timeout=timeout)


class ManualClock:
    """
    Virtual clock: time only moves when advance()/set() is called.

    Waiters are woken on every move and re-check their deadline, so a dispatcher
    driven by this clock fires exactly what is due at the new time.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)
        self._ticks: set[asyncio.Event] = set()

    def now(self) -> float:
        return self._now

    def set(self, ts: float) -> None:
        if ts < self._now:
            raise ValueError("ManualClock cannot move backwards")
        self._now = float(ts)
        for tick in list(self._ticks):
            tick.set()

    def advance(self, seconds: float) -> None:
        self.set(self._now + max(0.0, float(seconds)))

    async def wait(self, wakeup: asyncio.Event, deadline: float | None) -> None:
        while deadline is None or self._now < deadline:
            if wakeup.is_set():
                return

            tick = asyncio.Event()
            self._ticks.add(tick)
            waiters = {
                asyncio.ensure_future(wakeup.wait()),
                asyncio.ensure_future(tick.wait()),
            }
            try:
                await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            finally:
                self._ticks.discard(tick)
                for w in waiters:
                    w.cancel()
