"""Interruptible pauses for the long waits of the sign-in flow.

Backoff between attempts can last a quarter of an hour. :class:`Sleeper`
lets the caller cut such a wait short through :meth:`Sleeper.stop` so a
process can shut down at an account boundary. Task cancellation is honoured
as well, because every pause is a plain ``await``.

Tests inject a fast ``sleep`` coroutine and inspect :attr:`Sleeper.history`.
"""

from __future__ import annotations

import asyncio
import random
from typing import Awaitable, Callable, Optional

from authpilot.exceptions import LoginAbortedError

SleepFunc = Callable[[float], Awaitable[None]]


class Sleeper:
    """Awaitable pauses that wake early when a stop is requested.

    Args:
        sleep: Coroutine used for short pauses. Defaults to :func:`asyncio.sleep`.
        rng: Random source for :meth:`pause_between`.
    """

    def __init__(self, sleep: Optional[SleepFunc] = None, rng: Optional[random.Random] = None) -> None:
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()
        self._stop = asyncio.Event()
        self.history: list[float] = []

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Wake any pending pause and make later pauses raise immediately."""
        self._stop.set()

    def check(self) -> None:
        """Raise :class:`LoginAbortedError` if a stop was requested."""
        if self._stop.is_set():
            raise LoginAbortedError("Stop requested; abandoning the sign-in flow")

    async def pause(self, seconds: float) -> None:
        """Wait *seconds*, returning early with :class:`LoginAbortedError` on :meth:`stop`."""
        self.check()
        self.history.append(seconds)
        if seconds <= 0:
            return
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waker = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waker):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sleeper, waker, return_exceptions=True)
        self.check()

    async def pause_between(self, bounds: tuple[float, float]) -> float:
        """Wait a uniformly random duration within *bounds* and return it."""
        low, high = bounds
        seconds = self._rng.uniform(low, high) if high > low else low
        await self.pause(seconds)
        return seconds
