"""Clock abstraction for periodic work.

The orchestrator never sleeps or reads the wall clock itself; it asks a
Clock. ``AsyncioClock`` is the production one. Each ticker awaits its
callback before sleeping again, so a ticker never overlaps itself.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Protocol
from zoneinfo import ZoneInfo

import config

log = logging.getLogger(__name__)

TickFn = Callable[[], Awaitable[None]]


class Ticker(Protocol):
    def cancel(self) -> None:
        ...


class Clock(Protocol):
    def every(self, seconds: float, fn: TickFn, *, name: str = "") -> Ticker:
        ...

    def now(self) -> datetime:
        ...


class AsyncioTicker:
    def __init__(self, task: asyncio.Task):
        self._task = task

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()

    @property
    def cancelled(self) -> bool:
        return self._task.cancelled() or self._task.done()


class AsyncioClock:
    def __init__(self, tz: str | None = None):
        self.tz = ZoneInfo(tz or config.TIMEZONE)

    def now(self) -> datetime:
        return datetime.now(self.tz)

    def every(self, seconds: float, fn: TickFn, *, name: str = "") -> AsyncioTicker:
        if seconds <= 0:
            raise ValueError(f"ticker interval must be positive, got {seconds}")
        task = asyncio.get_running_loop().create_task(
            self._loop(seconds, fn, name), name=f"ticker:{name or fn.__name__}",
        )
        return AsyncioTicker(task)

    async def _loop(self, seconds: float, fn: TickFn, name: str) -> None:
        while True:
            await asyncio.sleep(seconds)
            try:
                await fn()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.error("Ticker %s callback failed", name or fn, exc_info=True)
