"""Clock and timer facility used by breakers, token refresh and the queue."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol


class TimerHandle(Protocol):
    """Handle for one scheduled callback."""

    def cancel(self) -> None:
        """Cancel the callback if it has not fired yet."""


class Clock(Protocol):
    """Time source plus delayed-callback scheduling."""

    def now(self) -> datetime:
        """Return the current UTC wall-clock time."""

    def monotonic(self) -> float:
        """Return a monotonic timestamp in seconds."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Schedule ``callback`` after ``delay`` seconds."""

    async def sleep(self, delay: float) -> None:
        """Suspend the current task for ``delay`` seconds."""


class AsyncioClock:
    """Clock backed by the running asyncio event loop."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(delay, 0.0), callback)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(max(delay, 0.0))
