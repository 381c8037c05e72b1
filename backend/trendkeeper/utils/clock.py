"""
Clock abstraction for the refresh loop.

Wall-clock time (``now``) drives staleness and scheduled wake-ups, monotonic
time drives the fetch gate, and ``sleep`` is the single suspension primitive.
Injecting a clock lets tests move time forward without waiting on it.
"""
import asyncio
import time
from datetime import datetime, timezone


class Clock:
    """System clock backed by ``datetime``, ``time.monotonic`` and ``asyncio.sleep``."""

    def now(self) -> datetime:
        """Current UTC wall-clock time (timezone-aware)."""
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)
        else:
            await asyncio.sleep(0)


system_clock = Clock()
