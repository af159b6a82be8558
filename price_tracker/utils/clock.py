"""Time source and jitter helpers shared by the rate limiter, health tracker and monitor."""

import asyncio
import random
import time
from datetime import datetime, timezone
from typing import Optional


class Clock:
    """Wall-clock and monotonic time plus sleep.

    Components take a clock so tests can swap in a fake one.
    """

    def monotonic(self) -> float:
        return time.monotonic()

    def now(self) -> datetime:
        """Current time as an aware UTC datetime."""
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)


def jitter(min_value: float, max_value: float, rng: Optional[random.Random] = None) -> float:
    """Random delay uniformly drawn from [min_value, max_value]."""
    if max_value <= min_value:
        return min_value
    return (rng or random).uniform(min_value, max_value)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


default_clock = Clock()
