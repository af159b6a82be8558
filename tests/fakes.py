"""Test doubles shared by the test modules."""

import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from price_tracker.config import Settings
from price_tracker.ingest.base import PriceScraper, ScrapedRecord
from price_tracker.ingest.error_classifier import site_from_url
from price_tracker.utils.clock import Clock


def make_settings(**overrides) -> Settings:
    """Settings with no request spacing and millisecond retry delays."""
    values = dict(
        database_url="sqlite+aiosqlite://",
        site_rate_limits={"default": {"min_interval": 0.0, "jitter": 0.0}},
        retry_base_delay_ms=1,
        retry_max_delay_ms=5,
        db_retry_base_delay_seconds=0.0,
        scrape_timeout_seconds=5.0,
        shutdown_grace_seconds=2.0,
        price_alerts_enabled=True,
        price_alert_channels="log",
        alert_dedup_backend="memory",
        email_enabled=False,
    )
    values.update(overrides)
    return Settings(**values)


class FakeClock(Clock):
    """Clock that only moves when told to (or when something sleeps)."""

    def __init__(self, start: Optional[datetime] = None):
        self.start = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        self.elapsed = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.elapsed

    def now(self) -> datetime:
        return self.start + timedelta(seconds=self.elapsed)

    def advance(self, seconds: float) -> None:
        self.elapsed += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self.elapsed += seconds
        await asyncio.sleep(0)


class ShiftedClock(Clock):
    """Real clock whose wall time can be pushed forward."""

    def __init__(self):
        self.offset = timedelta(0)

    def now(self) -> datetime:
        return super().now() + self.offset

    def advance(self, **kwargs) -> None:
        self.offset += timedelta(**kwargs)


def record(url: str, price, title: str = "Test Product", site: Optional[str] = None) -> ScrapedRecord:
    if site is None:
        site = site_from_url(url)
        site = site if site in ("amazon", "burton") else "universal"
    return ScrapedRecord(site=site, url=url, title=title, price=Decimal(str(price)))


class FakeScraper(PriceScraper):
    """Returns queued results per URL; the last queued result repeats."""

    name = "fake"

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.responses: dict[str, list] = {}
        self.calls: list[str] = []
        self.active: dict[str, int] = defaultdict(int)
        self.max_active: dict[str, int] = defaultdict(int)
        self.max_total = 0
        self._total = 0
        self.closed = False

    def queue(self, url: str, *results) -> None:
        self.responses.setdefault(url, []).extend(results)

    async def scrape(self, url: str):
        site = site_from_url(url)
        self.calls.append(url)
        self.active[site] += 1
        self._total += 1
        self.max_active[site] = max(self.max_active[site], self.active[site])
        self.max_total = max(self.max_total, self._total)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            results = self.responses.get(url)
            if not results:
                raise RuntimeError(f"no fake response queued for {url}")
            result = results.pop(0) if len(results) > 1 else results[0]
            if isinstance(result, BaseException):
                raise result
            return result
        finally:
            self.active[site] -= 1
            self._total -= 1

    async def close(self) -> None:
        self.closed = True
