"""Due-set selection for tracked products and per-site concurrency gating."""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlsplit

from price_tracker.config import Settings, settings as default_settings
from price_tracker.db.models import TrackedProduct
from price_tracker.db.tracked_products import TrackedProductRepository
from price_tracker.ingest.error_classifier import site_from_url
from price_tracker.utils.clock import Clock, default_clock, ensure_utc

logger = logging.getLogger(__name__)


def dispatch_key(url: str) -> str:
    """Key used for per-site concurrency and request spacing.

    Known retailers map to their site tag; anything else to its host, so two
    unrelated shops do not share a slot.
    """
    site = site_from_url(url)
    if site != "default":
        return site
    try:
        host = (urlsplit(url).hostname or "").lower()
    except ValueError:
        host = ""
    return host.removeprefix("www.") or "default"


def is_due(tracked: TrackedProduct, now: datetime) -> bool:
    """True if the tracked product is enabled, url-mode and its interval elapsed."""
    if not tracked.enabled or tracked.tracking_mode != "url" or not tracked.url:
        return False
    last_checked = ensure_utc(tracked.last_checked_at)
    if last_checked is None:
        return True
    return now - last_checked >= timedelta(minutes=tracked.check_interval_minutes)


class DueScheduler:
    """Selects which tracked products a cycle should visit."""

    def __init__(
        self,
        repository: TrackedProductRepository,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.repository = repository
        self.settings = settings or default_settings
        self.clock = clock or default_clock

    async def select_due(self, now: Optional[datetime] = None) -> list[TrackedProduct]:
        """
        Due tracked products, never-checked first, then oldest check first.

        Search-mode and disabled entries are never returned; ids are unique.
        """
        now = ensure_utc(now) if now is not None else self.clock.now()
        candidates = await self.repository.list_url_candidates()

        seen: set[int] = set()
        due = []
        for tracked in candidates:
            if tracked.id in seen or not is_due(tracked, now):
                continue
            seen.add(tracked.id)
            due.append(tracked)

        due.sort(
            key=lambda t: (
                t.last_checked_at is not None,
                ensure_utc(t.last_checked_at) or now,
                t.id,
            )
        )
        limit = self.settings.monitor_batch_limit
        if limit and len(due) > limit:
            logger.info(f"{len(due)} tracked products due, taking the {limit} oldest")
            due = due[:limit]
        return due


class SiteConcurrencyGate:
    """Caps in-flight work globally and per site.

    Not a lock: the single dispatcher calls can_start/start/finish from the
    event loop, so counters are only touched between awaits.
    """

    def __init__(self, max_concurrent: int, per_site: int):
        self.max_concurrent = max(1, max_concurrent)
        self.per_site = max(1, per_site)
        self._in_flight: dict[str, int] = defaultdict(int)
        self._total = 0

    @property
    def in_flight(self) -> int:
        return self._total

    def site_in_flight(self, site: str) -> int:
        return self._in_flight.get(site, 0)

    def has_capacity(self) -> bool:
        return self._total < self.max_concurrent

    def can_start(self, site: str) -> bool:
        return self.has_capacity() and self._in_flight[site] < self.per_site

    def start(self, site: str) -> None:
        if not self.can_start(site):
            raise RuntimeError(f"No capacity to start work for {site}")
        self._in_flight[site] += 1
        self._total += 1

    def finish(self, site: str) -> None:
        if self._in_flight.get(site, 0) <= 0:
            raise RuntimeError(f"finish() without start() for {site}")
        self._in_flight[site] -= 1
        self._total -= 1
