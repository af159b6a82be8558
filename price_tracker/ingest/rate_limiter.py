"""Per-site minimum-interval rate limiting with jitter."""

import asyncio
import logging
import random
from collections import defaultdict
from typing import Optional

from price_tracker import metrics
from price_tracker.config import Settings, settings as default_settings
from price_tracker.utils.clock import Clock, default_clock, jitter

logger = logging.getLogger(__name__)


class RateLimiter:
    """Spaces out requests to the same site.

    A request waits only when the previous one to the same site was less than
    ``min_interval`` seconds ago; it then sleeps for the remainder plus a random
    jitter in [0, jitter].
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings or default_settings
        self.clock = clock or default_clock
        self._rng = rng
        self.locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.last_request: dict[str, float] = {}

    def limits_for(self, site: str) -> tuple[float, float]:
        """(min_interval, jitter) for a site, falling back to 'default'."""
        limits = self.settings.site_rate_limits
        site_limits = limits.get(site) or limits.get("default") or {}
        return (
            float(site_limits.get("min_interval", 0.0)),
            float(site_limits.get("jitter", 0.0)),
        )

    async def acquire(self, site: str) -> float:
        """
        Wait until a request to ``site`` is allowed.

        Args:
            site: Site tag (amazon, burton, ...)

        Returns:
            Seconds spent waiting
        """
        min_interval, jitter_max = self.limits_for(site)

        async with self.locks[site]:
            waited = 0.0
            last = self.last_request.get(site)
            if last is not None:
                elapsed = self.clock.monotonic() - last
                if elapsed < min_interval:
                    waited = (min_interval - elapsed) + jitter(0.0, jitter_max, self._rng)
                    logger.debug(f"Rate limit for {site}: waiting {waited:.2f}s")
                    await self.clock.sleep(waited)

            self.last_request[site] = self.clock.monotonic()

        metrics.record_rate_limit_wait(site, waited)
        return waited

    def reset(self, site: Optional[str] = None) -> None:
        if site is None:
            self.last_request.clear()
        else:
            self.last_request.pop(site, None)
