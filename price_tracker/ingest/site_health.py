"""Per-site health tracking, cooldowns and retry policy.

Tracks consecutive failures per retailer so the monitor can stop hammering a
site that is serving captchas or blocking requests.
"""

import logging
import random
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional

from price_tracker import metrics
from price_tracker.config import Settings, settings as default_settings
from price_tracker.ingest.error_classifier import (
    ErrorClassification,
    ErrorSeverity,
    classify_error,
    site_from_url,
)
from price_tracker.utils.clock import Clock, default_clock

logger = logging.getLogger(__name__)


@dataclass
class SiteHealth:
    """Rolling health state of one site."""

    site: str
    total_errors: int = 0
    consecutive_errors: int = 0
    last_error_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_category: Optional[str] = None
    cooldown_until: Optional[datetime] = None
    cooldown_reason: Optional[str] = None

    # Last 100 classifications
    recent_errors: deque = field(default_factory=lambda: deque(maxlen=100))

    def to_dict(self) -> dict[str, Any]:
        return {
            "site": self.site,
            "total_errors": self.total_errors,
            "consecutive_errors": self.consecutive_errors,
            "last_error_at": self.last_error_at.isoformat() if self.last_error_at else None,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_category": self.last_category,
            "cooldown_until": self.cooldown_until.isoformat() if self.cooldown_until else None,
            "cooldown_reason": self.cooldown_reason,
        }


@dataclass
class CooldownStatus:
    in_cooldown: bool
    until: Optional[datetime] = None
    reason: Optional[str] = None
    remaining_seconds: float = 0.0


@dataclass
class RetryDecision:
    should_retry: bool
    reason: str
    delay_ms: int = 0


class SiteHealthTracker:
    """
    Tracks error/success streaks per site and decides cooldowns.

    All methods are synchronous and never await, so under a single asyncio
    event loop each call runs atomically with respect to other workers.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings or default_settings
        self.clock = clock or default_clock
        self._rng = rng or random.Random()
        self._health: dict[str, SiteHealth] = {}

    def _get_or_create(self, site: str) -> SiteHealth:
        if site not in self._health:
            self._health[site] = SiteHealth(site=site)
        return self._health[site]

    def cooldown_seconds(self, severity: ErrorSeverity) -> int:
        """Cooldown length for a severity (grows with severity)."""
        return int(self.settings.site_cooldowns.get(severity.value, 0))

    def record_error(
        self,
        url: str,
        error: BaseException | str,
        page_content: Optional[str] = None,
    ) -> ErrorClassification:
        """
        Classify an error and update the site's health.

        A cooldown starts when the error is critical or the site reached
        max_consecutive_failures errors in a row.

        Args:
            url: URL that failed
            error: The raised error
            page_content: Optional page snippet used for classification

        Returns:
            The error classification
        """
        classification = classify_error(error, url, page_content)
        health = self._get_or_create(classification.site)
        now = self.clock.now()

        health.recent_errors.append(classification)
        health.total_errors += 1
        health.consecutive_errors += 1
        health.last_error_at = now
        health.last_category = classification.category.value

        trip = (
            classification.severity is ErrorSeverity.CRITICAL
            or health.consecutive_errors >= self.settings.max_consecutive_failures
        )
        if trip:
            seconds = self.cooldown_seconds(classification.severity)
            until = now + timedelta(seconds=seconds)
            if health.cooldown_until is None or until > health.cooldown_until:
                health.cooldown_until = until
                health.cooldown_reason = classification.category.value
                metrics.record_site_cooldown(classification.site, classification.category.value)
                logger.warning(
                    f"Site {classification.site} in cooldown for {seconds}s "
                    f"({classification.category.value}, {health.consecutive_errors} consecutive errors)"
                )

        logger.warning(
            f"Site error classified: {classification.category.value}",
            extra={
                "site": classification.site,
                "category": classification.category.value,
                "severity": classification.severity.value,
                "retryable": classification.retryable,
                "consecutive_errors": health.consecutive_errors,
                "recommendation": classification.recommendation,
            },
        )
        return classification

    def record_success(self, url: str) -> None:
        """Reset the error streak. An active cooldown is left to expire."""
        health = self._get_or_create(site_from_url(url))
        health.consecutive_errors = 0
        health.last_success_at = self.clock.now()

    def is_in_cooldown(self, site: str) -> CooldownStatus:
        """
        Check whether a site (tag or URL) is cooling down.

        Expired cooldowns are cleared as a side effect.
        """
        if "://" in site:
            site = site_from_url(site)
        health = self._health.get(site)
        if health is None or health.cooldown_until is None:
            return CooldownStatus(in_cooldown=False)

        now = self.clock.now()
        if now < health.cooldown_until:
            return CooldownStatus(
                in_cooldown=True,
                until=health.cooldown_until,
                reason=health.cooldown_reason,
                remaining_seconds=(health.cooldown_until - now).total_seconds(),
            )

        logger.info(f"Cooldown for {site} expired")
        health.cooldown_until = None
        health.cooldown_reason = None
        metrics.clear_site_cooldown(site)
        return CooldownStatus(in_cooldown=False)

    def should_retry(
        self,
        classification: ErrorClassification,
        attempt: int,
        max_attempts: int,
    ) -> RetryDecision:
        """
        Decide whether to retry and how long to wait.

        Delay is min(base * 2^(attempt-1), max) with +/-25% jitter.

        Args:
            classification: Classification of the failure
            attempt: Attempt number that just failed (1-based)
            max_attempts: Maximum attempts allowed
        """
        if not classification.retryable:
            return RetryDecision(False, f"non_retryable:{classification.category.value}")
        if attempt >= max_attempts:
            return RetryDecision(False, "max_attempts_reached")

        cooldown = self.is_in_cooldown(classification.site)
        if cooldown.in_cooldown:
            return RetryDecision(False, "site_in_cooldown")

        base = self.settings.retry_base_delay_ms
        cap = self.settings.retry_max_delay_ms
        delay = min(base * (2 ** (attempt - 1)), cap)
        delay = delay * (1 + self._rng.uniform(-0.25, 0.25))
        return RetryDecision(True, "retryable", int(max(0, delay)))

    def get_health(self, site: str) -> Optional[SiteHealth]:
        return self._health.get(site)

    def get_all_health(self) -> dict[str, dict[str, Any]]:
        """Snapshot of every tracked site."""
        return {site: health.to_dict() for site, health in self._health.items()}

    def get_error_summary(self, site: str) -> dict[str, Any]:
        """Count of recent errors per category for a site."""
        health = self._health.get(site)
        if health is None:
            return {"site": site, "total_errors": 0, "by_category": {}}

        by_category: dict[str, int] = {}
        for classification in health.recent_errors:
            key = classification.category.value
            by_category[key] = by_category.get(key, 0) + 1
        return {
            "site": site,
            "total_errors": health.total_errors,
            "consecutive_errors": health.consecutive_errors,
            "by_category": by_category,
        }

    def reset(self, site: Optional[str] = None) -> None:
        """Forget health state for one site or all sites."""
        if site is None:
            for known in list(self._health):
                metrics.clear_site_cooldown(known)
            self._health.clear()
        elif self._health.pop(site, None) is not None:
            metrics.clear_site_cooldown(site)
