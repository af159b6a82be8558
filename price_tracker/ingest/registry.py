"""Scraper registry: URL -> scraper dispatch."""

import logging
from typing import Callable, Optional
from urllib.parse import urlsplit

from price_tracker.ingest.base import PriceScraper
from price_tracker.ingest.retailers.amazon import AmazonScraper
from price_tracker.ingest.retailers.burton import BurtonScraper
from price_tracker.ingest.retailers.universal import UniversalScraper

logger = logging.getLogger(__name__)

# Host substring -> scraper name, checked in order
DISPATCH_RULES: list[tuple[str, str]] = [
    ("amazon.com", "amazon"),
    ("burton.com", "burton"),
]
FALLBACK_SCRAPER = "universal"


class ScraperRegistry:
    """Registry for scraper implementations.

    Scrapers are instantiated lazily, one instance per name. Tests (or callers
    with custom sources) pass ready-made instances through ``scrapers``.
    """

    _factories: dict[str, Callable[[], PriceScraper]] = {
        "amazon": AmazonScraper,
        "burton": BurtonScraper,
        "universal": UniversalScraper,
    }

    def __init__(self, scrapers: Optional[dict[str, PriceScraper]] = None):
        self._factories = dict(self._factories)
        self._instances: dict[str, PriceScraper] = dict(scrapers or {})

    @staticmethod
    def site_for(url: str) -> str:
        """Scraper name (and product site tag) for a URL."""
        try:
            host = (urlsplit(url).hostname or "").lower()
        except ValueError:
            host = ""
        for needle, name in DISPATCH_RULES:
            if needle in host:
                return name
        return FALLBACK_SCRAPER

    def get_scraper(self, name: str) -> PriceScraper:
        """
        Get or create the scraper registered under ``name``.

        Raises:
            ValueError: If no scraper is registered under that name
        """
        if name not in self._instances:
            if name not in self._factories:
                raise ValueError(
                    f"Unknown scraper: {name}. Available: {sorted(self._factories)}"
                )
            self._instances[name] = self._factories[name]()
            logger.info(f"Initialized scraper: {name}")
        return self._instances[name]

    def scraper_for(self, url: str) -> PriceScraper:
        return self.get_scraper(self.site_for(url))

    def register(self, name: str, factory: Callable[[], PriceScraper]) -> None:
        """Register a scraper factory (replacing any cached instance)."""
        self._factories[name] = factory
        self._instances.pop(name, None)
        logger.info(f"Registered scraper: {name}")

    async def close(self) -> None:
        """Close every instantiated scraper."""
        for name, scraper in list(self._instances.items()):
            try:
                await scraper.close()
            except Exception:
                logger.exception(f"Error closing scraper {name}")
        self._instances.clear()
