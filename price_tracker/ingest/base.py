"""Scraper capability and the normalized record every scraper returns."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional


@dataclass
class ScrapedRecord:
    """Normalized result of scraping one product page."""

    site: str
    url: str
    title: str
    price: Decimal
    currency: str = "USD"
    timestamp: datetime = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)


class PriceScraper(ABC):
    """A price source for product pages of one or more retailers.

    Implementations must be idempotent and must not mutate shared state.
    """

    name: str = "base"

    @abstractmethod
    async def scrape(self, url: str) -> Optional[ScrapedRecord]:
        """
        Scrape a product page.

        Args:
            url: Product URL

        Returns:
            ScrapedRecord, or None if the page loaded but no price could be extracted

        Raises:
            ScrapeError: For transport failures (timeout, network, captcha, ...)
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None
