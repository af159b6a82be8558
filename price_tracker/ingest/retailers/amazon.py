"""Amazon product page scraper."""

import logging
from typing import Optional

from selectolax.parser import HTMLParser

from price_tracker.exceptions import ScrapeError
from price_tracker.ingest.base import PriceScraper, ScrapedRecord
from price_tracker.ingest.http_client import PageFetcher
from price_tracker.ingest.price_parser import detect_currency, parse_price
from price_tracker.ingest.selectors import first_text

logger = logging.getLogger(__name__)


class AmazonScraper(PriceScraper):
    """Scrape title and buy-box price from Amazon product pages."""

    name = "amazon"

    TITLE_SELECTORS = [
        "#productTitle",
        "#title",
        "h1#title span",
    ]

    # Ordered by priority - most common layouts first
    PRICE_SELECTORS = [
        "#corePrice_feature_div .a-price .a-offscreen",
        "#corePriceDisplay_desktop_feature_div .a-price .a-offscreen",
        "#apex_offerDisplay_desktop .a-price .a-offscreen",
        ".priceToPay .a-offscreen",
        "#price_inside_buybox",
        "#newBuyBoxPrice",
        "#priceblock_ourprice",
        "#priceblock_dealprice",
        "#priceblock_saleprice",
        "#kindle-price",
        ".a-price > .a-offscreen",
    ]

    def __init__(self, fetcher: Optional[PageFetcher] = None):
        self.fetcher = fetcher or PageFetcher()

    async def scrape(self, url: str) -> Optional[ScrapedRecord]:
        html = await self.fetcher.fetch(url)
        return self.parse(html, url)

    def parse(self, html: str, url: str) -> Optional[ScrapedRecord]:
        """Extract a record from page HTML; None when no price is shown."""
        tree = HTMLParser(html)

        title = first_text(tree, self.TITLE_SELECTORS)
        if not title:
            raise ScrapeError(
                f"Could not find product title on {url}",
                category="selector_failed",
                page_content=html[:2000],
            )

        price_text = first_text(tree, self.PRICE_SELECTORS)
        price = parse_price(price_text)
        if price is None:
            logger.info(f"No price found on Amazon page {url}")
            return None

        return ScrapedRecord(
            site="amazon",
            url=url,
            title=title,
            price=price,
            currency=detect_currency(price_text),
        )

    async def close(self) -> None:
        await self.fetcher.close()
