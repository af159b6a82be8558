"""Burton product page scraper."""

import logging
from typing import Optional

from selectolax.parser import HTMLParser

from price_tracker.exceptions import ScrapeError
from price_tracker.ingest.base import PriceScraper, ScrapedRecord
from price_tracker.ingest.http_client import PageFetcher
from price_tracker.ingest.json_extractor import extract_json_ld, find_product, product_offer
from price_tracker.ingest.price_parser import detect_currency, parse_price
from price_tracker.ingest.selectors import first_text

logger = logging.getLogger(__name__)


class BurtonScraper(PriceScraper):
    """Scrape Burton product pages (server-rendered price, JSON-LD as backup)."""

    name = "burton"

    TITLE_SELECTORS = ["h1.product-name", "h1[itemprop='name']", "h1"]
    PRICE_SELECTORS = [
        "span.standard-price",
        ".product-price .price-sales",
        ".product-price .value",
        "[itemprop='price']",
    ]

    def __init__(self, fetcher: Optional[PageFetcher] = None):
        self.fetcher = fetcher or PageFetcher()

    async def scrape(self, url: str) -> Optional[ScrapedRecord]:
        html = await self.fetcher.fetch(url)
        return self.parse(html, url)

    def parse(self, html: str, url: str) -> Optional[ScrapedRecord]:
        tree = HTMLParser(html)

        title = first_text(tree, self.TITLE_SELECTORS)
        price_text = first_text(tree, self.PRICE_SELECTORS)
        price = parse_price(price_text)
        currency = detect_currency(price_text)

        if price is None or not title:
            product = find_product(extract_json_ld(tree))
            if product:
                offer = product_offer(product)
                title = title or offer["name"]
                if price is None:
                    price = parse_price(offer["price"])
                    currency = offer["currency"] or currency

        if not title:
            raise ScrapeError(
                f"Could not find product name on {url}",
                category="selector_failed",
                page_content=html[:2000],
            )
        if price is None:
            logger.info(f"No price found on Burton page {url}")
            return None

        return ScrapedRecord(site="burton", url=url, title=title, price=price, currency=currency)

    async def close(self) -> None:
        await self.fetcher.close()
