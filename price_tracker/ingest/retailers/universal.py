"""Generic scraper for any retailer exposing structured data or common markup."""

import logging
from typing import Optional

from selectolax.parser import HTMLParser

from price_tracker.ingest.base import PriceScraper, ScrapedRecord
from price_tracker.ingest.http_client import PageFetcher
from price_tracker.ingest.json_extractor import extract_json_ld, find_product, product_offer
from price_tracker.ingest.price_parser import detect_currency, parse_price
from price_tracker.ingest.selectors import first_text, meta_content

logger = logging.getLogger(__name__)


class UniversalScraper(PriceScraper):
    """
    Fallback scraper.

    Extraction order:
      1. Schema.org Product in JSON-LD
      2. Open Graph / microdata meta tags
      3. Common CSS selector chains
    """

    name = "universal"

    TITLE_SELECTORS = [
        "[itemprop='name']",
        "h1.product-title",
        "h1.product-name",
        "h1",
    ]
    PRICE_SELECTORS = [
        "[itemprop='price']",
        "[data-test='product-price']",
        "[data-testid='price']",
        ".product-price",
        ".price-current",
        ".sale-price",
        ".price",
    ]

    def __init__(self, fetcher: Optional[PageFetcher] = None):
        self.fetcher = fetcher or PageFetcher()

    async def scrape(self, url: str) -> Optional[ScrapedRecord]:
        html = await self.fetcher.fetch(url)
        return self.parse(html, url)

    def parse(self, html: str, url: str) -> Optional[ScrapedRecord]:
        tree = HTMLParser(html)
        title = None
        price = None
        currency = None

        product = find_product(extract_json_ld(tree))
        if product:
            offer = product_offer(product)
            title = offer["name"]
            price = parse_price(offer["price"])
            currency = offer["currency"]

        if price is None:
            amount = meta_content(tree, "product:price:amount", "og:price:amount", "price")
            if amount:
                price = parse_price(amount)
                currency = currency or meta_content(
                    tree, "product:price:currency", "og:price:currency", "priceCurrency"
                )

        if price is None:
            price_text = first_text(tree, self.PRICE_SELECTORS)
            price = parse_price(price_text)
            currency = currency or (detect_currency(price_text) if price_text else None)

        if not title:
            title = meta_content(tree, "og:title") or first_text(tree, self.TITLE_SELECTORS)
        if not title and tree.css_first("title") is not None:
            title = tree.css_first("title").text(strip=True) or None

        if price is None or not title:
            logger.info(f"Universal scraper found no price/title on {url}")
            return None

        return ScrapedRecord(
            site="universal",
            url=url,
            title=" ".join(str(title).split()),
            price=price,
            currency=(currency or "USD").upper(),
        )

    async def close(self) -> None:
        await self.fetcher.close()
