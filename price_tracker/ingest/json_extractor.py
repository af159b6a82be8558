"""Extract Schema.org Product data from JSON-LD blocks in HTML pages."""

import json
import logging
from typing import Any, Dict, List, Optional

from selectolax.parser import HTMLParser

logger = logging.getLogger(__name__)


def extract_json_ld(tree: HTMLParser) -> List[Any]:
    """
    Extract JSON-LD structured data from script tags.

    Returns list of JSON-LD objects found in the page.
    """
    results = []
    for script in tree.css('script[type="application/ld+json"]'):
        try:
            results.append(json.loads(script.text(deep=True, strip=True)))
        except (json.JSONDecodeError, TypeError) as e:
            logger.debug(f"Skipping invalid JSON-LD block: {e}")
    return results


def _is_type(obj: Dict[str, Any], type_name: str) -> bool:
    obj_type = obj.get("@type", "")
    if isinstance(obj_type, list):
        return type_name in obj_type
    return obj_type == type_name


def _walk(obj: Any):
    """Yield every dict in a JSON-LD value (handles @graph and nested lists)."""
    if isinstance(obj, dict):
        yield obj
        for value in obj.values():
            if isinstance(value, (dict, list)):
                yield from _walk(value)
    elif isinstance(obj, list):
        for item in obj:
            yield from _walk(item)


def find_product(json_ld_objects: List[Any]) -> Optional[Dict[str, Any]]:
    """First Product object found in the JSON-LD blocks."""
    for obj in json_ld_objects:
        for candidate in _walk(obj):
            if _is_type(candidate, "Product"):
                return candidate
    return None


def product_offer(product: Dict[str, Any]) -> Dict[str, Any]:
    """
    Pull name, price and currency out of a Product object.

    ``offers`` may be a single Offer, a list of offers or an AggregateOffer;
    the first offer carrying a price wins, AggregateOffer falls back to lowPrice.
    """
    offers = product.get("offers") or {}
    if isinstance(offers, dict):
        offers = [offers]

    price = None
    currency = None
    for offer in offers:
        if not isinstance(offer, dict):
            continue
        price = offer.get("price")
        if price is None:
            price = offer.get("lowPrice")
        if price is None and isinstance(offer.get("priceSpecification"), dict):
            price = offer["priceSpecification"].get("price")
        currency = offer.get("priceCurrency")
        if price is not None:
            break

    return {"name": product.get("name"), "price": price, "currency": currency}
