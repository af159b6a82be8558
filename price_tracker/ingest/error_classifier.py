"""Classification of scrape failures into categories with severity and retry hints.

Each retailer has its own wording for captchas, throttling and missing pages,
so pattern tables are kept per site with a generic fallback table.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from urllib.parse import urlsplit

import httpx

from price_tracker.exceptions import ScrapeError

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    TIMEOUT = "timeout"
    BLOCKED = "blocked"
    NETWORK = "network"
    CAPTCHA = "captcha"
    RATE_LIMIT = "rate_limit"
    SELECTOR_FAILED = "selector_failed"
    NOT_FOUND = "not_found"
    PARSE_ERROR = "parse_error"
    AUTH_REQUIRED = "auth_required"
    OUT_OF_STOCK = "out_of_stock"
    GEO_BLOCKED = "geo_blocked"
    UNKNOWN = "unknown"


class ErrorSeverity(str, Enum):
    LOW = "low"  # retry immediately
    MEDIUM = "medium"  # retry with backoff
    HIGH = "high"  # skip this URL, try others
    CRITICAL = "critical"  # stop all requests to the site


@dataclass(frozen=True)
class CategoryAction:
    severity: ErrorSeverity
    retryable: bool
    recommendation: str


ERROR_ACTIONS: dict[ErrorCategory, CategoryAction] = {
    ErrorCategory.CAPTCHA: CategoryAction(
        ErrorSeverity.CRITICAL, False, "Stop requests to site, rotate IP, wait before retrying"
    ),
    ErrorCategory.RATE_LIMIT: CategoryAction(
        ErrorSeverity.HIGH, True, "Increase delay between requests, use backoff"
    ),
    ErrorCategory.BLOCKED: CategoryAction(
        ErrorSeverity.HIGH, True, "Rotate proxy, change user agent"
    ),
    ErrorCategory.NOT_FOUND: CategoryAction(
        ErrorSeverity.LOW, False, "Mark product as unavailable, remove from tracking"
    ),
    ErrorCategory.SELECTOR_FAILED: CategoryAction(
        ErrorSeverity.MEDIUM, True, "Try alternative selectors, check if page layout changed"
    ),
    ErrorCategory.NETWORK: CategoryAction(
        ErrorSeverity.MEDIUM, True, "Check network, rotate proxy"
    ),
    ErrorCategory.TIMEOUT: CategoryAction(
        ErrorSeverity.MEDIUM, True, "Increase timeout, try different proxy"
    ),
    ErrorCategory.PARSE_ERROR: CategoryAction(
        ErrorSeverity.LOW, True, "Check page content format, update parser"
    ),
    ErrorCategory.AUTH_REQUIRED: CategoryAction(
        ErrorSeverity.HIGH, False, "Site requires login, cannot scrape this page"
    ),
    ErrorCategory.OUT_OF_STOCK: CategoryAction(
        ErrorSeverity.LOW, False, "Product out of stock, keep monitoring"
    ),
    ErrorCategory.GEO_BLOCKED: CategoryAction(
        ErrorSeverity.HIGH, False, "Try a proxy in a different region"
    ),
    ErrorCategory.UNKNOWN: CategoryAction(
        ErrorSeverity.MEDIUM, True, "Log for investigation, retry with caution"
    ),
}


def _compile(*patterns: str) -> list[re.Pattern]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


# Ordered: first matching category wins
SITE_ERROR_PATTERNS: dict[str, dict[ErrorCategory, list[re.Pattern]]] = {
    "amazon": {
        ErrorCategory.CAPTCHA: _compile(
            r"captcha",
            r"robot check",
            r"automated access",
            r"enter the characters",
            r"sorry, we just need to make sure",
        ),
        ErrorCategory.RATE_LIMIT: _compile(
            r"too many requests", r"request was throttled", r"slow down", r"rate limit"
        ),
        ErrorCategory.BLOCKED: _compile(
            r"access denied", r"page not available", r"something went wrong", r"we're sorry"
        ),
        ErrorCategory.NOT_FOUND: _compile(
            r"page not found", r"dog.*404", r"no longer available"
        ),
        ErrorCategory.OUT_OF_STOCK: _compile(
            r"currently unavailable", r"out of stock"
        ),
    },
    "burton": {
        ErrorCategory.CAPTCHA: _compile(r"verify you are human", r"captcha"),
        ErrorCategory.RATE_LIMIT: _compile(r"too many requests", r"rate limit"),
        ErrorCategory.BLOCKED: _compile(r"access denied", r"forbidden"),
        ErrorCategory.NOT_FOUND: _compile(r"page not found", r"product not found", r"\b404\b"),
        ErrorCategory.OUT_OF_STOCK: _compile(r"sold out", r"out of stock", r"notify me"),
    },
    "target": {
        ErrorCategory.CAPTCHA: _compile(r"prove you're not a robot", r"captcha"),
        ErrorCategory.RATE_LIMIT: _compile(r"too many requests", r"slow down"),
        ErrorCategory.BLOCKED: _compile(r"access denied", r"something went wrong"),
        ErrorCategory.NOT_FOUND: _compile(r"page not found", r"item not available"),
    },
    "walmart": {
        ErrorCategory.CAPTCHA: _compile(
            r"robot or human", r"verify you're a human", r"captcha", r"press and hold"
        ),
        ErrorCategory.RATE_LIMIT: _compile(r"too many requests", r"rate limit"),
        ErrorCategory.BLOCKED: _compile(r"access denied", r"blocked"),
        ErrorCategory.GEO_BLOCKED: _compile(
            r"not available in your location", r"shipping restrictions"
        ),
    },
    "default": {
        ErrorCategory.CAPTCHA: _compile(r"captcha", r"are you a robot", r"verify you are human"),
        ErrorCategory.RATE_LIMIT: _compile(r"\b429\b", r"too many", r"rate limit", r"throttl"),
        ErrorCategory.AUTH_REQUIRED: _compile(r"\b401\b", r"sign in to continue", r"login required"),
        ErrorCategory.BLOCKED: _compile(r"\b403\b", r"forbidden", r"access denied", r"blocked"),
        ErrorCategory.NOT_FOUND: _compile(r"\b404\b", r"not found"),
        ErrorCategory.TIMEOUT: _compile(r"timeout", r"timed out", r"ETIMEDOUT", r"ECONNRESET"),
        ErrorCategory.NETWORK: _compile(
            r"ENOTFOUND", r"ECONNREFUSED", r"network", r"connection", r"name resolution"
        ),
    },
}


def site_from_url(url: str) -> str:
    """Site tag used for health tracking (amazon/burton/target/walmart/default)."""
    try:
        host = (urlsplit(url).hostname or "").lower()
    except ValueError:
        host = ""
    if not host:
        host = url.lower()
    if "amazon." in host:
        return "amazon"
    if "burton.com" in host:
        return "burton"
    if "target.com" in host:
        return "target"
    if "walmart.com" in host:
        return "walmart"
    return "default"


@dataclass
class ErrorClassification:
    """Result of classifying one scrape failure."""

    category: ErrorCategory
    severity: ErrorSeverity
    retryable: bool
    site: str
    url: str
    message: str
    recommendation: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "category": self.category.value,
            "severity": self.severity.value,
            "retryable": self.retryable,
            "site": self.site,
            "url": self.url,
            "message": self.message,
            "recommendation": self.recommendation,
            "timestamp": self.timestamp.isoformat(),
        }


def _make(category: ErrorCategory, site: str, url: str, message: str) -> ErrorClassification:
    action = ERROR_ACTIONS[category]
    return ErrorClassification(
        category=category,
        severity=action.severity,
        retryable=action.retryable,
        site=site,
        url=url,
        message=message,
        recommendation=action.recommendation,
    )


def _match_patterns(site: str, text: str) -> Optional[ErrorCategory]:
    tables = [SITE_ERROR_PATTERNS.get(site)] if site != "default" else []
    tables.append(SITE_ERROR_PATTERNS["default"])
    for table in tables:
        if not table:
            continue
        for category, patterns in table.items():
            if any(p.search(text) for p in patterns):
                return category
    return None


def classify_error(
    error: BaseException | str,
    url: str,
    page_content: Optional[str] = None,
) -> ErrorClassification:
    """
    Classify a scrape error.

    Order of precedence:
      1. ScrapeError carrying an explicit category
      2. Transport exception types (timeouts, connection failures)
      3. Site-specific text patterns on page content, then on the message

    Args:
        error: Exception raised by the scraper (or a plain message)
        url: URL being scraped
        page_content: Optional HTML snippet for better classification

    Returns:
        ErrorClassification
    """
    site = site_from_url(url)
    message = str(error) if str(error) else type(error).__name__

    if isinstance(error, ScrapeError):
        page_content = page_content or error.page_content
        try:
            category = ErrorCategory(error.category)
        except ValueError:
            category = ErrorCategory.UNKNOWN
        if category is not ErrorCategory.UNKNOWN:
            return _make(category, site, url, message)

    if isinstance(error, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)):
        return _make(ErrorCategory.TIMEOUT, site, url, message)
    if isinstance(error, (httpx.NetworkError, ConnectionError)):
        return _make(ErrorCategory.NETWORK, site, url, message)

    for text in (page_content, message):
        if text:
            category = _match_patterns(site, text)
            if category is not None:
                return _make(category, site, url, message)

    lowered = message.lower()
    if "selector" in lowered or "could not find" in lowered:
        return _make(ErrorCategory.SELECTOR_FAILED, site, url, message)

    return _make(ErrorCategory.UNKNOWN, site, url, message)
