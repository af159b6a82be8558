"""Syntactic validation of URLs, prices and scraped records.

Every validator returns a ValidationResult instead of raising so callers can
collect all problems at once; ``raise_for_errors()`` turns a failed result into
an InvalidInput.
"""

import math
import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Optional
from urllib.parse import urlsplit

from price_tracker.config import settings
from price_tracker.exceptions import InvalidInput

MIN_PRICE = Decimal("0.01")
MAX_PRICE = Decimal("99999999.99")
MAX_TITLE_LENGTH = 1000
MIN_CHECK_INTERVAL = 1  # minutes
MAX_CHECK_INTERVAL = 10080  # one week
DEFAULT_CURRENCY = "USD"
SUPPORTED_SITES = ("amazon", "burton", "universal")
TRACKING_MODES = ("url", "search")

_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_CENTS = Decimal("0.01")


@dataclass
class ValidationResult:
    """Outcome of a validation call."""

    valid: bool
    sanitized: Any = None
    errors: list[str] = field(default_factory=list)

    def raise_for_errors(self) -> Any:
        """Return the sanitized value or raise InvalidInput."""
        if not self.valid:
            raise InvalidInput(self.errors)
        return self.sanitized


def _fail(*errors: str) -> ValidationResult:
    return ValidationResult(valid=False, sanitized=None, errors=list(errors))


def host_matches(host: str, domains: Iterable[str]) -> bool:
    """True if host equals one of the domains or is a subdomain of one."""
    host = host.lower().rstrip(".")
    for domain in domains:
        domain = domain.lower()
        if host == domain or host.endswith("." + domain):
            return True
    return False


def validate_url(value: Any, supported_domains: Optional[Iterable[str]] = None) -> ValidationResult:
    """
    Validate a product URL.

    Args:
        value: Candidate URL
        supported_domains: Allowed domains, defaults to settings.supported_domains

    Returns:
        ValidationResult with the trimmed URL as sanitized value
    """
    if not isinstance(value, str) or not value.strip():
        return _fail("URL is required and must be a string")

    url = value.strip()
    try:
        parts = urlsplit(url)
        host = parts.hostname
    except ValueError:
        return _fail("Invalid URL format")

    if not parts.scheme or not host:
        return _fail("Invalid URL format")

    errors = []
    if parts.scheme.lower() not in ("http", "https"):
        errors.append("URL must use HTTP or HTTPS protocol")

    domains = list(supported_domains if supported_domains is not None else settings.supported_domains)
    if not host_matches(host, domains):
        errors.append(f"URL must be from a supported domain ({', '.join(domains)})")

    if errors:
        return ValidationResult(valid=False, sanitized=None, errors=errors)
    return ValidationResult(valid=True, sanitized=url)


def validate_price(value: Any) -> ValidationResult:
    """
    Validate a price and round it HALF_UP to cents.

    Accepts int, float, Decimal or a numeric string. Bounds are checked on the
    rounded value, so 0.005 becomes 0.01 and is accepted.
    """
    if value is None:
        return _fail("Price is required")
    if isinstance(value, bool):
        return _fail("Price must be a valid number")

    if isinstance(value, float):
        if math.isnan(value):
            return _fail("Price must be a valid number")
        if math.isinf(value):
            return _fail("Price must be a finite number")
        # str() avoids binary float artefacts (19.99 -> 19.989999...)
        value = str(value)

    try:
        price = Decimal(str(value).strip()) if not isinstance(value, Decimal) else value
    except (InvalidOperation, ValueError):
        return _fail("Price must be a valid number")

    if price.is_nan():
        return _fail("Price must be a valid number")
    if price.is_infinite():
        return _fail("Price must be a finite number")

    sanitized = price.quantize(_CENTS, rounding=ROUND_HALF_UP)
    errors = []
    if sanitized < MIN_PRICE:
        errors.append(f"Price must be at least {MIN_PRICE}")
    if sanitized > MAX_PRICE:
        errors.append(f"Price cannot exceed {MAX_PRICE}")

    if errors:
        return ValidationResult(valid=False, sanitized=None, errors=errors)
    return ValidationResult(valid=True, sanitized=sanitized)


def validate_currency(value: Any) -> ValidationResult:
    """Three-letter currency code, upper-cased. Missing -> USD."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return ValidationResult(valid=True, sanitized=DEFAULT_CURRENCY)
    if not isinstance(value, str):
        return _fail("Currency must be a string")

    code = value.strip().upper()
    if not _CURRENCY_RE.match(code):
        return _fail("Currency must be a three-letter code")
    return ValidationResult(valid=True, sanitized=code)


def validate_title(value: Any) -> ValidationResult:
    if not isinstance(value, str):
        return _fail("Title is required and must be a string")

    title = value.strip()
    if not title:
        return _fail("Title cannot be empty")
    if len(title) > MAX_TITLE_LENGTH:
        return _fail(f"Title cannot exceed {MAX_TITLE_LENGTH} characters")
    return ValidationResult(valid=True, sanitized=title)


def validate_site(value: Any) -> ValidationResult:
    if not isinstance(value, str) or not value.strip():
        return _fail("Site is required and must be a string")

    site = value.strip().lower()
    if site not in SUPPORTED_SITES:
        return _fail(f"Site must be one of: {', '.join(SUPPORTED_SITES)}")
    return ValidationResult(valid=True, sanitized=site)


def validate_check_interval(value: Any) -> ValidationResult:
    """Check interval in minutes, 1..10080 inclusive."""
    if value is None:
        return _fail("Check interval is required")
    if isinstance(value, bool):
        return _fail("Check interval must be a valid number")
    try:
        minutes = int(value)
    except (TypeError, ValueError):
        return _fail("Check interval must be a valid number")
    if isinstance(value, float) and value != minutes:
        return _fail("Check interval must be a whole number of minutes")

    if minutes < MIN_CHECK_INTERVAL:
        return _fail(f"Check interval must be at least {MIN_CHECK_INTERVAL} minute(s)")
    if minutes > MAX_CHECK_INTERVAL:
        return _fail(f"Check interval cannot exceed {MAX_CHECK_INTERVAL} minutes (1 week)")
    return ValidationResult(valid=True, sanitized=minutes)


def validate_product_id(value: Any) -> ValidationResult:
    if isinstance(value, bool):
        return _fail("Product ID must be a positive integer")
    try:
        product_id = int(value)
    except (TypeError, ValueError):
        return _fail("Product ID must be a positive integer")
    if product_id < 1:
        return _fail("Product ID must be a positive integer")
    return ValidationResult(valid=True, sanitized=product_id)


def _field(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def _collect(errors: list[str], sanitized: dict, label: str, key: str, result: ValidationResult):
    if result.valid:
        sanitized[key] = result.sanitized
    else:
        errors.extend(f"{label}: {e}" for e in result.errors)


def validate_scraped_record(
    record: Any,
    supported_domains: Optional[Iterable[str]] = None,
) -> ValidationResult:
    """
    Validate a scraped record (mapping or object with url/site/title/price/currency).

    All field validators run; every error is collected before returning.

    Returns:
        ValidationResult whose sanitized value is a dict of clean fields
    """
    if record is None:
        return _fail("Record is required")

    errors: list[str] = []
    sanitized: dict[str, Any] = {}

    _collect(errors, sanitized, "URL", "url", validate_url(_field(record, "url"), supported_domains))
    _collect(errors, sanitized, "Site", "site", validate_site(_field(record, "site")))
    _collect(errors, sanitized, "Title", "title", validate_title(_field(record, "title")))
    _collect(errors, sanitized, "Price", "price", validate_price(_field(record, "price")))
    _collect(errors, sanitized, "Currency", "currency", validate_currency(_field(record, "currency")))

    if errors:
        return ValidationResult(valid=False, sanitized=None, errors=errors)
    return ValidationResult(valid=True, sanitized=sanitized)


def validate_tracked_product(
    data: Mapping[str, Any],
    supported_domains: Optional[Iterable[str]] = None,
) -> ValidationResult:
    """
    Validate a tracked-product request.

    Exactly one of url / product_name must be set; tracking_mode defaults to
    whichever of the two is present and must agree with it.
    """
    if not isinstance(data, Mapping):
        return _fail("Data must be a mapping")

    errors: list[str] = []
    sanitized: dict[str, Any] = {}

    url = data.get("url")
    product_name = data.get("product_name")
    has_url = isinstance(url, str) and bool(url.strip())
    has_name = isinstance(product_name, str) and bool(product_name.strip())

    if has_url == has_name:
        errors.append("Exactly one of url or product_name must be provided")

    mode = data.get("tracking_mode") or ("url" if has_url else "search")
    if mode not in TRACKING_MODES:
        errors.append(f"Tracking mode must be one of: {', '.join(TRACKING_MODES)}")
    elif mode == "url" and not has_url:
        errors.append("Tracking mode 'url' requires a url")
    elif mode == "search" and not has_name:
        errors.append("Tracking mode 'search' requires a product_name")
    sanitized["tracking_mode"] = mode

    if has_url:
        _collect(errors, sanitized, "URL", "url", validate_url(url, supported_domains))
        sanitized.setdefault("product_name", None)
    if has_name:
        _collect(errors, sanitized, "Product name", "product_name", validate_title(product_name))
        sanitized.setdefault("url", None)

    _collect(errors, sanitized, "Site", "site", validate_site(data.get("site") or "universal"))
    _collect(
        errors,
        sanitized,
        "Check interval",
        "check_interval_minutes",
        validate_check_interval(data.get("check_interval_minutes", 60)),
    )
    sanitized["enabled"] = bool(data.get("enabled", True))

    if errors:
        return ValidationResult(valid=False, sanitized=None, errors=errors)
    return ValidationResult(valid=True, sanitized=sanitized)
