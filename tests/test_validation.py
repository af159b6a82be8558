"""Tests for input validation."""

from decimal import Decimal

import pytest

from price_tracker.exceptions import InvalidInput
from price_tracker.validation import (
    validate_check_interval,
    validate_currency,
    validate_price,
    validate_product_id,
    validate_scraped_record,
    validate_title,
    validate_tracked_product,
    validate_url,
)


def test_validate_url_trims_and_accepts_supported_domain():
    result = validate_url("  https://www.amazon.com/dp/B000TEST  ")
    assert result.valid
    assert result.sanitized == "https://www.amazon.com/dp/B000TEST"


def test_validate_url_rejects_scheme_and_domain():
    result = validate_url("ftp://example.org/item")
    assert not result.valid
    assert "URL must use HTTP or HTTPS protocol" in result.errors
    assert any("supported domain" in e for e in result.errors)


def test_validate_url_rejects_lookalike_domain():
    assert not validate_url("https://notamazon.com/dp/1").valid
    assert not validate_url("not a url").valid
    assert not validate_url(None).valid


@pytest.mark.parametrize(
    "value,expected",
    [
        (0.01, Decimal("0.01")),
        ("19.99", Decimal("19.99")),
        (19.995, Decimal("20.00")),
        (Decimal("10.005"), Decimal("10.01")),
        ("0.005", Decimal("0.01")),
        (99999999.99, Decimal("99999999.99")),
        (5, Decimal("5.00")),
    ],
)
def test_validate_price_accepts_and_rounds_half_up(value, expected):
    result = validate_price(value)
    assert result.valid, result.errors
    assert result.sanitized == expected


@pytest.mark.parametrize(
    "value",
    [0, "0.004", -1, 100000000, float("nan"), float("inf"), "abc", None, True],
)
def test_validate_price_rejects(value):
    assert not validate_price(value).valid


def test_validate_currency_defaults_and_uppercases():
    assert validate_currency(None).sanitized == "USD"
    assert validate_currency("eur").sanitized == "EUR"
    assert not validate_currency("EURO").valid


def test_validate_title_limits():
    assert validate_title("  Board  ").sanitized == "Board"
    assert not validate_title("   ").valid
    assert validate_title("x" * 1000).valid
    assert not validate_title("x" * 1001).valid


@pytest.mark.parametrize("value,valid", [(1, True), (10080, True), (0, False), (10081, False), ("60", True)])
def test_check_interval_bounds(value, valid):
    assert validate_check_interval(value).valid is valid


def test_validate_scraped_record_collects_all_errors():
    result = validate_scraped_record(
        {"url": "https://unknown.example/x", "site": "ebay", "title": "", "price": -5, "currency": "usd"}
    )
    assert not result.valid
    prefixes = {e.split(":", 1)[0] for e in result.errors}
    assert prefixes == {"URL", "Site", "Title", "Price"}


def test_validate_scraped_record_sanitizes():
    result = validate_scraped_record(
        {
            "url": "https://amazon.com/dp/X1",
            "site": "Amazon",
            "title": "  X1 ",
            "price": "100",
            "currency": None,
        }
    )
    assert result.valid
    assert result.sanitized == {
        "url": "https://amazon.com/dp/X1",
        "site": "amazon",
        "title": "X1",
        "price": Decimal("100.00"),
        "currency": "USD",
    }


def test_raise_for_errors():
    with pytest.raises(InvalidInput) as exc_info:
        validate_price("nope").raise_for_errors()
    assert exc_info.value.errors == ["Price must be a valid number"]
    assert isinstance(exc_info.value, ValueError)


def test_validate_tracked_product_requires_exactly_one_target():
    both = validate_tracked_product({"url": "https://amazon.com/dp/1", "product_name": "Board"})
    assert not both.valid
    neither = validate_tracked_product({})
    assert not neither.valid


def test_validate_tracked_product_defaults():
    result = validate_tracked_product({"url": "https://burton.com/p/1"})
    assert result.valid
    assert result.sanitized["tracking_mode"] == "url"
    assert result.sanitized["site"] == "universal"
    assert result.sanitized["check_interval_minutes"] == 60
    assert result.sanitized["enabled"] is True
    assert result.sanitized["product_name"] is None


def test_validate_tracked_product_mode_mismatch():
    result = validate_tracked_product({"product_name": "Board", "tracking_mode": "url"})
    assert not result.valid
    assert "Tracking mode 'url' requires a url" in result.errors


@pytest.mark.parametrize("value,valid", [(1, True), ("42", True), (0, False), (-3, False), ("abc", False), (True, False)])
def test_validate_product_id(value, valid):
    assert validate_product_id(value).valid is valid
