"""Parsing of human-formatted price strings."""

import re
from decimal import Decimal, InvalidOperation
from typing import Optional

_NUMBER_RE = re.compile(r"\d[\d.,\s ']*")

# Checked in order; multi-character symbols first
CURRENCY_SYMBOLS = [
    ("C$", "CAD"),
    ("CA$", "CAD"),
    ("A$", "AUD"),
    ("AU$", "AUD"),
    ("US$", "USD"),
    ("CHF", "CHF"),
    ("€", "EUR"),
    ("£", "GBP"),
    ("¥", "JPY"),
    ("₹", "INR"),
    ("kr", "SEK"),
    ("$", "USD"),
]

_ISO_RE = re.compile(r"\b(USD|EUR|GBP|CAD|AUD|JPY|CHF|SEK|NOK|DKK|INR)\b")


def parse_price(text: Optional[str]) -> Optional[Decimal]:
    """
    Parse a price string into a Decimal.

    Handles "$1,234.56", "1.234,56 €", "1 234,56", "19.99" and "1,299".

    Returns:
        Decimal price or None if no number is found
    """
    if text is None:
        return None
    if isinstance(text, (int, float, Decimal)):
        try:
            return Decimal(str(text))
        except InvalidOperation:
            return None

    match = _NUMBER_RE.search(str(text))
    if not match:
        return None

    number = re.sub(r"[\s ']", "", match.group(0)).rstrip(".,")
    last_dot = number.rfind(".")
    last_comma = number.rfind(",")

    if last_dot >= 0 and last_comma >= 0:
        # Whichever separator comes last is the decimal separator
        if last_comma > last_dot:
            number = number.replace(".", "").replace(",", ".")
        else:
            number = number.replace(",", "")
    elif last_comma >= 0:
        decimals = len(number) - last_comma - 1
        if number.count(",") == 1 and decimals in (1, 2):
            number = number.replace(",", ".")
        else:
            number = number.replace(",", "")
    elif number.count(".") > 1:
        # "1.234.567" thousands grouping
        number = number.replace(".", "")

    try:
        return Decimal(number)
    except InvalidOperation:
        return None


def detect_currency(text: Optional[str], default: str = "USD") -> str:
    """Guess an ISO currency code from symbols or codes in the text."""
    if not text:
        return default
    iso = _ISO_RE.search(text.upper())
    if iso:
        return iso.group(1)
    for symbol, code in CURRENCY_SYMBOLS:
        if symbol in text:
            return code
    return default
