"""Tests for alert message formatting."""

from decimal import Decimal

from price_tracker.notify.formatters import AlertData, build_webhook_payload, format_alert_message


def _drop(**overrides) -> AlertData:
    values = dict(
        product_id=1,
        title="X1",
        url="https://amazon.com/dp/X1",
        site="amazon",
        old_price=Decimal("100.00"),
        new_price=Decimal("80.00"),
        percent_change=-20.0,
        absolute_change=Decimal("-20.00"),
        direction="down",
        severity="high",
        alert_reason="price_drop",
    )
    values.update(overrides)
    return AlertData(**values)


def test_drop_message():
    formatted = format_alert_message(_drop())
    assert formatted.subject == "\U0001F4C9 Price dropped -20.0%: X1"
    assert formatted.body == (
        "Product: X1\n"
        "Site: amazon\n"
        "Old Price: $100.00\n"
        "New Price: $80.00\n"
        "Change: -$20.00 (-20.0%)\n"
        "Severity: high\n"
        "URL: https://amazon.com/dp/X1"
    )


def test_increase_message():
    alert = _drop(
        new_price=Decimal("130.00"),
        percent_change=30.0,
        absolute_change=Decimal("30.00"),
        direction="up",
        severity="medium",
        alert_reason="price_increase",
    )
    formatted = format_alert_message(alert)
    assert formatted.subject == "\U0001F4C8 Price increased +30.0%: X1"
    assert "Change: +$30.00 (+30.0%)" in formatted.body
    assert alert.alert_type == "price_increase"


def test_html_body_escapes_title():
    formatted = format_alert_message(_drop(title="<b>Boots & Bindings</b>", site=None))
    assert "&lt;b&gt;Boots &amp; Bindings&lt;/b&gt;" in formatted.html
    assert "<td>Unknown</td>" in formatted.html
    assert '<a href="https://amazon.com/dp/X1">View Product</a>' in formatted.html


def test_formatting_is_deterministic():
    assert format_alert_message(_drop()) == format_alert_message(_drop())


def test_webhook_payload():
    payload = build_webhook_payload(format_alert_message(_drop()))
    assert payload == {
        "text": "\U0001F4C9 Price dropped -20.0%: X1",
        "attachments": [
            {
                "color": "#00ff00",
                "title": "X1",
                "title_link": "https://amazon.com/dp/X1",
                "fields": [
                    {"title": "Old Price", "value": "$100.00", "short": True},
                    {"title": "New Price", "value": "$80.00", "short": True},
                    {"title": "Change", "value": "-20.0%", "short": True},
                    {"title": "Severity", "value": "high", "short": True},
                ],
            }
        ],
    }


def test_increase_payload_color():
    payload = build_webhook_payload(
        format_alert_message(_drop(direction="up", new_price=Decimal("150.00"), percent_change=50.0))
    )
    assert payload["attachments"][0]["color"] == "#ff0000"


def test_alert_data_to_dict():
    data = _drop().to_dict()
    assert data["old_price"] == "100.00"
    assert data["direction"] == "down"
