"""Price alert message formatting.

Formatting is pure: the same AlertData always yields the same message.
"""

import html
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

DROP_COLOR = "#00ff00"
INCREASE_COLOR = "#ff0000"


@dataclass(frozen=True)
class AlertData:
    """Everything a channel needs to describe a price change."""

    product_id: int
    title: str
    url: str
    site: Optional[str]
    old_price: Decimal
    new_price: Decimal
    percent_change: float
    absolute_change: Decimal
    direction: str  # down | up
    severity: str
    currency: str = "USD"
    alert_reason: Optional[str] = None

    @property
    def alert_type(self) -> str:
        return "price_drop" if self.direction == "down" else "price_increase"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["old_price"] = str(self.old_price)
        data["new_price"] = str(self.new_price)
        data["absolute_change"] = str(self.absolute_change)
        return data


@dataclass(frozen=True)
class FormattedAlert:
    subject: str
    body: str
    html: str
    data: AlertData


def _money(value: Decimal) -> str:
    return f"${Decimal(value):.2f}"


def format_alert_message(alert: AlertData) -> FormattedAlert:
    """
    Render subject, plain-text body and HTML body for an alert.

    Args:
        alert: Alert data

    Returns:
        FormattedAlert
    """
    down = alert.direction == "down"
    emoji = "\U0001F4C9" if down else "\U0001F4C8"
    action = "dropped" if down else "increased"
    percent_sign = "" if down else "+"
    money_sign = "-" if down else "+"
    percent = f"{percent_sign}{alert.percent_change:.1f}%"
    change = f"{money_sign}{_money(abs(alert.absolute_change))} ({percent})"
    site = alert.site or "Unknown"

    subject = f"{emoji} Price {action} {percent}: {alert.title}"
    body = "\n".join(
        [
            f"Product: {alert.title}",
            f"Site: {site}",
            f"Old Price: {_money(alert.old_price)}",
            f"New Price: {_money(alert.new_price)}",
            f"Change: {change}",
            f"Severity: {alert.severity}",
            f"URL: {alert.url}",
        ]
    )

    title = html.escape(alert.title)
    url = html.escape(alert.url, quote=True)
    html_body = (
        f"<h2>{emoji} Price Alert</h2>\n"
        f"<p><strong>{title}</strong></p>\n"
        "<table>\n"
        f"  <tr><td>Site:</td><td>{html.escape(site)}</td></tr>\n"
        f"  <tr><td>Old Price:</td><td>{_money(alert.old_price)}</td></tr>\n"
        f"  <tr><td>New Price:</td><td><strong>{_money(alert.new_price)}</strong></td></tr>\n"
        f"  <tr><td>Change:</td><td>{change}</td></tr>\n"
        f"  <tr><td>Severity:</td><td>{html.escape(alert.severity)}</td></tr>\n"
        "</table>\n"
        f'<p><a href="{url}">View Product</a></p>\n'
    )

    return FormattedAlert(subject=subject, body=body, html=html_body, data=alert)


def build_webhook_payload(formatted: FormattedAlert) -> Dict[str, Any]:
    """
    Slack-compatible webhook payload.

    Returns:
        {"text": subject, "attachments": [{color, title, title_link, fields}]}
    """
    alert = formatted.data
    return {
        "text": formatted.subject,
        "attachments": [
            {
                "color": DROP_COLOR if alert.direction == "down" else INCREASE_COLOR,
                "title": alert.title,
                "title_link": alert.url,
                "fields": [
                    {"title": "Old Price", "value": _money(alert.old_price), "short": True},
                    {"title": "New Price", "value": _money(alert.new_price), "short": True},
                    {"title": "Change", "value": f"{alert.percent_change:.1f}%", "short": True},
                    {"title": "Severity", "value": alert.severity, "short": True},
                ],
            }
        ],
    }
