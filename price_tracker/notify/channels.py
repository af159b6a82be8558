"""Alert delivery channels: log, webhook and email."""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import httpx

from price_tracker.notify.email import EmailSender
from price_tracker.notify.formatters import FormattedAlert, build_webhook_payload

logger = logging.getLogger(__name__)


@dataclass
class ChannelResult:
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None

    def to_dict(self) -> dict:
        data = {"success": self.success}
        if self.error is not None:
            data["error"] = self.error
        if self.message_id is not None:
            data["messageId"] = self.message_id
        return data


class AlertChannel:
    """A destination for formatted alerts."""

    name = "base"

    async def send(self, alert: FormattedAlert) -> ChannelResult:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LogChannel(AlertChannel):
    """Writes a structured PRICE_ALERT record (warning for high severity)."""

    name = "log"

    def __init__(self, alert_logger: Optional[logging.Logger] = None):
        self.logger = alert_logger or logging.getLogger("price_tracker.alerts")

    async def send(self, alert: FormattedAlert) -> ChannelResult:
        data = alert.data
        level = logging.WARNING if data.severity == "high" else logging.INFO
        self.logger.log(
            level,
            alert.subject,
            extra={
                "type": "PRICE_ALERT",
                "product_id": data.product_id,
                "title": data.title,
                "old_price": str(data.old_price),
                "new_price": str(data.new_price),
                "percent_change": data.percent_change,
                "direction": data.direction,
                "severity": data.severity,
                "url": data.url,
            },
        )
        return ChannelResult(success=True)


class WebhookChannel(AlertChannel):
    """POSTs a Slack-style JSON payload; any 2xx is a success."""

    name = "webhook"

    def __init__(
        self,
        webhook_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def send(self, alert: FormattedAlert) -> ChannelResult:
        if not self.webhook_url:
            logger.warning("Webhook URL not configured for price alerts")
            return ChannelResult(success=False, error="No webhook URL configured")

        client = await self._get_client()
        try:
            response = await client.post(self.webhook_url, json=build_webhook_payload(alert))
        except httpx.HTTPError as e:
            logger.error(f"Failed to send webhook alert to {self.webhook_url[:50]}: {e}")
            return ChannelResult(success=False, error=str(e) or type(e).__name__)

        if not response.is_success:
            logger.error(f"Webhook {self.webhook_url[:50]} returned {response.status_code}")
            return ChannelResult(success=False, error=f"Webhook returned {response.status_code}")

        logger.info(f"Webhook alert sent to {self.webhook_url[:50]}")
        return ChannelResult(success=True)


class EmailChannel(AlertChannel):
    """Delegates to an EmailSender (plain-text + HTML)."""

    name = "email"

    def __init__(self, sender: Optional[EmailSender], recipients: Sequence[str]):
        self.sender = sender
        self.recipients = list(recipients)

    async def send(self, alert: FormattedAlert) -> ChannelResult:
        if self.sender is None:
            return ChannelResult(success=False, error="Email is not enabled")
        if not self.recipients:
            logger.warning("No email recipients configured for price alerts")
            return ChannelResult(success=False, error="No email recipients configured")

        result = await self.sender.send(self.recipients, alert.subject, alert.body, alert.html)
        if not result.success:
            logger.warning(f"Email alert failed: {result.error}")
        return ChannelResult(success=result.success, error=result.error, message_id=result.message_id)
