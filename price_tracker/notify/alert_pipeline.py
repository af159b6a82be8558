"""Alert pipeline: rate limiting per (product, alert type) and multi-channel fanout."""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Optional

import httpx

from price_tracker import metrics
from price_tracker.config import Settings, settings as default_settings
from price_tracker.detect.price_change import DetectionResult
from price_tracker.exceptions import AlertError
from price_tracker.notify.channels import (
    AlertChannel,
    ChannelResult,
    EmailChannel,
    LogChannel,
    WebhookChannel,
)
from price_tracker.notify.dedupe import MemoryDedupStore, RedisDedupStore, create_dedup_store
from price_tracker.notify.email import EmailSender, create_email_sender
from price_tracker.notify.formatters import AlertData, format_alert_message
from price_tracker.utils.clock import Clock, default_clock

logger = logging.getLogger(__name__)


@dataclass
class AlertSendResult:
    sent: bool
    reason: Optional[str] = None
    channels: dict[str, ChannelResult] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data: dict = {"sent": self.sent}
        if self.reason is not None:
            data["reason"] = self.reason
        if self.channels:
            data["channels"] = {name: r.to_dict() for name, r in self.channels.items()}
        return data


def build_alert_data(product, detection: DetectionResult) -> Optional[AlertData]:
    """
    Alert payload for a detection result, or None if it should not alert.

    Args:
        product: Object with id/title/url/site attributes
        detection: Result of PriceChangeDetector.detect
    """
    if not detection.detected or detection.alert is None or not detection.alert.should_alert:
        return None
    change = detection.change
    return AlertData(
        product_id=product.id,
        title=product.title,
        url=product.url,
        site=product.site,
        old_price=change.old_price,
        new_price=change.new_price,
        percent_change=change.percent_change,
        absolute_change=change.absolute_change,
        direction=change.direction,
        severity=detection.alert.severity,
        alert_reason=detection.alert.reason,
    )


class AlertPipeline:
    """
    Sends price alerts to the configured channels.

    A (product, alert type) pair is alerted at most once per
    ``price_alert_min_interval`` seconds. The dedup entry is recorded once the
    channels were attempted, whatever their individual outcome.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        channels: Optional[dict[str, AlertChannel]] = None,
        dedup_store: MemoryDedupStore | RedisDedupStore | None = None,
        email_sender: Optional[EmailSender] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or default_settings
        self.clock = clock or default_clock
        self.dedup = dedup_store if dedup_store is not None else create_dedup_store(self.settings)
        self._locks: dict[tuple[int, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[int, str], int] = {}
        if channels is None:
            channels = self._build_channels(email_sender, http_client)
        self.channels = channels

    def _build_channels(
        self,
        email_sender: Optional[EmailSender],
        http_client: Optional[httpx.AsyncClient],
    ) -> dict[str, AlertChannel]:
        channels: dict[str, AlertChannel] = {}
        for name in self.settings.alert_channels:
            if name == "log":
                channels[name] = LogChannel()
            elif name == "webhook":
                channels[name] = WebhookChannel(
                    self.settings.price_alert_webhook_url,
                    client=http_client,
                    timeout=self.settings.webhook_timeout_seconds,
                )
            elif name == "email":
                sender = email_sender or create_email_sender(self.settings)
                channels[name] = EmailChannel(sender, self.settings.alert_email_recipients)
            else:
                logger.warning(f"Unknown alert channel configured: {name}")
        return channels

    @property
    def enabled(self) -> bool:
        return self.settings.price_alerts_enabled

    async def send(self, alert: AlertData) -> AlertSendResult:
        """
        Send one alert.

        Returns:
            AlertSendResult: sent=False with reason "alerts_disabled" or
            "rate_limited", otherwise sent=True with per-channel results
        """
        if not self.enabled:
            logger.debug(f"Price alerts disabled, not alerting for product {alert.product_id}")
            metrics.record_alert_suppressed("alerts_disabled")
            return AlertSendResult(sent=False, reason="alerts_disabled")

        key = (alert.product_id, alert.alert_type)
        interval = self.settings.price_alert_min_interval

        async with self._key_lock(key):
            now = self.clock.now().timestamp()
            if await self.dedup.is_rate_limited(alert.product_id, alert.alert_type, now, interval):
                logger.info(f"Alert rate limited for product {alert.product_id} ({alert.alert_type})")
                metrics.record_alert_suppressed("rate_limited")
                return AlertSendResult(sent=False, reason="rate_limited")

            formatted = format_alert_message(alert)
            channels = list(self.channels.items())
            outcomes = await asyncio.gather(
                *(self._dispatch(name, channel, formatted) for name, channel in channels)
            )
            results = {name: outcome for (name, _), outcome in zip(channels, outcomes)}

            await self.dedup.mark_sent(alert.product_id, alert.alert_type, now, interval)

        delivered = sum(1 for r in results.values() if r.success)
        logger.info(
            f"Price alert for product {alert.product_id} sent to {delivered}/{len(results)} channels: "
            f"{formatted.subject}"
        )
        return AlertSendResult(sent=True, channels=results)

    @asynccontextmanager
    async def _key_lock(self, key: tuple[int, str]):
        """Per-key lock, dropped once no sender holds or waits on it."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    async def _dispatch(self, name: str, channel: AlertChannel, formatted) -> ChannelResult:
        """Run one channel; its failure is reported, never propagated."""
        try:
            result = await channel.send(formatted)
        except Exception as e:
            error = AlertError(name, str(e) or type(e).__name__)
            logger.exception(f"Alert channel {error.channel} failed: {error}")
            result = ChannelResult(success=False, error=str(error))
        metrics.record_alert_sent(name, result.success)
        return result

    async def clear(self, product_id: int, alert_type: str) -> None:
        await self.dedup.clear(product_id, alert_type)

    async def clear_all(self) -> None:
        await self.dedup.clear_all()

    async def close(self) -> None:
        for channel in self.channels.values():
            await channel.close()
        await self.dedup.close()
