"""Tests for alert dedup and multi-channel delivery."""

import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from price_tracker.detect.price_change import AlertDecision, DetectionResult, PriceChange
from price_tracker.notify.alert_pipeline import AlertPipeline, build_alert_data
from price_tracker.notify.channels import AlertChannel, ChannelResult, LogChannel
from price_tracker.notify.dedupe import MemoryDedupStore
from price_tracker.notify.formatters import AlertData

from fakes import FakeClock, make_settings


def _alert(product_id=1, direction="down", new_price="80.00") -> AlertData:
    new = Decimal(new_price)
    return AlertData(
        product_id=product_id,
        title="X1",
        url="https://amazon.com/dp/X1",
        site="amazon",
        old_price=Decimal("100.00"),
        new_price=new,
        percent_change=float(new - 100),
        absolute_change=new - Decimal("100.00"),
        direction=direction,
        severity="high",
    )


class RecordingChannel(AlertChannel):
    def __init__(self, result=None, error=None):
        self.sent = []
        self.result = result or ChannelResult(success=True)
        self.error = error

    async def send(self, alert):
        self.sent.append(alert)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.mark.asyncio
async def test_disabled_pipeline_sends_nothing():
    channel = RecordingChannel()
    pipeline = AlertPipeline(
        settings=make_settings(price_alerts_enabled=False), channels={"log": channel}, dedup_store=MemoryDedupStore()
    )
    result = await pipeline.send(_alert())
    assert result.to_dict() == {"sent": False, "reason": "alerts_disabled"}
    assert channel.sent == []


@pytest.mark.asyncio
async def test_second_alert_within_interval_is_rate_limited(fake_clock):
    channel = RecordingChannel()
    dedup = MemoryDedupStore()
    pipeline = AlertPipeline(
        settings=make_settings(), channels={"log": channel}, dedup_store=dedup, clock=fake_clock
    )

    first = await pipeline.send(_alert())
    assert first.sent is True
    assert first.channels["log"].success

    fake_clock.advance(1800)
    second = await pipeline.send(_alert(new_price="64.00"))
    assert second.to_dict() == {"sent": False, "reason": "rate_limited"}
    assert len(channel.sent) == 1

    # Other products and the other alert type are not affected
    assert (await pipeline.send(_alert(product_id=2))).sent is True
    assert (await pipeline.send(_alert(direction="up", new_price="150.00"))).sent is True

    fake_clock.advance(1801)
    assert (await pipeline.send(_alert())).sent is True
    assert len(channel.sent) == 4


@pytest.mark.asyncio
async def test_clear_allows_immediate_resend(fake_clock):
    pipeline = AlertPipeline(
        settings=make_settings(), channels={"log": RecordingChannel()}, dedup_store=MemoryDedupStore(), clock=fake_clock
    )
    await pipeline.send(_alert())
    await pipeline.clear(1, "price_drop")
    assert (await pipeline.send(_alert())).sent is True

    await pipeline.clear_all()
    assert len(pipeline.dedup) == 0


@pytest.mark.asyncio
async def test_webhook_failure_does_not_block_email():
    posted = []

    def handler(request):
        posted.append(json.loads(request.content))
        return httpx.Response(500, json={"error": "boom"})

    settings = make_settings(
        price_alert_channels="webhook,email",
        price_alert_webhook_url="https://hooks.example.com/price",
        price_alert_email_recipients="ops@example.com",
        email_enabled=True,
        email_provider="test",
    )
    dedup = MemoryDedupStore()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    pipeline = AlertPipeline(settings=settings, dedup_store=dedup, http_client=client)

    result = await pipeline.send(_alert())
    data = result.to_dict()

    assert data["sent"] is True
    assert data["channels"]["webhook"] == {"success": False, "error": "Webhook returned 500"}
    assert data["channels"]["email"]["success"] is True
    assert data["channels"]["email"]["messageId"].startswith("test-")
    assert posted[0]["text"].startswith("\U0001F4C9 Price dropped")

    email_sender = pipeline.channels["email"].sender
    assert email_sender.outbox[0]["To"] == "ops@example.com"
    assert len(dedup) == 1

    await client.aclose()


@pytest.mark.asyncio
async def test_channel_exception_is_isolated():
    good = RecordingChannel()
    bad = RecordingChannel(error=RuntimeError("smtp exploded"))
    pipeline = AlertPipeline(
        settings=make_settings(price_alert_channels="log,email"),
        channels={"log": good, "email": bad},
        dedup_store=MemoryDedupStore(),
    )

    result = await pipeline.send(_alert())
    assert result.sent is True
    assert result.channels["log"].success is True
    assert result.channels["email"].to_dict() == {"success": False, "error": "smtp exploded"}


@pytest.mark.asyncio
async def test_dedup_recorded_even_when_every_channel_fails():
    dedup = MemoryDedupStore()
    pipeline = AlertPipeline(
        settings=make_settings(price_alert_channels="webhook"),
        channels={"webhook": RecordingChannel(result=ChannelResult(success=False, error="down"))},
        dedup_store=dedup,
    )
    result = await pipeline.send(_alert())
    assert result.sent is True
    assert len(dedup) == 1
    assert (await pipeline.send(_alert())).reason == "rate_limited"


@pytest.mark.asyncio
async def test_misconfigured_channels_report_errors():
    settings = make_settings(price_alert_channels="webhook,email,pager")
    pipeline = AlertPipeline(settings=settings, dedup_store=MemoryDedupStore())
    result = await pipeline.send(_alert())

    assert result.channels["webhook"].error == "No webhook URL configured"
    assert result.channels["email"].error == "Email is not enabled"
    assert "pager" not in result.channels
    await pipeline.close()


@pytest.mark.asyncio
async def test_injected_channels_are_the_ones_sent_to():
    webhook = RecordingChannel()
    pipeline = AlertPipeline(
        settings=make_settings(), channels={"webhook": webhook}, dedup_store=MemoryDedupStore()
    )

    result = await pipeline.send(_alert())

    assert result.sent is True
    assert set(result.channels) == {"webhook"}
    assert len(webhook.sent) == 1


@pytest.mark.asyncio
async def test_concurrent_sends_share_one_lock_that_is_released():
    channel = RecordingChannel()
    pipeline = AlertPipeline(
        settings=make_settings(), channels={"log": channel}, dedup_store=MemoryDedupStore()
    )

    results = await asyncio.gather(*(pipeline.send(_alert()) for _ in range(5)))
    await pipeline.send(_alert(product_id=2))

    assert [r.sent for r in results].count(True) == 1
    assert len(channel.sent) == 2
    assert pipeline._locks == {}
    assert pipeline._lock_users == {}


@pytest.mark.asyncio
async def test_log_channel_writes_structured_record(caplog):
    from price_tracker.notify.formatters import format_alert_message

    with caplog.at_level("INFO", logger="price_tracker.alerts"):
        result = await LogChannel().send(format_alert_message(_alert()))

    assert result.success
    record = caplog.records[-1]
    assert record.levelname == "WARNING"
    assert record.type == "PRICE_ALERT"
    assert record.product_id == 1


def test_build_alert_data_requires_an_alert_decision():
    class Product:
        id = 7
        title = "Board"
        url = "https://www.burton.com/p/1"
        site = "burton"

    change = PriceChange(
        old_price=Decimal("100.00"),
        new_price=Decimal("80.00"),
        absolute_change=Decimal("-20.00"),
        percent_change=-20.0,
        direction="down",
        is_significant=True,
    )
    detection = DetectionResult(
        detected=True, product_id=7, change=change, alert=AlertDecision(True, "high", "price_drop")
    )
    alert = build_alert_data(Product, detection)
    assert alert.product_id == 7
    assert alert.alert_type == "price_drop"
    assert alert.severity == "high"

    quiet = DetectionResult(detected=False, product_id=7, reason="first_price")
    assert build_alert_data(Product, quiet) is None
