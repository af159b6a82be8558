"""Tests for due-set selection and the concurrency gate."""

from datetime import timedelta

import pytest

from price_tracker.db.models import TrackedProduct
from price_tracker.worker.due_scheduler import DueScheduler, SiteConcurrencyGate, dispatch_key, is_due

from fakes import make_settings


@pytest.mark.parametrize(
    "url,key",
    [
        ("https://www.amazon.com/dp/X1", "amazon"),
        ("https://www.burton.com/p/1", "burton"),
        ("https://www.rei.com/product/1", "rei.com"),
        ("https://evo.com/outlet/x", "evo.com"),
    ],
)
def test_dispatch_key(url, key):
    assert dispatch_key(url) == key


def test_is_due(fake_clock):
    now = fake_clock.now()
    tracked = TrackedProduct(
        url="https://amazon.com/dp/X1", tracking_mode="url", enabled=True, check_interval_minutes=60
    )
    assert is_due(tracked, now)

    tracked.last_checked_at = now - timedelta(minutes=59)
    assert not is_due(tracked, now)
    tracked.last_checked_at = now - timedelta(minutes=60)
    assert is_due(tracked, now)

    tracked.enabled = False
    assert not is_due(tracked, now)

    search = TrackedProduct(product_name="Board", tracking_mode="search", enabled=True, check_interval_minutes=1)
    assert not is_due(search, now)


@pytest.mark.asyncio
async def test_select_due_orders_and_filters(repository, fake_clock):
    now = fake_clock.now()
    recent = await repository.add({"url": "https://amazon.com/dp/RECENT", "check_interval_minutes": 60})
    stale = await repository.add({"url": "https://amazon.com/dp/STALE", "check_interval_minutes": 60})
    never = await repository.add({"url": "https://amazon.com/dp/NEVER"})
    disabled = await repository.add({"url": "https://amazon.com/dp/OFF", "enabled": False})
    await repository.add({"product_name": "Custom Camber"})

    await repository.mark_checked(recent.id, now - timedelta(minutes=10))
    await repository.mark_checked(stale.id, now - timedelta(hours=3))

    scheduler = DueScheduler(repository, settings=make_settings(), clock=fake_clock)
    due = await scheduler.select_due()
    assert [t.id for t in due] == [never.id, stale.id]
    assert disabled.id not in [t.id for t in due]


@pytest.mark.asyncio
async def test_select_due_respects_batch_limit(repository, fake_clock):
    for i in range(5):
        await repository.add({"url": f"https://amazon.com/dp/X{i}"})

    scheduler = DueScheduler(repository, settings=make_settings(monitor_batch_limit=3), clock=fake_clock)
    due = await scheduler.select_due()
    assert len(due) == 3
    assert len({t.id for t in due}) == 3


def test_gate_limits_global_and_per_site():
    gate = SiteConcurrencyGate(max_concurrent=2, per_site=1)
    assert gate.can_start("amazon")
    gate.start("amazon")
    assert not gate.can_start("amazon")
    assert gate.can_start("burton")
    gate.start("burton")
    assert not gate.has_capacity()
    assert not gate.can_start("rei.com")

    gate.finish("amazon")
    assert gate.in_flight == 1
    assert gate.site_in_flight("amazon") == 0
    assert gate.can_start("rei.com")


def test_gate_misuse_raises():
    gate = SiteConcurrencyGate(max_concurrent=1, per_site=1)
    with pytest.raises(RuntimeError):
        gate.finish("amazon")
    gate.start("amazon")
    with pytest.raises(RuntimeError):
        gate.start("burton")
