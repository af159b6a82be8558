"""Tests for per-site request spacing."""

import asyncio
import random

import pytest

from price_tracker.ingest.rate_limiter import RateLimiter
from price_tracker.utils.clock import ensure_utc, jitter

from fakes import make_settings

LIMITS = {
    "amazon": {"min_interval": 1.2, "jitter": 1.3},
    "default": {"min_interval": 3.0, "jitter": 0.0},
}


def _limiter(clock):
    return RateLimiter(settings=make_settings(site_rate_limits=LIMITS), clock=clock, rng=random.Random(1))


@pytest.mark.asyncio
async def test_first_request_does_not_wait(fake_clock):
    limiter = _limiter(fake_clock)
    assert await limiter.acquire("amazon") == 0.0
    assert fake_clock.sleeps == []


@pytest.mark.asyncio
async def test_second_request_waits_remainder_plus_jitter(fake_clock):
    limiter = _limiter(fake_clock)
    await limiter.acquire("amazon")
    fake_clock.advance(0.2)

    waited = await limiter.acquire("amazon")
    assert 0.99 <= waited <= 2.31
    assert fake_clock.sleeps == [waited]


@pytest.mark.asyncio
async def test_no_wait_once_interval_elapsed(fake_clock):
    limiter = _limiter(fake_clock)
    await limiter.acquire("amazon")
    fake_clock.advance(1.5)
    assert await limiter.acquire("amazon") == 0.0


@pytest.mark.asyncio
async def test_unknown_site_uses_default_limits(fake_clock):
    limiter = _limiter(fake_clock)
    assert limiter.limits_for("rei.com") == (3.0, 0.0)
    await limiter.acquire("rei.com")
    assert await limiter.acquire("rei.com") == pytest.approx(3.0)


@pytest.mark.asyncio
async def test_sites_are_independent(fake_clock):
    limiter = _limiter(fake_clock)
    await limiter.acquire("amazon")
    assert await limiter.acquire("burton") == 0.0


@pytest.mark.asyncio
async def test_concurrent_callers_are_serialized(fake_clock):
    limiter = RateLimiter(
        settings=make_settings(site_rate_limits={"default": {"min_interval": 2.0, "jitter": 0.0}}),
        clock=fake_clock,
    )
    waits = await asyncio.gather(*(limiter.acquire("evo.com") for _ in range(3)))
    assert sorted(waits) == [0.0, pytest.approx(2.0), pytest.approx(2.0)]
    assert fake_clock.monotonic() == pytest.approx(4.0)


@pytest.mark.asyncio
async def test_reset_forgets_last_request(fake_clock):
    limiter = _limiter(fake_clock)
    await limiter.acquire("amazon")
    limiter.reset("amazon")
    assert await limiter.acquire("amazon") == 0.0


def test_jitter_bounds():
    rng = random.Random(3)
    values = [jitter(0.5, 1.5, rng) for _ in range(100)]
    assert all(0.5 <= v <= 1.5 for v in values)
    assert jitter(2.0, 1.0) == 2.0


def test_ensure_utc_attaches_timezone():
    from datetime import datetime, timezone

    naive = datetime(2024, 5, 1, 10, 0)
    assert ensure_utc(naive).tzinfo is timezone.utc
    assert ensure_utc(None) is None
