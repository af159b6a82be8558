"""Tests for per-site health tracking and retry policy."""

import random

from price_tracker.exceptions import ScrapeError
from price_tracker.ingest.error_classifier import classify_error
from price_tracker.ingest.site_health import SiteHealthTracker

from fakes import make_settings

BURTON_URL = "https://www.burton.com/us/en/p/custom-board"


def _tracker(clock, **overrides):
    return SiteHealthTracker(settings=make_settings(**overrides), clock=clock, rng=random.Random(7))


def test_consecutive_captchas_put_site_in_cooldown(fake_clock):
    tracker = _tracker(fake_clock)
    for _ in range(5):
        tracker.record_error(BURTON_URL, ScrapeError("challenge", category="captcha"))

    status = tracker.is_in_cooldown("burton")
    assert status.in_cooldown
    assert status.reason == "captcha"
    assert tracker.get_health("burton").consecutive_errors == 5

    # Success resets the streak but the cooldown runs its course
    tracker.record_success(BURTON_URL)
    assert tracker.get_health("burton").consecutive_errors == 0
    assert tracker.is_in_cooldown(BURTON_URL).in_cooldown

    fake_clock.advance(2 * 60 * 60 + 1)
    assert not tracker.is_in_cooldown("burton").in_cooldown
    assert tracker.get_health("burton").cooldown_until is None


def test_streak_of_medium_errors_trips_medium_cooldown(fake_clock):
    tracker = _tracker(fake_clock)
    for i in range(4):
        tracker.record_error(BURTON_URL, ScrapeError("down", category="network"))
        assert not tracker.is_in_cooldown("burton").in_cooldown

    tracker.record_error(BURTON_URL, ScrapeError("down", category="network"))
    status = tracker.is_in_cooldown("burton")
    assert status.in_cooldown
    assert status.remaining_seconds == 300


def test_success_breaks_the_streak(fake_clock):
    tracker = _tracker(fake_clock)
    for _ in range(4):
        tracker.record_error(BURTON_URL, ScrapeError("down", category="network"))
    tracker.record_success(BURTON_URL)
    tracker.record_error(BURTON_URL, ScrapeError("down", category="network"))
    assert not tracker.is_in_cooldown("burton").in_cooldown


def test_shorter_cooldown_does_not_shrink_existing_one(fake_clock):
    tracker = _tracker(fake_clock)
    tracker.record_error(BURTON_URL, ScrapeError("challenge", category="captcha"))
    until = tracker.get_health("burton").cooldown_until
    for _ in range(5):
        tracker.record_error(BURTON_URL, ScrapeError("down", category="network"))
    assert tracker.get_health("burton").cooldown_until == until


def test_should_retry_rules(fake_clock):
    tracker = _tracker(fake_clock, retry_base_delay_ms=1000, retry_max_delay_ms=60000)
    url = "https://www.rei.com/product/1"

    network = classify_error(ScrapeError("x", category="network"), url)
    decision = tracker.should_retry(network, attempt=1, max_attempts=3)
    assert decision.should_retry
    assert 750 <= decision.delay_ms <= 1250

    second = tracker.should_retry(network, attempt=2, max_attempts=3)
    assert 1500 <= second.delay_ms <= 2500

    assert tracker.should_retry(network, attempt=3, max_attempts=3).reason == "max_attempts_reached"

    not_found = classify_error(ScrapeError("x", category="not_found"), url)
    assert tracker.should_retry(not_found, 1, 3).reason == "non_retryable:not_found"


def test_retry_delay_is_capped(fake_clock):
    tracker = _tracker(fake_clock, retry_base_delay_ms=1000, retry_max_delay_ms=4000)
    network = classify_error(ScrapeError("x", category="network"), "https://www.rei.com/p")
    decision = tracker.should_retry(network, attempt=8, max_attempts=10)
    assert decision.delay_ms <= 5000


def test_no_retry_while_site_cools_down(fake_clock):
    tracker = _tracker(fake_clock)
    tracker.record_error(BURTON_URL, ScrapeError("challenge", category="captcha"))
    network = classify_error(ScrapeError("x", category="network"), BURTON_URL)
    assert tracker.should_retry(network, 1, 3).reason == "site_in_cooldown"


def test_error_summary_and_reset(fake_clock):
    tracker = _tracker(fake_clock)
    tracker.record_error(BURTON_URL, ScrapeError("x", category="timeout"))
    tracker.record_error(BURTON_URL, ScrapeError("x", category="timeout"))
    tracker.record_error(BURTON_URL, ScrapeError("x", category="not_found"))

    summary = tracker.get_error_summary("burton")
    assert summary["total_errors"] == 3
    assert summary["by_category"] == {"timeout": 2, "not_found": 1}
    assert "burton" in tracker.get_all_health()

    tracker.reset("burton")
    assert tracker.get_health("burton") is None
    assert tracker.get_error_summary("burton")["total_errors"] == 0
