"""Prometheus metrics for the price tracker."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("price_tracker", "Price tracker application info")
app_info.info({"version": "0.1.0", "name": "price-tracker"})

# Scrape metrics
scrapes_total = Counter(
    "price_tracker_scrapes_total",
    "Total number of scrape attempts",
    ["site", "status"],
)

scrape_errors_total = Counter(
    "price_tracker_scrape_errors_total",
    "Total number of failed scrapes by error category",
    ["site", "category"],
)

scrape_retries_total = Counter(
    "price_tracker_scrape_retries_total",
    "Total number of scrapes queued for another attempt",
    ["site", "category"],
)

scrape_duration_seconds = Histogram(
    "price_tracker_scrape_duration_seconds",
    "Time spent scraping a product page",
    ["site"],
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

# Site health
site_cooldowns_total = Counter(
    "price_tracker_site_cooldowns_total",
    "Number of times a site was put into cooldown",
    ["site", "category"],
)

sites_in_cooldown = Gauge(
    "price_tracker_sites_in_cooldown",
    "Whether a site is currently in cooldown (1) or not (0)",
    ["site"],
)

rate_limit_wait_seconds = Histogram(
    "price_tracker_rate_limit_wait_seconds",
    "Time spent waiting on the per-site rate limiter",
    ["site"],
    buckets=[0.0, 0.5, 1.0, 2.0, 5.0, 10.0],
)

# Price change metrics
price_changes_total = Counter(
    "price_tracker_price_changes_total",
    "Total number of significant price changes detected",
    ["site", "direction"],
)

# Alert metrics
alerts_sent_total = Counter(
    "price_tracker_alerts_sent_total",
    "Alert deliveries per channel",
    ["channel", "status"],
)

alerts_suppressed_total = Counter(
    "price_tracker_alerts_suppressed_total",
    "Alerts not sent",
    ["reason"],
)

# Cycle metrics
cycles_total = Counter(
    "price_tracker_cycles_total",
    "Monitoring cycles run",
    ["status"],
)

cycle_aborted_total = Counter(
    "price_tracker_cycle_aborted_total",
    "Monitoring cycles aborted by the circuit breaker",
)

cycle_items_total = Counter(
    "price_tracker_cycle_items_total",
    "Tracked products processed per outcome",
    ["outcome"],
)

cycle_duration_seconds = Histogram(
    "price_tracker_cycle_duration_seconds",
    "Duration of a monitoring cycle",
    buckets=[1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 900.0],
)

last_successful_cycle_timestamp = Gauge(
    "price_tracker_last_successful_cycle_timestamp",
    "Unix time of the last completed cycle",
)

# Storage metrics
storage_errors_total = Counter(
    "price_tracker_storage_errors_total",
    "Database errors while saving observations",
    ["retryable"],
)

retention_rows_total = Counter(
    "price_tracker_retention_rows_total",
    "Rows archived or deleted by retention",
    ["step"],
)


def record_scrape_success(site: str, duration: float):
    """Record a successful scrape."""
    scrapes_total.labels(site=site, status="success").inc()
    scrape_duration_seconds.labels(site=site).observe(duration)


def record_scrape_error(site: str, category: str, duration: float):
    """Record a failed scrape."""
    scrapes_total.labels(site=site, status="error").inc()
    scrape_errors_total.labels(site=site, category=category).inc()
    scrape_duration_seconds.labels(site=site).observe(duration)


def record_scrape_retry(site: str, category: str):
    scrape_retries_total.labels(site=site, category=category).inc()


def record_scrape_skipped(site: str):
    scrapes_total.labels(site=site, status="skipped").inc()


def record_site_cooldown(site: str, category: str):
    """Record a site entering cooldown."""
    site_cooldowns_total.labels(site=site, category=category).inc()
    sites_in_cooldown.labels(site=site).set(1)


def clear_site_cooldown(site: str):
    sites_in_cooldown.labels(site=site).set(0)


def record_rate_limit_wait(site: str, seconds: float):
    rate_limit_wait_seconds.labels(site=site).observe(seconds)


def record_price_change(site: str, direction: str):
    """Record a significant price change."""
    price_changes_total.labels(site=site, direction=direction).inc()


def record_alert_sent(channel: str, success: bool):
    """Record one channel delivery."""
    status = "success" if success else "error"
    alerts_sent_total.labels(channel=channel, status=status).inc()


def record_alert_suppressed(reason: str):
    alerts_suppressed_total.labels(reason=reason).inc()


def record_cycle(status: str, duration: float, outcomes: dict[str, int]):
    """Record a finished monitoring cycle.

    Args:
        status: "completed", "aborted" or "timeout"
        duration: Cycle duration in seconds
        outcomes: Count of items per outcome (successful, failed, skipped, ...)
    """
    cycles_total.labels(status=status).inc()
    cycle_duration_seconds.observe(duration)
    for outcome, count in outcomes.items():
        if count:
            cycle_items_total.labels(outcome=outcome).inc(count)
    if status == "completed":
        last_successful_cycle_timestamp.set(time.time())


def record_cycle_aborted():
    cycle_aborted_total.inc()


def record_storage_error(retryable: bool):
    storage_errors_total.labels(retryable=str(retryable).lower()).inc()


def record_retention(step: str, rows: int):
    """Record rows touched by a retention step."""
    if rows:
        retention_rows_total.labels(step=step).inc(rows)
