"""APScheduler job definitions."""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from price_tracker.config import Settings, settings as default_settings
from price_tracker.worker.monitor import PriceMonitor
from price_tracker.worker.retention import RetentionWorker

logger = logging.getLogger(__name__)


def setup_scheduler(
    monitor: PriceMonitor,
    retention: Optional[RetentionWorker] = None,
    settings: Optional[Settings] = None,
) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    - Monitoring cycle every settings.monitor_interval_minutes; overlapping
      runs are skipped and missed runs coalesced into one
    - Retention once a day at settings.retention_cron_hour (UTC)

    Returns:
        Configured scheduler instance (not started)
    """
    settings = settings or default_settings
    scheduler = AsyncIOScheduler(timezone="UTC")
    interval = max(1, int(settings.monitor_interval_minutes))

    scheduler.add_job(
        monitor.run_cycle,
        IntervalTrigger(minutes=interval),
        id="monitor_cycle",
        name="Check tracked products for price changes",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=600,
        replace_existing=True,
    )

    if retention is not None:
        scheduler.add_job(
            retention.run,
            CronTrigger(hour=settings.retention_cron_hour, minute=0),
            id="retention",
            name="Compact price history and purge stale products",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )

    logger.info(
        "Scheduler configured: monitor cycle every %d minutes, retention %s",
        interval,
        f"daily at {settings.retention_cron_hour:02d}:00 UTC" if retention is not None else "disabled",
    )
    return scheduler
