"""Monitoring cycle: select due tracked products, scrape, store, detect, alert.

One dispatcher coroutine owns the cycle. It launches a task per tracked product
while the global/per-site caps allow, collects outcomes as tasks finish and
requeues retryable failures with backoff. Per-item failures never escape the
cycle; only the consecutive-failure breaker ends it early.
"""

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from price_tracker import metrics
from price_tracker.config import Settings, settings as default_settings
from price_tracker.db.models import TrackedProduct
from price_tracker.db.price_store import PriceStore
from price_tracker.db.tracked_products import TrackedProductRepository
from price_tracker.detect.price_change import PriceChangeDetector
from price_tracker.exceptions import ScrapeError, StorageError
from price_tracker.ingest.error_classifier import site_from_url
from price_tracker.ingest.rate_limiter import RateLimiter
from price_tracker.ingest.registry import ScraperRegistry
from price_tracker.ingest.site_health import SiteHealthTracker
from price_tracker.logging_config import get_logger
from price_tracker.notify.alert_pipeline import AlertPipeline, AlertSendResult, build_alert_data
from price_tracker.utils.clock import Clock, default_clock
from price_tracker.validation import validate_scraped_record
from price_tracker.worker.due_scheduler import DueScheduler, SiteConcurrencyGate, dispatch_key

logger = logging.getLogger(__name__)


class CycleState(str, Enum):
    IDLE = "idle"
    SELECTING = "selecting"
    DISPATCHING = "dispatching"
    DRAINING = "draining"
    REPORTING = "reporting"


@dataclass
class WorkItem:
    tracked_id: int
    url: str
    key: str  # concurrency / rate-limit key
    attempt: int = 1
    not_before: float = 0.0  # monotonic time before which a retry must not start


@dataclass
class ItemOutcome:
    """Result of one attempt at one tracked product."""

    tracked_id: int
    url: str
    site: str
    status: str  # success | failed | skipped | deferred
    reason: Optional[str] = None
    category: Optional[str] = None
    product_id: Optional[int] = None
    retry_delay_ms: Optional[int] = None  # set when the attempt should be retried
    alert: Optional[AlertSendResult] = None
    duration: float = 0.0


@dataclass
class CycleSummary:
    cycle_id: str
    started_at: datetime
    status: str = "running"  # completed | aborted | timeout | stopped
    finished_at: Optional[datetime] = None
    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    aborted: int = 0
    deferred: int = 0
    retries: int = 0
    alerts_sent: int = 0
    duration: float = 0.0
    site_breakdown: dict[str, dict[str, int]] = field(default_factory=dict)

    def count(self, site: str, outcome: str) -> None:
        bucket = self.site_breakdown.setdefault(
            site, {"successful": 0, "failed": 0, "skipped": 0, "aborted": 0, "deferred": 0}
        )
        bucket[outcome] = bucket.get(outcome, 0) + 1
        setattr(self, outcome, getattr(self, outcome) + 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "aborted": self.aborted,
            "deferred": self.deferred,
            "retries": self.retries,
            "alerts_sent": self.alerts_sent,
            "duration": round(self.duration, 3),
            "site_breakdown": self.site_breakdown,
        }


@dataclass
class _ProductRef:
    id: int
    title: str
    url: str
    site: str


class PriceMonitor:
    """
    Drives monitoring cycles.

    Owns the in-memory site health, rate limiter and alert dedup state for the
    process; workers reach them only through this object.
    """

    def __init__(
        self,
        store: PriceStore,
        repository: TrackedProductRepository,
        registry: Optional[ScraperRegistry] = None,
        alerts: Optional[AlertPipeline] = None,
        site_health: Optional[SiteHealthTracker] = None,
        rate_limiter: Optional[RateLimiter] = None,
        detector: Optional[PriceChangeDetector] = None,
        scheduler: Optional[DueScheduler] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or default_settings
        self.clock = clock or default_clock
        self.store = store
        self.repository = repository
        self.registry = registry or ScraperRegistry()
        self.alerts = alerts or AlertPipeline(settings=self.settings, clock=self.clock)
        self.site_health = site_health or SiteHealthTracker(settings=self.settings, clock=self.clock)
        self.rate_limiter = rate_limiter or RateLimiter(settings=self.settings, clock=self.clock)
        self.detector = detector or PriceChangeDetector(store, settings=self.settings)
        self.scheduler = scheduler or DueScheduler(repository, settings=self.settings, clock=self.clock)

        self.state = CycleState.IDLE
        self.last_summary: Optional[CycleSummary] = None
        self._cycle_lock = asyncio.Lock()
        self._stop = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._cycle_lock.locked()

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        """Stop accepting new items; in-flight items drain within the grace period."""
        if not self._stop.is_set():
            logger.info("Monitor stop requested")
        self._stop.set()

    async def stop(self) -> None:
        """Request a stop and wait for the current cycle (if any) to finish."""
        self.request_stop()
        async with self._cycle_lock:
            pass

    def resume(self) -> None:
        self._stop.clear()

    def _transition(self, state: CycleState) -> None:
        logger.debug(f"Monitor state {self.state.value} -> {state.value}")
        self.state = state

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> Optional[CycleSummary]:
        """
        Run one monitoring cycle.

        Returns:
            CycleSummary, or None when a cycle is already running or the
            monitor is stopping
        """
        if self._cycle_lock.locked():
            logger.warning("Monitoring cycle already in progress, skipping")
            return None
        if self.stop_requested:
            logger.info("Monitor is stopping, not starting a new cycle")
            return None

        async with self._cycle_lock:
            try:
                return await self._run_cycle()
            finally:
                self._transition(CycleState.IDLE)

    async def _run_cycle(self) -> CycleSummary:
        summary = CycleSummary(cycle_id=uuid.uuid4().hex[:12], started_at=self.clock.now())
        started = self.clock.monotonic()
        deadline = started + self.settings.effective_cycle_timeout

        self._transition(CycleState.SELECTING)
        due = await self.scheduler.select_due(summary.started_at)
        summary.total = len(due)
        logger.info(f"Cycle {summary.cycle_id}: {len(due)} tracked products due")

        queue: deque[WorkItem] = deque(self._work_item(t) for t in due)
        gate = SiteConcurrencyGate(
            self.settings.monitor_max_concurrent, self.settings.monitor_site_concurrency
        )
        pending: dict[asyncio.Task, WorkItem] = {}
        consecutive_failures = 0
        end_reason: Optional[str] = None

        self._transition(CycleState.DISPATCHING)
        while queue or pending:
            now = self.clock.monotonic()
            if end_reason is None:
                if self.stop_requested:
                    end_reason = "stopped"
                elif now >= deadline:
                    end_reason = "timeout"
                    logger.warning(f"Cycle {summary.cycle_id} hit its deadline, deferring remaining work")

            if end_reason is None:
                self._launch_ready(queue, pending, gate, now, deadline)

            if not pending:
                if end_reason is not None or not queue:
                    break
                # Only backoff-delayed retries are left
                wake = min(item.not_before for item in queue)
                await self._idle(min(wake, deadline) - now)
                continue

            if end_reason is not None:
                break

            timeout = self._next_wakeup(queue, now, deadline)
            done, _ = await asyncio.wait(
                pending.keys(), timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                item = pending.pop(task)
                gate.finish(item.key)
                outcome = task.result()
                consecutive_failures = self._record_outcome(
                    summary, queue, item, outcome, consecutive_failures
                )

            if end_reason is None and consecutive_failures >= self.settings.cycle_max_failures:
                end_reason = "aborted"
                metrics.record_cycle_aborted()
                logger.error(
                    f"Cycle {summary.cycle_id} aborted after {consecutive_failures} consecutive failures"
                )

        self._transition(CycleState.DRAINING)
        await self._drain(summary, pending, gate)

        leftover = "aborted" if end_reason == "aborted" else "deferred"
        for item in queue:
            summary.count(site_from_url(item.url), leftover)
        queue.clear()

        self._transition(CycleState.REPORTING)
        summary.status = {
            None: "completed",
            "aborted": "aborted",
            "timeout": "timeout",
            "stopped": "stopped",
        }[end_reason]
        summary.finished_at = self.clock.now()
        summary.duration = self.clock.monotonic() - started
        metrics.record_cycle(
            summary.status,
            summary.duration,
            {
                "successful": summary.successful,
                "failed": summary.failed,
                "skipped": summary.skipped,
                "aborted": summary.aborted,
                "deferred": summary.deferred,
            },
        )
        self.last_summary = summary
        logger.info(
            f"Cycle {summary.cycle_id} {summary.status}: total={summary.total} "
            f"successful={summary.successful} failed={summary.failed} skipped={summary.skipped} "
            f"aborted={summary.aborted} deferred={summary.deferred} "
            f"duration={summary.duration:.1f}s",
            extra={"cycle": summary.to_dict()},
        )
        return summary

    def _work_item(self, tracked: TrackedProduct) -> WorkItem:
        return WorkItem(tracked_id=tracked.id, url=tracked.url, key=dispatch_key(tracked.url))

    def _launch_ready(
        self,
        queue: deque,
        pending: dict,
        gate: SiteConcurrencyGate,
        now: float,
        deadline: float,
    ) -> None:
        """Start every queued item whose site has capacity and whose backoff elapsed."""
        for item in list(queue):
            if not gate.has_capacity():
                break
            if item.not_before > now or not gate.can_start(item.key):
                continue
            queue.remove(item)
            gate.start(item.key)
            task = asyncio.create_task(self._run_item(item, deadline), name=f"monitor-{item.tracked_id}")
            pending[task] = item

    def _next_wakeup(self, queue: deque, now: float, deadline: float) -> float:
        wake = deadline
        for item in queue:
            if item.not_before > now:
                wake = min(wake, item.not_before)
        return max(0.01, wake - now)

    async def _idle(self, seconds: float) -> None:
        """Sleep until a retry is due, waking early on stop."""
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def _record_outcome(
        self,
        summary: CycleSummary,
        queue: deque,
        item: WorkItem,
        outcome: ItemOutcome,
        consecutive_failures: int,
    ) -> int:
        """Fold one outcome into the summary; returns the new failure streak."""
        if outcome.alert is not None and outcome.alert.sent:
            summary.alerts_sent += 1

        if outcome.status == "success":
            summary.count(outcome.site, "successful")
            return 0

        if outcome.status in ("skipped", "deferred"):
            summary.count(outcome.site, outcome.status)
            return consecutive_failures

        if outcome.retry_delay_ms is not None:
            summary.retries += 1
            metrics.record_scrape_retry(outcome.site, outcome.category or "unknown")
            queue.append(
                WorkItem(
                    tracked_id=item.tracked_id,
                    url=item.url,
                    key=item.key,
                    attempt=item.attempt + 1,
                    not_before=self.clock.monotonic() + outcome.retry_delay_ms / 1000.0,
                )
            )
            logger.info(
                f"Retrying {item.url} in {outcome.retry_delay_ms}ms "
                f"(attempt {item.attempt + 1}/{self.settings.scrape_max_attempts})"
            )
        else:
            summary.count(outcome.site, "failed")
        return consecutive_failures + 1

    async def _drain(self, summary: CycleSummary, pending: dict, gate: SiteConcurrencyGate) -> None:
        """Let in-flight items finish within the grace period, then cancel the rest."""
        if not pending:
            return
        logger.info(f"Draining {len(pending)} in-flight items")
        done, still_running = await asyncio.wait(
            pending.keys(), timeout=self.settings.shutdown_grace_seconds
        )
        for task in done:
            item = pending.pop(task)
            gate.finish(item.key)
            outcome = task.result()
            if outcome.alert is not None and outcome.alert.sent:
                summary.alerts_sent += 1
            if outcome.status == "success":
                summary.count(outcome.site, "successful")
            elif outcome.status in ("skipped", "deferred"):
                summary.count(outcome.site, outcome.status)
            else:
                summary.count(outcome.site, "failed")

        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            logger.warning(f"Cancelled {len(still_running)} items after the grace period")
        for task in still_running:
            item = pending.pop(task)
            gate.finish(item.key)
            summary.count(site_from_url(item.url), "aborted")

    # ------------------------------------------------------------------
    # Per-item work
    # ------------------------------------------------------------------

    async def _run_item(self, item: WorkItem, deadline: float) -> ItemOutcome:
        started = self.clock.monotonic()
        try:
            outcome = await self._process(item, deadline)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error while processing {item.url}")
            outcome = ItemOutcome(
                tracked_id=item.tracked_id,
                url=item.url,
                site=site_from_url(item.url),
                status="failed",
                reason=f"unexpected: {type(e).__name__}",
            )
            await self._mark_checked(item)
        outcome.duration = self.clock.monotonic() - started
        return outcome

    async def _process(self, item: WorkItem, deadline: float) -> ItemOutcome:
        url = item.url
        site = site_from_url(url)
        log = get_logger(__name__, site=site, tracked_id=item.tracked_id, attempt=item.attempt)

        def result(status: str, **kwargs) -> ItemOutcome:
            return ItemOutcome(tracked_id=item.tracked_id, url=url, site=site, status=status, **kwargs)

        cooldown = self.site_health.is_in_cooldown(site)
        if cooldown.in_cooldown:
            log.info(
                f"Skipping {url}: {site} in cooldown for {cooldown.remaining_seconds:.0f}s ({cooldown.reason})"
            )
            metrics.record_scrape_skipped(site)
            return result("skipped", reason="cooldown")

        await self.rate_limiter.acquire(item.key)
        if self.stop_requested or self.clock.monotonic() >= deadline:
            return result("deferred", reason="cycle_ending")

        scraper = self.registry.scraper_for(url)
        scrape_started = self.clock.monotonic()
        try:
            record = await asyncio.wait_for(
                scraper.scrape(url), timeout=self.settings.scrape_timeout_seconds
            )
            if record is None:
                raise ScrapeError(f"No price extracted from {url}", category="parse_error")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return await self._scrape_failed(item, e, scrape_started, result)

        validation = validate_scraped_record(record)
        if not validation.valid:
            error = ScrapeError(
                f"Invalid scraped record: {'; '.join(validation.errors)}", category="parse_error"
            )
            classification = self.site_health.record_error(url, error)
            metrics.record_scrape_error(site, classification.category.value, self.clock.monotonic() - scrape_started)
            await self._mark_checked(item)
            return result("failed", reason="invalid_record", category=classification.category.value)

        clean = validation.sanitized
        try:
            product_id = await self.store.save_with_retry(
                clean["url"], clean["site"], clean["title"], clean["price"], clean["currency"]
            )
        except StorageError as e:
            log.error(f"Dropping observation for {url} after storage failure: {e}")
            await self._mark_checked(item)
            return result("failed", reason="storage_error", category="storage")

        self.site_health.record_success(url)
        metrics.record_scrape_success(site, self.clock.monotonic() - scrape_started)

        alert_result = await self._detect_and_alert(
            _ProductRef(id=product_id, title=clean["title"], url=clean["url"], site=clean["site"])
        )
        await self._mark_checked(item)
        return result("success", product_id=product_id, alert=alert_result)

    async def _scrape_failed(self, item: WorkItem, error: BaseException, started: float, result) -> ItemOutcome:
        classification = self.site_health.record_error(item.url, error)
        category = classification.category.value
        metrics.record_scrape_error(classification.site, category, self.clock.monotonic() - started)

        if category == "parse_error":
            # Page loaded but held no usable price; another attempt will not change that
            await self._mark_checked(item)
            return result("failed", reason=str(error), category=category)

        decision = self.site_health.should_retry(
            classification, item.attempt, self.settings.scrape_max_attempts
        )
        if decision.should_retry:
            return result("failed", reason=str(error), category=category, retry_delay_ms=decision.delay_ms)

        await self._mark_checked(item)
        return result("failed", reason=str(error), category=category)

    async def _detect_and_alert(self, product: _ProductRef) -> Optional[AlertSendResult]:
        """Run change detection and send an alert if warranted.

        The observation is already stored; failures here are logged and do not
        fail the item.
        """
        try:
            detection = await self.detector.detect(product.id, site=product.site)
            alert_data = build_alert_data(product, detection)
            if alert_data is None:
                return None
            return await self.alerts.send(alert_data)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(f"Change detection / alerting failed for product {product.id}")
            return None

    async def _mark_checked(self, item: WorkItem) -> None:
        try:
            await self.repository.mark_checked(item.tracked_id, self.clock.now())
        except StorageError as e:
            logger.error(f"Failed to update last_checked_at for tracked product {item.tracked_id}: {e}")

    def status(self) -> dict[str, Any]:
        """Snapshot for the health endpoint."""
        return {
            "state": self.state.value,
            "running": self.is_running,
            "stop_requested": self.stop_requested,
            "last_cycle": self.last_summary.to_dict() if self.last_summary else None,
            "site_health": self.site_health.get_all_health(),
        }

    async def close(self) -> None:
        await self.registry.close()
        await self.alerts.close()
