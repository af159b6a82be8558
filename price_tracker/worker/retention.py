"""Retention: compact price history, purge stale products and old search results."""

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Optional

from sqlalchemy import Date, cast, delete, func, inspect, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from price_tracker import metrics
from price_tracker.config import Settings, settings as default_settings
from price_tracker.db.models import (
    PriceHistory,
    PriceHistoryDaily,
    Product,
    SearchResult,
    TrackedProduct,
)
from price_tracker.exceptions import StorageError
from price_tracker.utils.clock import Clock, default_clock, ensure_utc

logger = logging.getLogger(__name__)


@dataclass
class RetentionPolicy:
    price_history_days: int = 90
    min_records_per_product: int = 10
    stale_product_days: int = 180
    search_result_days: int = 30
    keep_daily_samples: bool = True
    delete_batch_size: int = 1000

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetentionPolicy":
        return cls(
            price_history_days=settings.retention_price_history_days,
            min_records_per_product=settings.retention_min_records,
            stale_product_days=settings.retention_stale_product_days,
            search_result_days=settings.retention_search_days,
            keep_daily_samples=settings.retention_keep_daily_samples,
            delete_batch_size=settings.retention_batch_size,
        )


@dataclass
class StepReport:
    step: str
    deleted: int = 0
    archived: int = 0
    reason: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"archived": self.archived} if self.step == "archive" else {"deleted": self.deleted}
        if self.reason is not None:
            data["reason"] = self.reason
        return data


@dataclass
class RetentionReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    steps: list[StepReport] = field(default_factory=list)

    def step(self, name: str) -> Optional[StepReport]:
        for report in self.steps:
            if report.step == name:
                return report
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "steps": {report.step: report.to_dict() for report in self.steps},
        }


def _utc_day(column, dialect_name: str):
    """SQL expression for the UTC calendar day of a timestamp column."""
    if dialect_name == "postgresql":
        return cast(func.timezone("UTC", column), Date)
    # SQLite stores UTC wall-clock text
    return func.date(column)


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    return value


def _insert_for(dialect_name: str):
    if dialect_name == "postgresql":
        return postgresql.insert
    if dialect_name == "sqlite":
        return sqlite.insert
    raise StorageError(f"Unsupported database dialect: {dialect_name}")


class RetentionWorker:
    """
    Periodic compaction job.

    A run executes its steps in a fixed order: ensure the daily-samples table,
    archive one sample per product and day, delete old price rows, delete
    stale products, delete old search results. Every step is idempotent and
    deletes in batches of ``delete_batch_size`` rows, one transaction per batch.
    A failing step is reported and the run moves on to the next one.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        policy: Optional[RetentionPolicy] = None,
    ):
        if session_factory is None:
            from price_tracker.db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.settings = settings or default_settings
        self.clock = clock or default_clock
        self._policy = policy or RetentionPolicy.from_settings(self.settings)

    def policy(self) -> dict[str, Any]:
        """The effective retention policy."""
        return asdict(self._policy)

    async def run(self) -> RetentionReport:
        """Run every retention step once."""
        report = RetentionReport(started_at=self.clock.now())
        logger.info(f"Starting retention run with policy {self.policy()}")

        steps = [
            ("ensure_daily_table", self._ensure_daily_table),
            ("archive", self._archive_daily_samples),
            ("price_history", self._delete_old_prices),
            ("stale_products", self._delete_stale_products),
            ("search_results", self._delete_old_search_results),
        ]
        for name, step in steps:
            step_report = StepReport(step=name)
            try:
                await step(step_report)
            except Exception as e:
                error = StorageError.from_exception(e)
                metrics.record_storage_error(error.retryable)
                logger.error(f"Retention step {name} failed: {error}")
                step_report.reason = f"error: {error}"
            metrics.record_retention(name, step_report.deleted or step_report.archived)
            report.steps.append(step_report)

        report.finished_at = self.clock.now()
        logger.info(f"Retention run finished: {report.to_dict()['steps']}")
        return report

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _ensure_daily_table(self, report: StepReport) -> None:
        if not self._policy.keep_daily_samples:
            report.reason = "daily_samples_disabled"
            return
        async with self.session_factory() as session:
            async with session.begin():
                conn = await session.connection()
                await conn.run_sync(
                    lambda sync_conn: PriceHistoryDaily.__table__.create(sync_conn, checkfirst=True)
                )

    def _deletable_prices(self):
        """Subquery of price rows past the age cutoff and beyond the per-product minimum."""
        cutoff = self.clock.now() - timedelta(days=self._policy.price_history_days)
        ranked = select(
            PriceHistory.id.label("id"),
            PriceHistory.product_id.label("product_id"),
            PriceHistory.price.label("price"),
            PriceHistory.currency.label("currency"),
            PriceHistory.captured_at.label("captured_at"),
            func.row_number()
            .over(
                partition_by=PriceHistory.product_id,
                order_by=(PriceHistory.captured_at.desc(), PriceHistory.id.desc()),
            )
            .label("rn"),
        ).subquery()
        return (
            select(ranked)
            .where(ranked.c.captured_at < cutoff)
            .where(ranked.c.rn > self._policy.min_records_per_product)
            .subquery()
        )

    async def _archive_daily_samples(self, report: StepReport) -> None:
        if not self._policy.keep_daily_samples:
            report.reason = "daily_samples_disabled"
            return

        async with self.session_factory() as session:
            dialect = session.get_bind().dialect.name
            deletable = self._deletable_prices()
            day = _utc_day(deletable.c.captured_at, dialect)
            day_window = {"partition_by": (deletable.c.product_id, day)}
            per_day = select(
                deletable.c.product_id,
                day.label("sample_date"),
                deletable.c.price,
                deletable.c.currency,
                func.min(deletable.c.price).over(**day_window).label("min_price"),
                func.max(deletable.c.price).over(**day_window).label("max_price"),
                func.row_number()
                .over(
                    order_by=(deletable.c.captured_at.asc(), deletable.c.id.asc()),
                    **day_window,
                )
                .label("day_rn"),
            ).subquery()
            rows = (
                await session.execute(
                    select(
                        per_day.c.product_id,
                        per_day.c.sample_date,
                        per_day.c.price,
                        per_day.c.min_price,
                        per_day.c.max_price,
                        per_day.c.currency,
                    )
                    .where(per_day.c.day_rn == 1)
                    .order_by(per_day.c.product_id, per_day.c.sample_date)
                )
            ).all()

        if not rows:
            return

        batch_size = max(1, self._policy.delete_batch_size)
        for start in range(0, len(rows), batch_size):
            chunk = rows[start:start + batch_size]
            values = [
                {
                    "product_id": r.product_id,
                    "sample_date": _as_date(r.sample_date),
                    "price": r.price,
                    "min_price": r.min_price,
                    "max_price": r.max_price,
                    "currency": r.currency,
                }
                for r in chunk
            ]
            async with self.session_factory() as session:
                async with session.begin():
                    insert = _insert_for(session.get_bind().dialect.name)
                    stmt = insert(PriceHistoryDaily).values(values).on_conflict_do_nothing(
                        index_elements=[PriceHistoryDaily.product_id, PriceHistoryDaily.sample_date]
                    )
                    result = await session.execute(stmt)
                    # rowcount excludes rows skipped by ON CONFLICT
                    report.archived += max(result.rowcount or 0, 0)
        logger.info(f"Archived {report.archived} daily price samples")

    async def _delete_old_prices(self, report: StepReport) -> None:
        batch_size = max(1, self._policy.delete_batch_size)
        while True:
            async with self.session_factory() as session:
                async with session.begin():
                    deletable = self._deletable_prices()
                    ids = (
                        await session.execute(
                            select(deletable.c.id).order_by(deletable.c.id).limit(batch_size)
                        )
                    ).scalars().all()
                    if not ids:
                        break
                    await session.execute(delete(PriceHistory).where(PriceHistory.id.in_(ids)))
            report.deleted += len(ids)
            logger.debug(f"Deleted batch of {len(ids)} old price rows")
            if len(ids) < batch_size:
                break
        if report.deleted:
            logger.info(f"Deleted {report.deleted} price history rows older than {self._policy.price_history_days} days")

    async def _delete_stale_products(self, report: StepReport) -> None:
        cutoff = self.clock.now() - timedelta(days=self._policy.stale_product_days)
        batch_size = max(1, self._policy.delete_batch_size)
        while True:
            async with self.session_factory() as session:
                async with session.begin():
                    stale = (
                        await session.execute(
                            select(Product.id, Product.url, Product.last_seen_at)
                            .where(Product.last_seen_at < cutoff)
                            .order_by(Product.id)
                            .limit(batch_size)
                        )
                    ).all()
                    if not stale:
                        break
                    ids = [row.id for row in stale]
                    for row in stale:
                        logger.warning(
                            f"Deleting stale product {row.id} ({row.url}), "
                            f"last seen {ensure_utc(row.last_seen_at).isoformat()}"
                        )
                    # Children first; SQLite does not enforce ON DELETE CASCADE by default
                    await session.execute(delete(PriceHistory).where(PriceHistory.product_id.in_(ids)))
                    if self._policy.keep_daily_samples:
                        await session.execute(
                            delete(PriceHistoryDaily).where(PriceHistoryDaily.product_id.in_(ids))
                        )
                    await session.execute(delete(Product).where(Product.id.in_(ids)))
            report.deleted += len(ids)
            if len(ids) < batch_size:
                break

    async def _delete_old_search_results(self, report: StepReport) -> None:
        async with self.session_factory() as session:
            conn = await session.connection()
            exists = await conn.run_sync(
                lambda sync_conn: inspect(sync_conn).has_table(SearchResult.__tablename__)
            )
        if not exists:
            report.reason = "table_missing"
            return

        cutoff = self.clock.now() - timedelta(days=self._policy.search_result_days)
        batch_size = max(1, self._policy.delete_batch_size)
        while True:
            async with self.session_factory() as session:
                async with session.begin():
                    ids = (
                        await session.execute(
                            select(SearchResult.id)
                            .where(SearchResult.scraped_at < cutoff)
                            .order_by(SearchResult.id)
                            .limit(batch_size)
                        )
                    ).scalars().all()
                    if not ids:
                        break
                    await session.execute(delete(SearchResult).where(SearchResult.id.in_(ids)))
            report.deleted += len(ids)
            if len(ids) < batch_size:
                break

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def database_stats(self) -> dict[str, Any]:
        """Row counts and the capture time range of the price history."""
        async with self.session_factory() as session:
            products = (await session.execute(select(func.count(Product.id)))).scalar_one()
            prices = (await session.execute(select(func.count(PriceHistory.id)))).scalar_one()
            tracked = (await session.execute(select(func.count(TrackedProduct.id)))).scalar_one()
            oldest, newest = (
                await session.execute(
                    select(func.min(PriceHistory.captured_at), func.max(PriceHistory.captured_at))
                )
            ).one()
            conn = await session.connection()
            has_daily = await conn.run_sync(
                lambda sync_conn: inspect(sync_conn).has_table(PriceHistoryDaily.__tablename__)
            )
            daily = None
            if has_daily:
                daily = (
                    await session.execute(select(func.count()).select_from(PriceHistoryDaily))
                ).scalar_one()

        return {
            "products": products,
            "price_history": prices,
            "tracked_products": tracked,
            "price_history_daily": daily,
            "oldest_capture": _isoformat(oldest),
            "newest_capture": _isoformat(newest),
        }


def _isoformat(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return ensure_utc(value).isoformat()
