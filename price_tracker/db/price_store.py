"""Durable storage of products and their append-only price history."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import and_, func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from price_tracker import metrics
from price_tracker.config import Settings, settings as default_settings
from price_tracker.db.models import PriceHistory, Product
from price_tracker.exceptions import StorageError
from price_tracker.utils.clock import Clock, default_clock, ensure_utc

logger = logging.getLogger(__name__)

MAX_HISTORY_LIMIT = 1000
DEFAULT_HISTORY_LIMIT = 100


@dataclass
class PricePoint:
    """One row of price history."""

    id: int
    product_id: int
    price: Decimal
    currency: str
    captured_at: datetime


@dataclass
class ProductWithPrice:
    id: int
    url: str
    site: str
    title: str
    first_seen_at: datetime
    last_seen_at: datetime
    price: Optional[Decimal]
    currency: Optional[str]
    captured_at: Optional[datetime]


@dataclass
class PriceSummary:
    product_id: int
    window_days: int
    min_price: Optional[Decimal]
    max_price: Optional[Decimal]
    avg_price: Optional[Decimal]
    current_price: Optional[Decimal]
    data_points: int


@dataclass
class RecordedChange:
    """Consecutive pair of prices for a product that differ."""

    product_id: int
    title: str
    url: str
    site: str
    old_price: Decimal
    new_price: Decimal
    percent_change: float
    captured_at: datetime


def _point(row: PriceHistory) -> PricePoint:
    return PricePoint(
        id=row.id,
        product_id=row.product_id,
        price=Decimal(row.price),
        currency=row.currency,
        captured_at=ensure_utc(row.captured_at),
    )


def _insert_for(dialect_name: str):
    if dialect_name == "postgresql":
        return postgresql.insert
    if dialect_name == "sqlite":
        return sqlite.insert
    raise StorageError(f"Unsupported database dialect: {dialect_name}")


class PriceStore:
    """
    Product upsert + price append under one transaction, plus read helpers.

    Reads run outside explicit transactions; every write is transactional.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        if session_factory is None:
            from price_tracker.db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self.session_factory = session_factory
        self.settings = settings or default_settings
        self.clock = clock or default_clock

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save_observation(
        self,
        url: str,
        site: str,
        title: str,
        price: Decimal,
        currency: str = "USD",
    ) -> int:
        """
        Upsert the product by URL and append one price row, atomically.

        Args:
            url: Canonical product URL (unique key)
            site: Site tag
            title: Product title (replaces the stored title)
            price: Validated price
            currency: Currency code

        Returns:
            Product id

        Raises:
            StorageError: On any database failure (transaction rolled back)
        """
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    insert = _insert_for(session.get_bind().dialect.name)
                    stmt = insert(Product).values(url=url, site=site, title=title)
                    stmt = stmt.on_conflict_do_update(
                        index_elements=[Product.url],
                        set_={
                            "title": stmt.excluded.title,
                            "site": stmt.excluded.site,
                            "last_seen_at": func.now(),
                        },
                    ).returning(Product.id)
                    product_id = (await session.execute(stmt)).scalar_one()

                    session.add(
                        PriceHistory(product_id=product_id, price=price, currency=currency)
                    )
            logger.debug(f"Saved observation for product {product_id}: {price} {currency}")
            return product_id
        except SQLAlchemyError as e:
            error = StorageError.from_exception(e)
            metrics.record_storage_error(error.retryable)
            logger.error(f"Failed to save observation for {url}: {error} (code={error.code})")
            raise error from e

    async def save_with_retry(
        self,
        url: str,
        site: str,
        title: str,
        price: Decimal,
        currency: str = "USD",
    ) -> int:
        """
        save_observation with exponential backoff on transient errors.

        Non-retryable errors are raised immediately; the last error is raised
        once db_retry_max attempts are used up.
        """
        attempts = max(1, self.settings.db_retry_max)
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self.save_observation(url, site, title, price, currency)
            except StorageError as e:
                if not e.retryable or attempt >= attempts:
                    raise
                delay = self.settings.db_retry_base_delay_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"Transient storage error for {url}, retrying in {delay:.2f}s "
                    f"(attempt {attempt}/{attempts}): {e}"
                )
                await self.clock.sleep(delay)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_product(self, product_id: int) -> Optional[Product]:
        async with self.session_factory() as session:
            return await session.get(Product, product_id)

    async def get_product_by_url(self, url: str) -> Optional[Product]:
        async with self.session_factory() as session:
            result = await session.execute(select(Product).where(Product.url == url))
            return result.scalar_one_or_none()

    async def history(self, product_id: int, limit: int = DEFAULT_HISTORY_LIMIT) -> list[PricePoint]:
        """Price rows for a product, newest first. limit is capped at 1000."""
        limit = max(1, min(int(limit), MAX_HISTORY_LIMIT))
        async with self.session_factory() as session:
            result = await session.execute(
                select(PriceHistory)
                .where(PriceHistory.product_id == product_id)
                .order_by(PriceHistory.captured_at.desc(), PriceHistory.id.desc())
                .limit(limit)
            )
            return [_point(row) for row in result.scalars()]

    async def last_two_prices(self, product_id: int) -> list[PricePoint]:
        return await self.history(product_id, limit=2)

    async def latest_price(self, product_id: int) -> Optional[PricePoint]:
        rows = await self.history(product_id, limit=1)
        return rows[0] if rows else None

    async def previous_price(self, product_id: int) -> Optional[PricePoint]:
        """Second-most-recent price row."""
        rows = await self.last_two_prices(product_id)
        return rows[1] if len(rows) > 1 else None

    async def all_products_with_latest_price(self) -> list[ProductWithPrice]:
        """Every product with its most recent price (None when it has no rows)."""
        ranked = select(
            PriceHistory.product_id,
            PriceHistory.price,
            PriceHistory.currency,
            PriceHistory.captured_at,
            func.row_number()
            .over(
                partition_by=PriceHistory.product_id,
                order_by=(PriceHistory.captured_at.desc(), PriceHistory.id.desc()),
            )
            .label("rn"),
        ).subquery()

        stmt = (
            select(Product, ranked.c.price, ranked.c.currency, ranked.c.captured_at)
            .outerjoin(ranked, and_(ranked.c.product_id == Product.id, ranked.c.rn == 1))
            .order_by(Product.last_seen_at.desc(), Product.id)
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [
                ProductWithPrice(
                    id=product.id,
                    url=product.url,
                    site=product.site,
                    title=product.title,
                    first_seen_at=ensure_utc(product.first_seen_at),
                    last_seen_at=ensure_utc(product.last_seen_at),
                    price=Decimal(price) if price is not None else None,
                    currency=currency,
                    captured_at=ensure_utc(captured_at),
                )
                for product, price, currency, captured_at in result.all()
            ]

    async def price_summary(self, product_id: int, window_days: int = 30) -> PriceSummary:
        """Min/max/avg over the last ``window_days`` plus the current price."""
        cutoff = self.clock.now() - timedelta(days=window_days)
        async with self.session_factory() as session:
            result = await session.execute(
                select(
                    func.min(PriceHistory.price),
                    func.max(PriceHistory.price),
                    func.avg(PriceHistory.price),
                    func.count(PriceHistory.id),
                ).where(
                    PriceHistory.product_id == product_id,
                    PriceHistory.captured_at >= cutoff,
                )
            )
            min_price, max_price, avg_price, count = result.one()

        latest = await self.latest_price(product_id)
        return PriceSummary(
            product_id=product_id,
            window_days=window_days,
            min_price=Decimal(min_price) if min_price is not None else None,
            max_price=Decimal(max_price) if max_price is not None else None,
            avg_price=(
                Decimal(str(avg_price)).quantize(Decimal("0.01")) if avg_price is not None else None
            ),
            current_price=latest.price if latest else None,
            data_points=int(count or 0),
        )

    async def recent_changes(
        self,
        hours: int = 24,
        min_percent: Optional[float] = None,
    ) -> list[RecordedChange]:
        """
        Price changes recorded in the last ``hours`` hours.

        Each change is a pair of consecutive rows of one product whose prices
        differ by at least ``min_percent`` (default: significant threshold).
        """
        if min_percent is None:
            min_percent = self.settings.price_change_significant_percent
        cutoff = self.clock.now() - timedelta(hours=hours)

        lagged = select(
            PriceHistory.product_id,
            PriceHistory.price,
            PriceHistory.captured_at,
            func.lag(PriceHistory.price)
            .over(
                partition_by=PriceHistory.product_id,
                order_by=(PriceHistory.captured_at, PriceHistory.id),
            )
            .label("previous"),
        ).subquery()

        stmt = (
            select(Product, lagged.c.previous, lagged.c.price, lagged.c.captured_at)
            .join(lagged, lagged.c.product_id == Product.id)
            .where(
                lagged.c.captured_at >= cutoff,
                lagged.c.previous.is_not(None),
                lagged.c.previous != lagged.c.price,
            )
            .order_by(lagged.c.captured_at.desc())
        )
        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()

        changes = []
        for product, previous, price, captured_at in rows:
            old, new = Decimal(previous), Decimal(price)
            if old == 0:
                continue
            percent = round(float((new - old) / old * 100), 1)
            if abs(percent) < min_percent:
                continue
            changes.append(
                RecordedChange(
                    product_id=product.id,
                    title=product.title,
                    url=product.url,
                    site=product.site,
                    old_price=old,
                    new_price=new,
                    percent_change=percent,
                    captured_at=ensure_utc(captured_at),
                )
            )
        return changes

    async def biggest_drops(self, hours: int = 24, limit: int = 10) -> list[RecordedChange]:
        changes = await self.recent_changes(hours=hours)
        drops = [c for c in changes if c.percent_change < 0]
        drops.sort(key=lambda c: c.percent_change)
        return drops[:limit]

    async def counts(self) -> dict[str, Any]:
        """Row counts used by the health endpoint."""
        try:
            async with self.session_factory() as session:
                products = (await session.execute(select(func.count(Product.id)))).scalar_one()
                prices = (await session.execute(select(func.count(PriceHistory.id)))).scalar_one()
        except SQLAlchemyError as e:
            raise StorageError.from_exception(e) from e
        return {"products": products, "price_history": prices}
