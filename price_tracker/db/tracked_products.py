"""Repository for tracked-product subscriptions."""

import logging
from datetime import datetime
from typing import Any, Mapping, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from price_tracker.db.models import TrackedProduct
from price_tracker.exceptions import StorageError
from price_tracker.validation import validate_tracked_product

logger = logging.getLogger(__name__)


class TrackedProductRepository:
    """CRUD for tracked products; the scheduler only reads and marks them checked."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        if session_factory is None:
            from price_tracker.db.session import AsyncSessionLocal

            session_factory = AsyncSessionLocal
        self.session_factory = session_factory

    async def add(self, data: Mapping[str, Any]) -> TrackedProduct:
        """
        Validate and insert a tracked product.

        Raises:
            InvalidInput: If the request is invalid
            StorageError: On database failure (e.g. duplicate URL)
        """
        values = validate_tracked_product(data).raise_for_errors()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    tracked = TrackedProduct(**values)
                    session.add(tracked)
                await session.refresh(tracked)
                logger.info(f"Tracking {tracked.url or tracked.product_name} (id={tracked.id})")
                return tracked
        except SQLAlchemyError as e:
            raise StorageError.from_exception(e) from e

    async def get(self, tracked_id: int) -> Optional[TrackedProduct]:
        async with self.session_factory() as session:
            return await session.get(TrackedProduct, tracked_id)

    async def list_all(self, enabled_only: bool = False) -> list[TrackedProduct]:
        stmt = select(TrackedProduct).order_by(TrackedProduct.id)
        if enabled_only:
            stmt = stmt.where(TrackedProduct.enabled.is_(True))
        async with self.session_factory() as session:
            return list((await session.execute(stmt)).scalars())

    async def list_url_candidates(self, limit: Optional[int] = None) -> list[TrackedProduct]:
        """
        Enabled url-mode tracked products, least recently checked first.

        The interval filter is applied by the scheduler against its own clock.
        """
        stmt = (
            select(TrackedProduct)
            .where(
                TrackedProduct.enabled.is_(True),
                TrackedProduct.tracking_mode == "url",
                TrackedProduct.url.is_not(None),
            )
            .order_by(TrackedProduct.last_checked_at.asc().nulls_first(), TrackedProduct.id)
        )
        if limit:
            stmt = stmt.limit(limit)
        async with self.session_factory() as session:
            return list((await session.execute(stmt)).scalars())

    async def mark_checked(self, tracked_id: int, when: datetime) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(
                        update(TrackedProduct)
                        .where(TrackedProduct.id == tracked_id)
                        .values(last_checked_at=when)
                    )
        except SQLAlchemyError as e:
            raise StorageError.from_exception(e) from e

    async def set_enabled(self, tracked_id: int, enabled: bool) -> bool:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    update(TrackedProduct)
                    .where(TrackedProduct.id == tracked_id)
                    .values(enabled=enabled)
                )
        return result.rowcount > 0

    async def delete(self, tracked_id: int) -> bool:
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(TrackedProduct).where(TrackedProduct.id == tracked_id)
                )
        return result.rowcount > 0
