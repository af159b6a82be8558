"""Async engine and session factory."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from price_tracker.config import settings


def create_engine(database_url: str | None = None, pool_max: int | None = None) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    url = database_url or settings.database_url
    kwargs = {"pool_pre_ping": True}
    if not url.startswith("sqlite"):
        pool_max = pool_max or settings.db_pool_max
        kwargs.update(pool_size=pool_max, max_overflow=0)
    return create_async_engine(url, **kwargs)


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, expire_on_commit=False)


engine = create_engine()
AsyncSessionLocal = create_session_factory(engine)
