"""Shared fixtures: throwaway SQLite database and test settings."""

import pytest
import pytest_asyncio

from price_tracker.db.models import Base
from price_tracker.db.price_store import PriceStore
from price_tracker.db.session import create_engine, create_session_factory
from price_tracker.db.tracked_products import TrackedProductRepository

from fakes import FakeClock, make_settings


@pytest.fixture
def test_settings():
    return make_settings()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(session_factory, test_settings):
    return PriceStore(session_factory, settings=test_settings)


@pytest.fixture
def repository(session_factory):
    return TrackedProductRepository(session_factory)
