"""Tests for the retention worker."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from price_tracker.db.models import PriceHistory, PriceHistoryDaily, Product, SearchResult
from price_tracker.worker.retention import RetentionPolicy, RetentionWorker

from fakes import make_settings


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


async def _product(session_factory, url, last_seen=None, prices=()):
    """Insert a product with price rows captured at the given times."""
    async with session_factory() as session:
        async with session.begin():
            product = Product(url=url, site="amazon", title="Test", last_seen_at=last_seen or _utc_now())
            session.add(product)
            await session.flush()
            for captured_at, price in prices:
                session.add(PriceHistory(product_id=product.id, price=Decimal(price), captured_at=captured_at))
        return product.id


async def _count(session_factory, stmt) -> int:
    async with session_factory() as session:
        return (await session.execute(stmt)).scalar_one()


def _worker(session_factory, **overrides) -> RetentionWorker:
    return RetentionWorker(session_factory, settings=make_settings(**overrides))


@pytest.mark.asyncio
async def test_retention_keeps_minimum_and_archives_deleted_rows(session_factory):
    base = _utc_now() - timedelta(days=120)
    prices = [(base + timedelta(days=i), f"{100 + i}.00") for i in range(12)]
    product_id = await _product(session_factory, "https://amazon.com/dp/X1", prices=prices)

    report = await _worker(session_factory).run()

    assert report.step("price_history").deleted == 2
    assert report.step("archive").archived == 2
    remaining = await _count(
        session_factory, select(func.count(PriceHistory.id)).where(PriceHistory.product_id == product_id)
    )
    assert remaining == 10

    async with session_factory() as session:
        daily = (await session.execute(select(PriceHistoryDaily).order_by(PriceHistoryDaily.sample_date))).scalars().all()
        oldest_kept = (
            await session.execute(select(func.min(PriceHistory.price)).where(PriceHistory.product_id == product_id))
        ).scalar_one()
    assert [(d.sample_date, d.price) for d in daily] == [
        (base.date(), Decimal("100.00")),
        ((base + timedelta(days=1)).date(), Decimal("101.00")),
    ]
    assert oldest_kept == Decimal("102.00")


@pytest.mark.asyncio
async def test_retention_is_idempotent(session_factory):
    base = _utc_now() - timedelta(days=120)
    await _product(
        session_factory,
        "https://amazon.com/dp/X1",
        prices=[(base + timedelta(days=i), "10.00") for i in range(12)],
    )
    worker = _worker(session_factory)
    await worker.run()
    again = await worker.run()

    assert again.step("price_history").deleted == 0
    assert again.step("archive").archived == 0
    assert again.to_dict()["steps"]["price_history"] == {"deleted": 0}


@pytest.mark.asyncio
async def test_archive_takes_earliest_row_of_each_day(session_factory):
    day = (_utc_now() - timedelta(days=150)).replace(hour=0, minute=0, second=0)
    prices = [
        (day + timedelta(hours=9), "30.00"),
        (day + timedelta(hours=1), "10.00"),
        (day + timedelta(hours=5), "20.00"),
    ]
    recent = _utc_now() - timedelta(days=1)
    product_id = await _product(session_factory, "https://amazon.com/dp/X1", prices=prices + [(recent, "5.00")])

    worker = RetentionWorker(
        session_factory,
        settings=make_settings(),
        policy=RetentionPolicy(min_records_per_product=1),
    )
    report = await worker.run()

    assert report.step("price_history").deleted == 3
    assert report.step("archive").archived == 1
    async with session_factory() as session:
        sample = (await session.execute(select(PriceHistoryDaily))).scalar_one()
    assert (sample.product_id, sample.sample_date, sample.price) == (product_id, day.date(), Decimal("10.00"))
    assert (sample.min_price, sample.max_price) == (Decimal("10.00"), Decimal("30.00"))


@pytest.mark.asyncio
async def test_recent_rows_and_small_histories_are_kept(session_factory):
    old = _utc_now() - timedelta(days=200)
    await _product(session_factory, "https://amazon.com/dp/FEW", prices=[(old + timedelta(days=i), "1.00") for i in range(5)])
    recent = _utc_now() - timedelta(days=10)
    await _product(
        session_factory, "https://amazon.com/dp/NEW", prices=[(recent + timedelta(hours=i), "1.00") for i in range(20)]
    )

    report = await _worker(session_factory).run()
    assert report.step("price_history").deleted == 0
    assert await _count(session_factory, select(func.count(PriceHistory.id))) == 25


@pytest.mark.asyncio
async def test_deletes_run_in_batches(session_factory):
    base = _utc_now() - timedelta(days=120)
    await _product(
        session_factory,
        "https://amazon.com/dp/X1",
        prices=[(base + timedelta(hours=i), "1.00") for i in range(25)],
    )
    report = await _worker(session_factory, retention_batch_size=4, retention_keep_daily_samples=False).run()

    assert report.step("price_history").deleted == 15
    assert report.step("archive").reason == "daily_samples_disabled"


@pytest.mark.asyncio
async def test_stale_products_are_deleted_with_history(session_factory):
    stale_seen = _utc_now() - timedelta(days=200)
    stale_id = await _product(
        session_factory, "https://amazon.com/dp/STALE", last_seen=stale_seen, prices=[(stale_seen, "9.99")]
    )
    fresh_id = await _product(session_factory, "https://amazon.com/dp/FRESH", prices=[(_utc_now(), "9.99")])

    report = await _worker(session_factory).run()

    assert report.step("stale_products").deleted == 1
    async with session_factory() as session:
        ids = (await session.execute(select(Product.id))).scalars().all()
        orphans = (
            await session.execute(select(func.count(PriceHistory.id)).where(PriceHistory.product_id == stale_id))
        ).scalar_one()
    assert ids == [fresh_id]
    assert orphans == 0


@pytest.mark.asyncio
async def test_old_search_results_are_pruned(session_factory):
    async with session_factory() as session:
        async with session.begin():
            session.add(SearchResult(query="board", url="https://evo.com/a", scraped_at=_utc_now() - timedelta(days=40)))
            session.add(SearchResult(query="board", url="https://evo.com/b", scraped_at=_utc_now() - timedelta(days=5)))

    report = await _worker(session_factory).run()
    assert report.step("search_results").deleted == 1
    assert await _count(session_factory, select(func.count(SearchResult.id))) == 1


@pytest.mark.asyncio
async def test_missing_search_table_is_reported(session_factory):
    async with session_factory() as session:
        conn = await session.connection()
        await conn.run_sync(lambda sync_conn: SearchResult.__table__.drop(sync_conn))
        await session.commit()

    report = await _worker(session_factory).run()
    assert report.step("search_results").reason == "table_missing"


@pytest.mark.asyncio
async def test_failing_step_does_not_stop_the_run(session_factory, monkeypatch):
    async with session_factory() as session:
        async with session.begin():
            session.add(SearchResult(query="board", url="https://evo.com/a", scraped_at=_utc_now() - timedelta(days=40)))

    worker = _worker(session_factory)

    async def broken(report):
        raise OperationalError("DELETE FROM products", {}, Exception("database is locked"))

    monkeypatch.setattr(worker, "_delete_stale_products", broken)
    report = await worker.run()

    assert report.step("stale_products").reason.startswith("error:")
    assert report.step("search_results").deleted == 1
    assert [s.step for s in report.steps] == [
        "ensure_daily_table",
        "archive",
        "price_history",
        "stale_products",
        "search_results",
    ]


@pytest.mark.asyncio
async def test_database_stats_and_policy(session_factory):
    captured = _utc_now() - timedelta(days=3)
    await _product(session_factory, "https://amazon.com/dp/X1", prices=[(captured, "1.00"), (_utc_now(), "2.00")])
    worker = _worker(session_factory, retention_price_history_days=30)

    stats = await worker.database_stats()
    assert stats["products"] == 1
    assert stats["price_history"] == 2
    assert stats["tracked_products"] == 0
    assert stats["price_history_daily"] == 0
    assert stats["oldest_capture"].startswith(captured.date().isoformat())

    policy = worker.policy()
    assert policy["price_history_days"] == 30
    assert policy["min_records_per_product"] == 10
    assert policy["keep_daily_samples"] is True
