"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from prometheus_fastapi_instrumentator import Instrumentator

from price_tracker.config import settings
from price_tracker.db.models import Base
from price_tracker.db.price_store import PriceStore
from price_tracker.db.session import AsyncSessionLocal, engine
from price_tracker.db.tracked_products import TrackedProductRepository
from price_tracker.exceptions import StorageError
from price_tracker.worker.monitor import PriceMonitor
from price_tracker.worker.retention import RetentionWorker
from price_tracker.worker.scheduler import setup_scheduler

# Configure structured logging
from price_tracker.logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting price tracker...")

    # Initialize database
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    store = PriceStore(AsyncSessionLocal)
    repository = TrackedProductRepository(AsyncSessionLocal)
    monitor = PriceMonitor(store, repository)
    retention = RetentionWorker(AsyncSessionLocal)

    app.state.store = store
    app.state.monitor = monitor
    app.state.retention = retention

    # Start scheduler
    scheduler = setup_scheduler(monitor, retention)
    scheduler.start()
    logger.info("Scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down...")

    # No new jobs, then let the running cycle drain
    scheduler.shutdown(wait=False)
    await monitor.stop()
    await monitor.close()
    await engine.dispose()

    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Price Tracker",
    description="Monitor product prices and alert on significant changes",
    version="0.1.0",
    lifespan=lifespan,
)

# Add Prometheus instrumentation; also exposes the price_tracker_* metrics
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=True,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics", "/health", "/favicon.ico"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])


@app.get("/health")
async def health(request: Request):
    """Health check: monitor state, last cycle summary, site health and row counts."""
    monitor: PriceMonitor = request.app.state.monitor
    body = {"status": "healthy", "monitor": monitor.status()}

    last = monitor.last_summary
    if last is not None and last.status == "aborted":
        body["status"] = "degraded"

    try:
        body["database"] = await request.app.state.store.counts()
    except StorageError as e:
        logger.error(f"Health check could not read the database: {e}")
        body["status"] = "unhealthy"
        body["database"] = {"error": str(e)}
    return body


@app.get("/favicon.ico")
async def favicon():
    """Return empty favicon response to avoid 404 noise."""
    return Response(status_code=204)


if __name__ == "__main__":
    # Run with uvicorn
    uvicorn.run(
        "price_tracker.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
