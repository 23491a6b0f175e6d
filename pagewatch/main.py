"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Response
from prometheus_fastapi_instrumentator import Instrumentator

from pagewatch.ai.summarizer import ChangeSummarizer
from pagewatch.api.routes import health, monitors
from pagewatch.config import settings
from pagewatch.db.models import Base
from pagewatch.db.repository import MonitorRepository
from pagewatch.db.session import AsyncSessionLocal, engine
from pagewatch.ingest.session_pool import SessionPool
from pagewatch.logging_config import setup_logging
from pagewatch.notify.dispatcher import NotificationDispatcher
from pagewatch.storage.screenshots import ScreenshotStore
from pagewatch.worker.pipeline import CheckPipeline
from pagewatch.worker.scheduler import setup_scheduler
from pagewatch.worker.tasks import CheckScheduler

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting PageWatch...")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    repository = MonitorRepository(AsyncSessionLocal)
    app_settings = await repository.get_app_settings()

    pool = SessionPool(proxy=app_settings.playwright_proxy)
    dispatcher = NotificationDispatcher()
    summarizer = ChangeSummarizer()
    pipeline = CheckPipeline(
        pool=pool,
        repository=repository,
        store=ScreenshotStore(),
        dispatcher=dispatcher,
        summarizer=summarizer,
    )
    check_scheduler = CheckScheduler(repository=repository, pipeline=pipeline, pool=pool)

    app.state.repository = repository
    app.state.pool = pool
    app.state.pipeline = pipeline
    app.state.check_scheduler = check_scheduler

    scheduler = setup_scheduler(check_scheduler, pool)
    scheduler.start()
    logger.info(
        f"Scheduler started (pool size {pool.max_sessions}, "
        f"max concurrent checks {check_scheduler.max_concurrent})"
    )

    yield

    # Shutdown
    logger.info("Shutting down...")
    scheduler.shutdown(wait=False)
    await pool.close()
    await dispatcher.close()
    await summarizer.close()
    await engine.dispose()
    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="PageWatch",
    description="Watch web pages for text, visual and price changes",
    version="0.1.0",
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=False,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics", "/health", "/favicon.ico"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

# Include API routes
app.include_router(health.router)
app.include_router(monitors.router)


@app.get("/health")
async def liveness():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/favicon.ico")
async def favicon():
    """Return empty favicon response to avoid 404 noise."""
    return Response(status_code=204)


if __name__ == "__main__":
    uvicorn.run(
        "pagewatch.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
