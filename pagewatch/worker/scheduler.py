"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from pagewatch.config import settings
from pagewatch.errors import RenderingEngineUnavailable
from pagewatch.ingest.session_pool import SessionPool
from pagewatch.worker.tasks import CheckScheduler

logger = logging.getLogger(__name__)


async def pool_watchdog_check(pool: SessionPool) -> bool:
    """
    Reset the browser pool when it reports unhealthy.

    Returns:
        True if a reset was performed
    """
    stats = pool.stats()
    if stats.healthy:
        return False

    logger.warning(
        f"Watchdog: browser pool unhealthy "
        f"({stats.consecutive_errors} consecutive errors, {stats.in_use} in use); resetting"
    )
    try:
        await pool.force_reset(reason="watchdog")
    except RenderingEngineUnavailable as e:
        logger.error(f"Watchdog: pool reset failed: {e}")
    return True


def setup_scheduler(check_scheduler: CheckScheduler, pool: SessionPool) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Jobs:
    - Monitor tick every ``scheduler_tick_seconds``
    - Browser pool watchdog every ``pool_watchdog_interval_seconds``

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        check_scheduler.tick,
        IntervalTrigger(seconds=settings.scheduler_tick_seconds),
        id="monitor_tick",
        name="Check due monitors",
        max_instances=1,  # Prevent overlapping ticks
        coalesce=True,
        misfire_grace_time=settings.scheduler_tick_seconds,
        replace_existing=True,
    )

    scheduler.add_job(
        pool_watchdog_check,
        IntervalTrigger(seconds=settings.pool_watchdog_interval_seconds),
        args=[pool],
        id="pool_watchdog",
        name="Browser pool watchdog",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: monitor tick every %d seconds, pool watchdog every %d seconds",
        settings.scheduler_tick_seconds,
        settings.pool_watchdog_interval_seconds,
    )

    return scheduler
