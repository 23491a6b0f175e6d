"""Health routes."""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel

from pagewatch.api.deps import get_check_scheduler, get_pool, get_repository
from pagewatch.db.repository import MonitorRepository
from pagewatch.errors import RenderingEngineUnavailable
from pagewatch.ingest.session_pool import SessionPool
from pagewatch.worker.tasks import CheckScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/health", tags=["health"])


class PoolHealth(BaseModel):
    total: int
    in_use: int
    available: int
    consecutive_errors: int
    healthy: bool
    reset_triggered: bool = False


class SchedulerHealthResponse(BaseModel):
    healthy: bool
    last_successful_check: datetime | None
    last_tick_at: datetime | None
    due_targets: int
    scheduler_errors: int


class DeepHealthResponse(BaseModel):
    status: str
    database: bool
    pool: PoolHealth
    scheduler: SchedulerHealthResponse


@router.get("/deep", response_model=DeepHealthResponse)
async def deep_health(
    response: Response,
    pool: SessionPool = Depends(get_pool),
    check_scheduler: CheckScheduler = Depends(get_check_scheduler),
    repository: MonitorRepository = Depends(get_repository),
):
    """Scheduler, browser pool and database health. Resets an unhealthy pool."""
    stats = pool.stats()
    reset_triggered = False
    if not stats.healthy:
        logger.warning("Deep health check found unhealthy browser pool; forcing reset")
        reset_triggered = True
        try:
            await pool.force_reset(reason="health_check")
        except RenderingEngineUnavailable as e:
            logger.error(f"Pool reset from health check failed: {e}")

    database_ok = await repository.ping()
    scheduler_health = check_scheduler.health()

    healthy = stats.healthy and database_ok and scheduler_health.healthy
    if not healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return DeepHealthResponse(
        status="healthy" if healthy else "unhealthy",
        database=database_ok,
        pool=PoolHealth(
            total=stats.total,
            in_use=stats.in_use,
            available=stats.available,
            consecutive_errors=stats.consecutive_errors,
            healthy=stats.healthy,
            reset_triggered=reset_triggered,
        ),
        scheduler=SchedulerHealthResponse(
            healthy=scheduler_health.healthy,
            last_successful_check=scheduler_health.last_successful_check,
            last_tick_at=scheduler_health.last_tick_at,
            due_targets=scheduler_health.due_targets,
            scheduler_errors=scheduler_health.scheduler_errors,
        ),
    )
