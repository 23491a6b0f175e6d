"""FastAPI dependencies."""

from fastapi import Request

from pagewatch.db.repository import MonitorRepository
from pagewatch.ingest.session_pool import SessionPool
from pagewatch.worker.pipeline import CheckPipeline
from pagewatch.worker.tasks import CheckScheduler


def get_pool(request: Request) -> SessionPool:
    """Browser session pool created in the app lifespan."""
    return request.app.state.pool


def get_repository(request: Request) -> MonitorRepository:
    return request.app.state.repository


def get_pipeline(request: Request) -> CheckPipeline:
    return request.app.state.pipeline


def get_check_scheduler(request: Request) -> CheckScheduler:
    return request.app.state.check_scheduler
