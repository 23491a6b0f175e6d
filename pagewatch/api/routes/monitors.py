"""Monitor check routes."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from pagewatch.api.deps import get_check_scheduler, get_pipeline
from pagewatch.errors import ExtractionEmpty, NavigationError, RenderingEngineUnavailable
from pagewatch.worker.pipeline import CheckPipeline
from pagewatch.worker.tasks import CheckScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/monitors", tags=["monitors"])


class CheckResultResponse(BaseModel):
    id: int
    monitor_id: int
    status: str
    value: str | None
    error_kind: str | None
    error_message: str | None
    price: Decimal | None
    currency: str | None
    diff_text: str | None
    ai_summary: str | None
    response_time_ms: int
    created_at: datetime

    class Config:
        from_attributes = True


class DueMonitorResponse(BaseModel):
    id: int
    name: str | None
    mode: str
    due: bool
    next_check_at: datetime | None


class PreviewRequest(BaseModel):
    url: str = Field(..., min_length=1)
    selector: str = Field(..., min_length=1)


class PreviewResponse(BaseModel):
    url: str
    selector: str
    count: int
    text: str | None


@router.get("/due", response_model=List[DueMonitorResponse])
async def list_due_monitors(check_scheduler: CheckScheduler = Depends(get_check_scheduler)):
    """Which active monitors are due and when each is next checked."""
    return [DueMonitorResponse(**row) for row in await check_scheduler.list_due()]


@router.post("/preview", response_model=PreviewResponse)
async def preview_selector(
    request: PreviewRequest,
    pipeline: CheckPipeline = Depends(get_pipeline),
):
    """Test a CSS selector against a live page."""
    try:
        preview = await pipeline.preview_selector(request.url, request.selector)
    except RenderingEngineUnavailable as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    except ExtractionEmpty as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    except NavigationError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return PreviewResponse(
        url=preview.url,
        selector=preview.selector,
        count=preview.count,
        text=preview.text,
    )


@router.post("/{monitor_id}/check", response_model=CheckResultResponse)
async def check_monitor(
    monitor_id: int,
    check_scheduler: CheckScheduler = Depends(get_check_scheduler),
):
    """Check a monitor immediately and return the new history record."""
    try:
        record = await check_scheduler.check_now(monitor_id)
    except LookupError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Monitor not found")

    logger.info(f"Manual check of monitor {monitor_id}: {record.status}")
    return CheckResultResponse.model_validate(record)
