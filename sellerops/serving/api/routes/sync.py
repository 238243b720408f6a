"""
Sync API Endpoints

Enqueue background syncs, poll and cancel jobs, and run a bounded
historical sync inline ("call again to continue").
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sellerops.config import get_settings
from sellerops.database.connection import get_db_dependency, get_session_factory
from sellerops.database.models import SyncLog
from sellerops.errors import SellerOpsError
from sellerops.jobs.handlers import VendorServices
from sellerops.jobs.queue import JobQueue
from sellerops.jobs.scheduler import get_queue_status, trigger_sync
from sellerops.sync import HistoricalOrderSync, SyncDirection

logger = structlog.get_logger(__name__)
settings = get_settings()
router = APIRouter()


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class TriggerRequest(BaseModel):
    """Optional job parameters (e.g. ``days``)"""
    payload: Dict[str, Any] = Field(default_factory=dict)


class TriggerResponse(BaseModel):
    job_id: int
    sync_type: str
    status: str = "queued"


class HistoricalRunRequest(BaseModel):
    """Inline historical run bounded by a wall-clock budget"""
    days: int = Field(default=365, ge=1)
    batch_size_days: Optional[int] = Field(default=None, ge=1)
    direction: SyncDirection = SyncDirection.OLDEST_FIRST
    max_runtime_seconds: float = Field(default=280, gt=0)


class SyncLogEntry(BaseModel):
    id: int
    sync_type: str
    status: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    records_processed: int
    records_created: int
    records_updated: int
    records_skipped: int
    records_failed: int
    error_message: Optional[str] = None


def get_job_queue() -> JobQueue:
    return JobQueue(get_session_factory())


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/status")
async def queue_status(queue: JobQueue = Depends(get_job_queue)) -> Dict[str, Any]:
    """Job counts by state plus the last completed and failed job."""
    return await get_queue_status(queue)


@router.get("/logs", response_model=List[SyncLogEntry])
async def list_sync_logs(
    sync_type: Optional[str] = None,
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db_dependency),
) -> List[SyncLogEntry]:
    query = select(SyncLog).order_by(SyncLog.started_at.desc(), SyncLog.id.desc()).limit(limit)
    if sync_type:
        query = query.where(SyncLog.sync_type == sync_type)
    result = await db.execute(query)
    return [
        SyncLogEntry(
            id=log.id,
            sync_type=log.sync_type,
            status=log.status.value,
            started_at=log.started_at,
            completed_at=log.completed_at,
            records_processed=log.records_processed,
            records_created=log.records_created,
            records_updated=log.records_updated,
            records_skipped=log.records_skipped,
            records_failed=log.records_failed,
            error_message=log.error_message,
        )
        for log in result.scalars().all()
    ]


@router.get("/jobs/{job_id}")
async def get_job(job_id: int, queue: JobQueue = Depends(get_job_queue)) -> Dict[str, Any]:
    job = await queue.get_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return job


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: int, queue: JobQueue = Depends(get_job_queue)) -> Dict[str, Any]:
    """Queued jobs are cancelled at once; running jobs stop at their next checkpoint."""
    return await queue.request_cancel(job_id)


@router.post("/historical/run")
async def run_historical(request: HistoricalRunRequest, response: Response) -> Dict[str, Any]:
    """
    Run historical batches until done or the runtime budget is spent.

    Re-invoke with the same parameters while ``needs_continuation`` is true.
    Unexpected failures come back as a 500 with a ``failed`` body.
    """
    try:
        services = VendorServices.from_settings()
        sync = HistoricalOrderSync(
            services.reports,
            get_session_factory(),
            direction=request.direction,
            max_runtime_seconds=request.max_runtime_seconds,
        )
        result = await sync.run_to_completion(request.days, batch_size_days=request.batch_size_days)
    except SellerOpsError:
        raise
    except Exception as e:
        logger.error("Error in run_historical", error=str(e), error_type=type(e).__name__)
        response.status_code = 500
        return {"status": "failed", "error": str(e), "error_type": type(e).__name__, "needs_continuation": False}
    return result.as_dict()


@router.post("/{sync_type}", response_model=TriggerResponse, status_code=202)
async def enqueue_sync(
    sync_type: str,
    request: Optional[TriggerRequest] = None,
    queue: JobQueue = Depends(get_job_queue),
) -> TriggerResponse:
    """Enqueue a sync ahead of its schedule; poll ``/sync/jobs/{job_id}`` for progress."""
    try:
        job_id = await trigger_sync(sync_type, request.payload if request else None, queue=queue)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return TriggerResponse(job_id=job_id, sync_type=sync_type)
