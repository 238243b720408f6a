"""
Durable Job Queue

Background syncs run from the ``sync_jobs`` table:
- ``enqueue`` returns immediately with a job id
- workers ``claim_next`` with a conditional UPDATE so exactly one wins
- failures are re-queued with exponential backoff until attempts run out
  or the error is not retryable
- progress, log lines and results live on the job row, so every run's state
  is retrievable by job id
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sellerops.config import get_settings
from sellerops.database.connection import session_scope
from sellerops.database.models import JobStatus, SyncJob, SyncType, validate_transition
from sellerops.errors import NotFoundError, StateConflictError, is_retryable
from sellerops.timeutils import utcnow

logger = structlog.get_logger(__name__)
settings = get_settings()

CLEAR_STALE_REPORTS = "clear_stale_reports"
JOB_TYPES = frozenset({t.value for t in SyncType} | {CLEAR_STALE_REPORTS})
MAX_LOG_LINES = 200


@dataclass(frozen=True)
class QueueOptions:
    attempts: int
    backoff_seconds: float


DEFAULT_OPTIONS = QueueOptions(attempts=settings.queue.default_attempts, backoff_seconds=settings.queue.backoff_seconds)

# report-backed jobs get more attempts; historical batches back off longer
QUEUE_OPTIONS: Dict[str, QueueOptions] = {
    SyncType.HISTORICAL_ORDERS.value: QueueOptions(attempts=5, backoff_seconds=60),
    SyncType.RECENT_ORDERS.value: QueueOptions(attempts=5, backoff_seconds=settings.queue.backoff_seconds),
    SyncType.RETURNS.value: QueueOptions(attempts=5, backoff_seconds=settings.queue.backoff_seconds),
}


def options_for(job_type: str) -> QueueOptions:
    return QUEUE_OPTIONS.get(job_type, DEFAULT_OPTIONS)


@dataclass
class ClaimedJob:
    id: int
    job_type: str
    payload: Dict[str, Any]
    attempts: int
    max_attempts: int


def job_to_dict(job: SyncJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "job_type": job.job_type,
        "status": job.status.value,
        "payload": job.payload or {},
        "priority": job.priority,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "progress": job.progress or {},
        "logs": job.logs or [],
        "result": job.result,
        "error_message": job.error_message,
        "cancel_requested": job.cancel_requested,
        "worker_id": job.worker_id,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "finished_at": job.finished_at.isoformat() if job.finished_at else None,
    }


class JobQueue:
    """
    Queue API over ``sync_jobs``.

    Example:
        queue = JobQueue()
        job_id = await queue.enqueue("financial_events", {"days": 30})
        status = await queue.get_status(job_id)
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory

    async def enqueue(
        self,
        job_type: str,
        payload: Optional[Dict[str, Any]] = None,
        priority: int = 0,
        delay_seconds: float = 0,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
    ) -> int:
        """
        Add a job; higher ``priority`` is claimed first.

        Raises:
            ValueError: unknown job type
        """
        if job_type not in JOB_TYPES:
            raise ValueError(f"Unknown job type: {job_type}")
        options = options_for(job_type)
        async with session_scope(self.session_factory) as session:
            job = SyncJob(
                job_type=job_type,
                payload=payload or {},
                status=JobStatus.QUEUED,
                priority=priority,
                attempts=0,
                max_attempts=max_attempts or options.attempts,
                backoff_seconds=options.backoff_seconds if backoff_seconds is None else backoff_seconds,
                available_at=utcnow() + timedelta(seconds=delay_seconds),
                progress={},
                logs=[],
                cancel_requested=False,
            )
            session.add(job)
            await session.flush()
            job_id = job.id
        logger.info("Job enqueued", job_id=job_id, job_type=job_type, priority=priority)
        return job_id

    async def get_status(self, job_id: int) -> Optional[Dict[str, Any]]:
        async with session_scope(self.session_factory) as session:
            job = await session.get(SyncJob, job_id)
            return job_to_dict(job) if job is not None else None

    async def claim_next(self, worker_id: str, job_types: Optional[List[str]] = None) -> Optional[ClaimedJob]:
        """Claim the best available job, or None when the queue is idle."""
        now = utcnow()
        async with session_scope(self.session_factory) as session:
            query = (
                select(SyncJob.id)
                .where(SyncJob.status == JobStatus.QUEUED, SyncJob.available_at <= now)
                .order_by(SyncJob.priority.desc(), SyncJob.created_at, SyncJob.id)
                .limit(5)
            )
            if job_types:
                query = query.where(SyncJob.job_type.in_(job_types))
            candidates = (await session.execute(query)).scalars().all()

            for job_id in candidates:
                result = await session.execute(
                    update(SyncJob)
                    .where(SyncJob.id == job_id, SyncJob.status == JobStatus.QUEUED)
                    .values(
                        status=JobStatus.RUNNING,
                        attempts=SyncJob.attempts + 1,
                        started_at=now,
                        worker_id=worker_id,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                job = await session.get(SyncJob, job_id, populate_existing=True)
                logger.info("Job claimed", job_id=job_id, job_type=job.job_type, attempt=job.attempts, worker_id=worker_id)
                return ClaimedJob(
                    id=job.id,
                    job_type=job.job_type,
                    payload=dict(job.payload or {}),
                    attempts=job.attempts,
                    max_attempts=job.max_attempts,
                )
        return None

    async def _load(self, session: AsyncSession, job_id: int) -> SyncJob:
        job = await session.get(SyncJob, job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    async def report_progress(self, job_id: int, progress: Dict[str, Any]) -> None:
        async with session_scope(self.session_factory) as session:
            job = await self._load(session, job_id)
            job.progress = {**(job.progress or {}), **progress}

    async def append_log(self, job_id: int, message: str) -> None:
        async with session_scope(self.session_factory) as session:
            job = await self._load(session, job_id)
            lines = list(job.logs or [])
            lines.append(f"{utcnow().isoformat(timespec='seconds')} {message}")
            job.logs = lines[-MAX_LOG_LINES:]

    async def complete(self, job_id: int, result: Optional[Dict[str, Any]] = None) -> None:
        async with session_scope(self.session_factory) as session:
            job = await self._load(session, job_id)
            job.status = validate_transition(job.status, JobStatus.COMPLETED)
            job.result = result
            job.error_message = None
            job.finished_at = utcnow()
        logger.info("Job completed", job_id=job_id)

    async def fail(self, job_id: int, error: BaseException) -> JobStatus:
        """
        Record a failed attempt.

        Returns:
            QUEUED when the job will be retried, FAILED otherwise
        """
        async with session_scope(self.session_factory) as session:
            job = await self._load(session, job_id)
            job.error_message = f"{type(error).__name__}: {error}"
            retry = is_retryable(error) and job.attempts < job.max_attempts and not job.cancel_requested
            if retry:
                delay = job.backoff_seconds * (2 ** max(job.attempts - 1, 0))
                job.status = validate_transition(job.status, JobStatus.QUEUED)
                job.available_at = utcnow() + timedelta(seconds=delay)
                job.worker_id = None
            else:
                job.status = validate_transition(job.status, JobStatus.FAILED)
                job.finished_at = utcnow()
            status = job.status
            attempts = job.attempts

        log_method = logger.warning if retry else logger.error
        log_method(
            "Job attempt failed",
            job_id=job_id,
            attempt=attempts,
            will_retry=retry,
            error=str(error),
            error_type=type(error).__name__,
        )
        return status

    async def mark_cancelled(self, job_id: int, result: Optional[Dict[str, Any]] = None) -> None:
        async with session_scope(self.session_factory) as session:
            job = await self._load(session, job_id)
            job.status = validate_transition(job.status, JobStatus.CANCELLED)
            job.result = result
            job.finished_at = utcnow()
        logger.info("Job cancelled", job_id=job_id)

    async def request_cancel(self, job_id: int) -> Dict[str, Any]:
        """
        Cancel a queued job outright, or flag a running one for cooperative stop.

        Raises:
            NotFoundError: unknown job
            StateConflictError: job already finished
        """
        async with session_scope(self.session_factory) as session:
            job = await self._load(session, job_id)
            if job.status == JobStatus.QUEUED:
                job.status = validate_transition(job.status, JobStatus.CANCELLED)
                job.cancel_requested = True
                job.finished_at = utcnow()
            elif job.status == JobStatus.RUNNING:
                job.cancel_requested = True
            else:
                raise StateConflictError(
                    f"Job {job_id} already {job.status.value}",
                    current_state=job.status,
                    details={"job_id": job_id},
                )
            snapshot = job_to_dict(job)
        logger.info("Job cancellation requested", job_id=job_id, status=snapshot["status"])
        return snapshot

    async def is_cancel_requested(self, job_id: int) -> bool:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(select(SyncJob.cancel_requested).where(SyncJob.id == job_id))
            return bool(result.scalar_one_or_none())

    async def counts(self) -> Dict[str, int]:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(select(SyncJob.status, func.count(SyncJob.id)).group_by(SyncJob.status))
            counts = {status.value: 0 for status in JobStatus}
            for status, count in result.all():
                counts[status.value] = count
            return counts

    async def last_job(self, status: JobStatus, job_type: Optional[str] = None) -> Optional[Dict[str, Any]]:
        async with session_scope(self.session_factory) as session:
            query = (
                select(SyncJob)
                .where(SyncJob.status == status)
                .order_by(SyncJob.finished_at.desc(), SyncJob.id.desc())
                .limit(1)
            )
            if job_type:
                query = query.where(SyncJob.job_type == job_type)
            job = (await session.execute(query)).scalar_one_or_none()
            return job_to_dict(job) if job is not None else None
