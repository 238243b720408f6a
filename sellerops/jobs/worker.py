"""
Job Worker

Long-running consumer of the durable job queue:
- Claims one job at a time and dispatches it to the registered handler
- Binds job id/type onto every log line of the run
- Completes, re-queues (with backoff) or fails the job
- Observes cooperative cancellation through the job row
- Prometheus counters and duration histogram per job type
"""

import asyncio
import time
from typing import Dict, List, Optional

import structlog
from prometheus_client import Counter, Histogram
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sellerops.config import get_settings
from sellerops.config.logging import bind_context, clear_context
from sellerops.errors import SyncCancelledError
from sellerops.jobs.cancellation import JobCancellationToken
from sellerops.jobs.handlers import DEFAULT_HANDLERS, JobContext, JobHandler, VendorServices
from sellerops.jobs.queue import ClaimedJob, JobQueue

logger = structlog.get_logger(__name__)
settings = get_settings()


# =============================================================================
# METRICS
# =============================================================================

JOBS_PROCESSED = Counter(
    "sellerops_jobs_processed_total",
    "Jobs finished by the worker",
    ["job_type", "status"],
)

JOB_DURATION = Histogram(
    "sellerops_job_duration_seconds",
    "Time spent running a job attempt",
    ["job_type"],
)


class JobWorker:
    """
    Queue consumer.

    Example:
        worker = create_worker()
        await worker.start()
    """

    def __init__(
        self,
        queue: Optional[JobQueue] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        worker_id: Optional[str] = None,
        poll_interval: Optional[float] = None,
        cancel_check_interval: Optional[float] = None,
        services_factory=VendorServices.from_settings,
    ):
        self.session_factory = session_factory
        self.queue = queue or JobQueue(session_factory)
        self.worker_id = worker_id or settings.queue.worker_id
        self.poll_interval = settings.queue.poll_interval_seconds if poll_interval is None else poll_interval
        self.cancel_check_interval = (
            settings.queue.cancel_check_interval_seconds if cancel_check_interval is None else cancel_check_interval
        )
        self.services_factory = services_factory
        self._handlers: Dict[str, JobHandler] = {}
        self._running = False
        self._shutdown_event = asyncio.Event()

    def register_handler(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler
        logger.info("Registered job handler", job_type=job_type)

    @property
    def job_types(self) -> List[str]:
        return list(self._handlers)

    async def run_job(self, job: ClaimedJob) -> str:
        """Run one claimed job to a terminal (or re-queued) state; returns the job status."""
        handler = self._handlers[job.job_type]
        token = JobCancellationToken(self.queue, job.id, check_interval=self.cancel_check_interval)
        ctx = JobContext(
            job_id=job.id,
            job_type=job.job_type,
            queue=self.queue,
            token=token,
            payload=job.payload,
            session_factory=self.session_factory,
            services_factory=self.services_factory,
        )

        bind_context(job_id=job.id, job_type=job.job_type, attempt=job.attempts)
        started = time.perf_counter()
        try:
            await ctx.log(f"attempt {job.attempts}/{job.max_attempts} started on {self.worker_id}")
            result = await handler(ctx)

            if token.requested or result.get("status") == "cancelled":
                await self.queue.mark_cancelled(job.id, result)
                status = "cancelled"
            else:
                await self.queue.complete(job.id, result)
                status = "completed"

        except SyncCancelledError as e:
            await self.queue.mark_cancelled(job.id, {"reason": str(e)})
            status = "cancelled"

        except Exception as e:
            logger.exception("Job raised", error=str(e))
            await ctx.log(f"attempt {job.attempts} failed: {type(e).__name__}: {e}")
            status = (await self.queue.fail(job.id, e)).value

        finally:
            JOB_DURATION.labels(job_type=job.job_type).observe(time.perf_counter() - started)
            clear_context("job_id", "job_type", "attempt")

        JOBS_PROCESSED.labels(job_type=job.job_type, status=status).inc()
        return status

    async def run_once(self) -> Optional[str]:
        """Claim and run a single job; None when nothing was available."""
        job = await self.queue.claim_next(self.worker_id, self.job_types)
        if job is None:
            return None
        return await self.run_job(job)

    async def drain(self, max_jobs: Optional[int] = None) -> int:
        """Run jobs until the queue is idle (or ``max_jobs`` ran)."""
        count = 0
        while max_jobs is None or count < max_jobs:
            if await self.run_once() is None:
                break
            count += 1
        return count

    async def start(self) -> None:
        logger.info("Starting job worker", worker_id=self.worker_id, job_types=self.job_types)
        self._running = True
        self._shutdown_event.clear()
        while self._running:
            if await self.run_once() is None:
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    continue
        logger.info("Job worker stopped", worker_id=self.worker_id)

    async def stop(self) -> None:
        """Stop after the current job finishes"""
        logger.info("Stopping job worker", worker_id=self.worker_id)
        self._running = False
        self._shutdown_event.set()


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

def create_worker(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    **kwargs,
) -> JobWorker:
    """Create a worker with every built-in handler registered"""
    worker = JobWorker(session_factory=session_factory, **kwargs)
    for job_type, handler in DEFAULT_HANDLERS.items():
        worker.register_handler(job_type, handler)
    return worker
