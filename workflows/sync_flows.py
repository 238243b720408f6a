"""
Prefect Workflow Orchestration - Recurring Syncs

Prefect owns the clock; the durable job queue owns execution:
- one deployment per entry in ``SCHEDULES`` enqueues its job on a cron
- a worker flow drains the queue with the registered handlers
"""

from typing import Optional

from prefect import flow, get_run_logger, serve, task

from sellerops.config import get_settings
from sellerops.config.logging import configure_logging
from sellerops.database.connection import init_database
from sellerops.jobs.queue import JobQueue
from sellerops.jobs.scheduler import SCHEDULES, enqueue_scheduled, get_schedule
from sellerops.jobs.worker import create_worker

settings = get_settings()


# =============================================================================
# TASKS
# =============================================================================

@task(
    name="enqueue_job",
    description="Add a scheduled sync to the durable job queue",
    retries=3,
    retry_delay_seconds=30,
)
async def enqueue_job(schedule_name: str) -> int:
    logger = get_run_logger()
    entry = get_schedule(schedule_name)
    job_id = await enqueue_scheduled(entry, JobQueue())
    logger.info(f"Enqueued {entry.job_type} as job {job_id}")
    return job_id


# =============================================================================
# FLOWS
# =============================================================================

@flow(
    name="scheduled_sync",
    description="Enqueue one recurring sync",
)
async def scheduled_sync(schedule_name: str) -> dict:
    await init_database()
    job_id = await enqueue_job(schedule_name)
    return {"schedule": schedule_name, "job_id": job_id}


@flow(
    name="drain_job_queue",
    description="Run queued sync jobs until the queue is idle",
)
async def drain_job_queue(max_jobs: Optional[int] = None) -> dict:
    """
    Worker flow.

    Runs jobs one at a time so vendor rate limits stay predictable.
    """
    logger = get_run_logger()
    await init_database()
    worker = create_worker()
    processed = await worker.drain(max_jobs=max_jobs)
    logger.info(f"Job queue drained: {processed} jobs run")
    return {"jobs_run": processed}


# =============================================================================
# DEPLOYMENT CONFIGURATION
# =============================================================================

def build_deployments():
    deployments = [
        scheduled_sync.to_deployment(
            name=entry.name,
            cron=entry.cron,
            parameters={"schedule_name": entry.name},
            description=entry.description,
        )
        for entry in SCHEDULES
    ]
    deployments.append(drain_job_queue.to_deployment(name="job-worker", cron="* * * * *"))
    return deployments


if __name__ == "__main__":
    configure_logging()
    serve(*build_deployments())
