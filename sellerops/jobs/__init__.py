"""
Jobs Module

Durable background job queue and cooperative cancellation. The worker,
handlers and schedules live in their own modules.
"""
from .cancellation import CancellationToken, JobCancellationToken, pause
from .queue import CLEAR_STALE_REPORTS, JOB_TYPES, ClaimedJob, JobQueue, QueueOptions, options_for

__all__ = [
    "CancellationToken",
    "JobCancellationToken",
    "pause",
    "CLEAR_STALE_REPORTS",
    "JOB_TYPES",
    "ClaimedJob",
    "JobQueue",
    "QueueOptions",
    "options_for",
]
