"""
Recurring Sync Schedules

Cron entries for every recurring job plus the manual trigger used by the API.
The Prefect deployments in ``workflows/sync_flows.py`` are generated from
``SCHEDULES``.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from sellerops.database.models import JobStatus, SyncType
from sellerops.jobs.queue import CLEAR_STALE_REPORTS, JOB_TYPES, JobQueue

logger = structlog.get_logger(__name__)

MANUAL_PRIORITY = 1

_CRON_FIELD = r"(\*|\d+(-\d+)?)(/\d+)?(,(\*|\d+(-\d+)?)(/\d+)?)*"
CRON_PATTERN = re.compile(rf"^{_CRON_FIELD}( {_CRON_FIELD}){{4}}$")
CRON_RANGES = [(0, 59), (0, 23), (1, 31), (1, 12), (0, 7)]
MONTH_NAMES = {name: number for number, name in enumerate(
    ("JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"), start=1,
)}
WEEKDAY_NAMES = {name: number for number, name in enumerate(("SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"))}
CRON_NAMES: List[Dict[str, int]] = [{}, {}, {}, MONTH_NAMES, WEEKDAY_NAMES]


def _names_to_numbers(value: str, names: Dict[str, int]) -> str:
    # unknown names are left alone and fail the pattern
    return re.sub(
        r"[A-Za-z]+",
        lambda match: str(names.get(match.group().upper(), match.group())),
        value,
    )


def validate_cron(expression: str) -> str:
    """
    Check a five-field cron expression. Month and weekday fields also take
    three-letter names (``JAN``, ``MON-FRI``).

    Raises:
        ValueError: malformed expression or out-of-range value
    """
    fields = expression.split()
    expression = " ".join(fields)
    numeric = [_names_to_numbers(value, names) for value, names in zip(fields, CRON_NAMES)]
    if len(fields) != len(CRON_NAMES) or not CRON_PATTERN.match(" ".join(numeric)):
        raise ValueError(f"Invalid cron expression: {expression!r}")
    for value, (low, high) in zip(numeric, CRON_RANGES):
        for number in re.findall(r"(?<!/)\b\d+", value):
            if not low <= int(number) <= high:
                raise ValueError(f"Cron value {number} outside {low}-{high} in {expression!r}")
    return expression


@dataclass(frozen=True)
class ScheduleEntry:
    name: str
    job_type: str
    cron: str
    payload: Dict[str, Any] = field(default_factory=dict)
    description: str = ""

    def __post_init__(self):
        object.__setattr__(self, "cron", validate_cron(self.cron))
        if self.job_type not in JOB_TYPES:
            raise ValueError(f"Unknown job type: {self.job_type}")


SCHEDULES: List[ScheduleEntry] = [
    ScheduleEntry("sync-orders", SyncType.RECENT_ORDERS.value, "*/15 * * * *", description="Recent orders report"),
    ScheduleEntry("sync-finances", SyncType.FINANCIAL_EVENTS.value, "0 */2 * * *", description="Financial events"),
    ScheduleEntry("sync-inventory", SyncType.INVENTORY.value, "0 * * * *", description="FBA inventory levels"),
    ScheduleEntry("sync-fba-shipments", SyncType.FBA_SHIPMENTS.value, "0 */6 * * *", description="Inbound shipments"),
    ScheduleEntry("sync-returns", SyncType.RETURNS.value, "0 5 * * *", description="Customer returns"),
    ScheduleEntry("aggregate-profit", SyncType.PROFIT_AGGREGATION.value, "30 7 * * *", description="Daily profit rollup"),
    ScheduleEntry("clear-stale-reports", CLEAR_STALE_REPORTS, "0 * * * *", description="Fail abandoned pending reports"),
]


def get_schedule(name: str) -> ScheduleEntry:
    for entry in SCHEDULES:
        if entry.name == name:
            return entry
    raise KeyError(name)


async def enqueue_scheduled(entry: ScheduleEntry, queue: Optional[JobQueue] = None) -> int:
    queue = queue or JobQueue()
    job_id = await queue.enqueue(entry.job_type, dict(entry.payload))
    logger.info("Scheduled job enqueued", schedule=entry.name, job_id=job_id)
    return job_id


async def trigger_sync(
    sync_type: str,
    payload: Optional[Dict[str, Any]] = None,
    queue: Optional[JobQueue] = None,
) -> int:
    """
    Manually enqueue a sync ahead of scheduled work.

    Raises:
        ValueError: unknown sync type
    """
    if sync_type not in JOB_TYPES:
        raise ValueError(f"Unknown sync type: {sync_type}. Valid types: {sorted(JOB_TYPES)}")
    queue = queue or JobQueue()
    job_id = await queue.enqueue(sync_type, payload or {}, priority=MANUAL_PRIORITY)
    logger.info("Manual sync triggered", sync_type=sync_type, job_id=job_id)
    return job_id


async def get_queue_status(queue: Optional[JobQueue] = None) -> Dict[str, Any]:
    queue = queue or JobQueue()
    return {
        "counts": await queue.counts(),
        "last_completed": await queue.last_job(JobStatus.COMPLETED),
        "last_failed": await queue.last_job(JobStatus.FAILED),
        "schedules": [
            {"name": e.name, "job_type": e.job_type, "cron": e.cron, "description": e.description}
            for e in SCHEDULES
        ],
    }
