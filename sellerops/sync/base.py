"""
Shared sync-run bookkeeping.

Every sync records one SyncLog row: RUNNING on start, then SUCCESS, FAILED
or CANCELLED with its counters.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sellerops.database.connection import session_scope
from sellerops.database.models import SyncLog, SyncStatus, SyncType, validate_transition
from sellerops.timeutils import utcnow

logger = structlog.get_logger(__name__)


@dataclass
class SyncRunResult:
    """Structured outcome returned by every simple sync"""
    sync_type: SyncType
    sync_log_id: Optional[int] = None
    status: SyncStatus = SyncStatus.RUNNING
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    error_message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sync_type": self.sync_type.value,
            "sync_log_id": self.sync_log_id,
            "status": self.status.value,
            "records_processed": self.records_processed,
            "records_created": self.records_created,
            "records_updated": self.records_updated,
            "records_skipped": self.records_skipped,
            "records_failed": self.records_failed,
            "error_message": self.error_message,
            **self.details,
        }


async def start_sync_log(
    sync_type: SyncType,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> SyncRunResult:
    async with session_scope(session_factory) as session:
        log = SyncLog(sync_type=sync_type.value, status=SyncStatus.RUNNING, run_metadata=metadata or {})
        session.add(log)
        await session.flush()
        log_id = log.id
    logger.info("Sync started", sync_type=sync_type.value, sync_log_id=log_id)
    return SyncRunResult(sync_type=sync_type, sync_log_id=log_id)


async def finish_sync_log(
    result: SyncRunResult,
    status: SyncStatus,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    error_message: Optional[str] = None,
) -> SyncRunResult:
    result.status = status
    result.error_message = error_message
    async with session_scope(session_factory) as session:
        log = await session.get(SyncLog, result.sync_log_id)
        log.status = validate_transition(log.status, status)
        log.completed_at = utcnow()
        log.records_processed = result.records_processed
        log.records_created = result.records_created
        log.records_updated = result.records_updated
        log.records_skipped = result.records_skipped
        log.records_failed = result.records_failed
        log.error_message = error_message
        log.run_metadata = {**(log.run_metadata or {}), **result.details}

    log_method = logger.error if status == SyncStatus.FAILED else logger.info
    log_method("Sync finished", **result.as_dict())
    return result
