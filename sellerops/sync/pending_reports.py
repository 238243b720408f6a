"""
Pending report checkpoints.

A requested vendor report outlives the invocation that asked for it. Its id
and window are stored in ``pending_reports`` so that a later invocation (after
a poll timeout or a killed process) resumes polling the same report instead
of requesting, and waiting for, a new one.
"""

from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sellerops.amazon.reports import ReportLifecycleClient
from sellerops.database.connection import session_scope
from sellerops.database.models import PendingReport, PendingReportStatus, validate_transition
from sellerops.errors import ReportFailedError
from sellerops.jobs.cancellation import CancellationToken
from sellerops.timeutils import utcnow

logger = structlog.get_logger(__name__)


class PendingReportStore:
    """CRUD over ``pending_reports`` with transition checks."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory

    async def find_reusable(
        self,
        report_type: str,
        start: datetime,
        end: datetime,
        tolerance: timedelta = timedelta(0),
    ) -> Optional[PendingReport]:
        """
        Newest still-pending report of this type whose window edges are each
        within ``tolerance`` of ``[start, end]``.
        """
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(PendingReport)
                .where(
                    PendingReport.report_type == report_type,
                    PendingReport.data_start.between(start - tolerance, start + tolerance),
                    PendingReport.data_end.between(end - tolerance, end + tolerance),
                    PendingReport.status == PendingReportStatus.PENDING,
                )
                .order_by(PendingReport.created_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def record(
        self,
        report_id: str,
        report_type: str,
        start: datetime,
        end: datetime,
        sync_log_id: Optional[int] = None,
    ) -> None:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(select(PendingReport).where(PendingReport.report_id == report_id))
            if result.scalar_one_or_none() is not None:
                # 425 duplicate handed back an id we already track
                return
            session.add(PendingReport(
                report_id=report_id,
                report_type=report_type,
                data_start=start,
                data_end=end,
                status=PendingReportStatus.PENDING,
                sync_log_id=sync_log_id,
            ))

    async def _finish(
        self,
        report_id: str,
        status: PendingReportStatus,
        document_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> None:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(select(PendingReport).where(PendingReport.report_id == report_id))
            row = result.scalar_one_or_none()
            if row is None or row.status == status:
                return
            row.status = validate_transition(row.status, status)
            row.document_id = document_id or row.document_id
            row.failure_reason = failure_reason
            row.completed_at = utcnow()

    async def mark_done(self, report_id: str, document_id: Optional[str]) -> None:
        await self._finish(report_id, PendingReportStatus.DONE, document_id=document_id)

    async def mark_failed(self, report_id: str, reason: Optional[str]) -> None:
        await self._finish(report_id, PendingReportStatus.FAILED, failure_reason=reason)

    async def clear_stale_reports(self, max_age_hours: float = 24) -> int:
        """
        Mark pending reports older than ``max_age_hours`` as failed.

        Vendor report documents expire, so an abandoned report is not worth
        resuming; the next run requests a fresh one.

        Returns:
            Number of reports cleared
        """
        cutoff = utcnow() - timedelta(hours=max_age_hours)
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(PendingReport).where(
                    PendingReport.status == PendingReportStatus.PENDING,
                    PendingReport.created_at < cutoff,
                )
            )
            stale = result.scalars().all()
            now = utcnow()
            for row in stale:
                row.status = validate_transition(row.status, PendingReportStatus.FAILED)
                row.failure_reason = f"abandoned after {max_age_hours:g}h"
                row.completed_at = now

        if stale:
            logger.info("Cleared stale pending reports", count=len(stale), max_age_hours=max_age_hours)
        return len(stale)


async def fetch_checkpointed_report(
    reports: ReportLifecycleClient,
    store: PendingReportStore,
    report_type: str,
    start: datetime,
    end: datetime,
    token: Optional[CancellationToken] = None,
    sync_log_id: Optional[int] = None,
    max_attempts: Optional[int] = None,
    reuse_tolerance: timedelta = timedelta(0),
) -> str:
    """
    Fetch a report for ``[start, end]`` through the checkpoint table.

    A timeout leaves the row pending for the next invocation; a vendor-side
    failure marks it failed so the next attempt requests a new report.
    Callers whose window end moves with the clock pass ``reuse_tolerance`` so
    a report requested by an earlier run is still picked up.
    """
    report_type = getattr(report_type, "value", report_type)
    existing = await store.find_reusable(report_type, start, end, reuse_tolerance)
    if existing is not None:
        report_id = existing.report_id
        logger.info("Resuming pending report", report_id=report_id, report_type=report_type)
    else:
        report_id = await reports.request_report(report_type, start, end, token=token)
        await store.record(report_id, report_type, start, end, sync_log_id=sync_log_id)

    try:
        status = await reports.wait_for_report(report_id, token=token, max_attempts=max_attempts)
    except ReportFailedError as e:
        await store.mark_failed(report_id, e.failure_reason or e.status)
        raise

    if not status.document_id:
        await store.mark_failed(report_id, "DONE without a document id")
        raise ReportFailedError(report_id, status.status.value, "DONE without a document id")

    text = await reports.download_document(status.document_id)
    await store.mark_done(report_id, status.document_id)
    return text
