"""
Customer returns sync from the FBA customer returns report.

Refund amounts are owned by the financial event reconciler and are never
written here.
"""

from datetime import timedelta
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sellerops.amazon.reports import ReportLifecycleClient, ReportType
from sellerops.config import get_settings
from sellerops.database.connection import session_scope
from sellerops.database.models import Order, OrderStatus, Return, SyncStatus, SyncType, can_transition
from sellerops.errors import SyncCancelledError
from sellerops.ingestion.report_parser import parse_report
from sellerops.jobs.cancellation import CancellationToken
from sellerops.sync.base import SyncRunResult, finish_sync_log, start_sync_log
from sellerops.sync.pending_reports import PendingReportStore, fetch_checkpointed_report
from sellerops.timeutils import utcnow

logger = structlog.get_logger(__name__)
settings = get_settings()

DEFAULT_RETURNS_DAYS = 30


async def upsert_return(session: AsyncSession, record: Dict[str, Any]) -> bool:
    """
    Upsert one return keyed by (order id, SKU, return date).

    Returns:
        True if a row was created
    """
    result = await session.execute(
        select(Return).where(
            Return.order_id == record["order_id"],
            Return.master_sku == record["sku"],
            Return.return_date == record["return_date"],
        )
    )
    row = result.scalar_one_or_none()
    created = row is None
    if created:
        row = Return(
            order_id=record["order_id"],
            master_sku=record["sku"],
            return_date=record["return_date"],
        )
        session.add(row)

    row.quantity = record.get("quantity") or 1
    row.reason = record.get("reason") or row.reason
    row.disposition = record.get("disposition") or row.disposition
    row.status = record.get("status") or row.status
    row.license_plate_number = record.get("license_plate_number") or row.license_plate_number

    order = await session.get(Order, record["order_id"])
    if order is not None and can_transition(order.status, OrderStatus.RETURNED):
        order.status = OrderStatus.RETURNED
    return created


class ReturnsSync:
    def __init__(
        self,
        reports: ReportLifecycleClient,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.reports = reports
        self.session_factory = session_factory
        self.pending = PendingReportStore(session_factory)

    async def run(self, days: int = DEFAULT_RETURNS_DAYS, token: Optional[CancellationToken] = None) -> SyncRunResult:
        result = await start_sync_log(SyncType.RETURNS, self.session_factory, {"days": days})
        end = utcnow().replace(microsecond=0)
        start = end - timedelta(days=days)
        try:
            text = await fetch_checkpointed_report(
                self.reports,
                self.pending,
                ReportType.FBA_CUSTOMER_RETURNS,
                start,
                end,
                token=token,
                sync_log_id=result.sync_log_id,
                reuse_tolerance=timedelta(hours=settings.sync.report_reuse_tolerance_hours),
            )
            parsed = parse_report(text, ReportType.FBA_CUSTOMER_RETURNS)
            result.records_skipped = parsed.skipped

            for record in parsed.rows:
                result.records_processed += 1
                try:
                    async with session_scope(self.session_factory) as session:
                        created = await upsert_return(session, record)
                except Exception as e:
                    result.records_failed += 1
                    logger.warning("Return upsert failed", order_id=record.get("order_id"), error=str(e))
                    continue
                if created:
                    result.records_created += 1
                else:
                    result.records_updated += 1
        except SyncCancelledError as e:
            return await finish_sync_log(result, SyncStatus.CANCELLED, self.session_factory, str(e))
        except Exception as e:
            await finish_sync_log(result, SyncStatus.FAILED, self.session_factory, str(e))
            raise
        return await finish_sync_log(result, SyncStatus.SUCCESS, self.session_factory)
