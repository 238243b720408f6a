"""
FBA inbound shipment sync.

Pulls active inbound shipments and their lines into ``fba_shipments``.
Reconciliation state is owned by the ledger and is never touched here:
new shipments start pending, existing ones keep whatever state they have.
"""

import re
from datetime import datetime, timedelta
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from sellerops.amazon.fulfillment import (
    ACTIVE_SHIPMENT_STATUSES,
    FulfillmentInboundClient,
    InboundShipment,
    InboundShipmentItem,
)
from sellerops.config import get_settings
from sellerops.database.connection import session_scope
from sellerops.database.models import FbaShipment, FbaShipmentItem, ReconciliationStatus, SyncStatus, SyncType
from sellerops.errors import SyncCancelledError
from sellerops.jobs.cancellation import CancellationToken, pause
from sellerops.reconciliation.matching import CatalogIndex, load_catalog_index
from sellerops.sync.base import SyncRunResult, finish_sync_log, start_sync_log
from sellerops.timeutils import utcnow

logger = structlog.get_logger(__name__)
settings = get_settings()

SKIPPED_STATUSES = frozenset({"CLOSED", "CANCELLED", "DELETED", "ERROR"})

_NAME_DATES = (
    (re.compile(r"(\d{1,2}/\d{1,2}/\d{4})"), "%m/%d/%Y"),
    (re.compile(r"(\d{4}-\d{2}-\d{2})"), "%Y-%m-%d"),
)


def parse_shipment_name_date(name: Optional[str]) -> Optional[datetime]:
    """Creation date embedded in a generated shipment name, e.g. ``FBA STA (01/15/2024 10:30)-ONT8``."""
    for pattern, fmt in _NAME_DATES:
        match = pattern.search(name or "")
        if match:
            try:
                return datetime.strptime(match.group(1), fmt)
            except ValueError:
                continue
    return None


class FbaShipmentSync:
    def __init__(
        self,
        inbound: FulfillmentInboundClient,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        max_age_days: Optional[int] = None,
        retention_days: Optional[int] = None,
        request_delay: float = 0.5,
    ):
        self.inbound = inbound
        self.session_factory = session_factory
        self.max_age_days = max_age_days or settings.sync.fba_shipment_max_age_days
        self.retention_days = retention_days or settings.sync.fba_shipment_retention_days
        self.request_delay = request_delay

    def is_relevant(self, shipment: InboundShipment, now: datetime) -> bool:
        if shipment.status.upper() in SKIPPED_STATUSES:
            return False
        created = shipment.created_date or parse_shipment_name_date(shipment.shipment_name)
        return created is None or created >= now - timedelta(days=self.max_age_days)

    async def upsert_shipment(
        self,
        shipment: InboundShipment,
        lines: List[InboundShipmentItem],
        catalog: CatalogIndex,
    ) -> bool:
        """
        Upsert one shipment and its lines.

        Returns:
            True if the shipment was created
        """
        now = utcnow()
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(FbaShipment)
                .options(selectinload(FbaShipment.items))
                .where(FbaShipment.shipment_id == shipment.shipment_id)
            )
            row = result.scalar_one_or_none()
            created = row is None
            if created:
                row = FbaShipment(
                    shipment_id=shipment.shipment_id,
                    reconciliation_status=ReconciliationStatus.PENDING,
                    created_date=shipment.created_date or parse_shipment_name_date(shipment.shipment_name),
                    items=[],
                )
                session.add(row)

            row.shipment_name = shipment.shipment_name
            row.destination_fc = shipment.destination_fc
            row.status = shipment.status
            row.last_synced_at = now

            existing = {item.seller_sku: item for item in row.items}
            for line in lines:
                if not line.seller_sku:
                    continue
                item = existing.get(line.seller_sku)
                if item is None:
                    item = FbaShipmentItem(seller_sku=line.seller_sku)
                    row.items.append(item)
                    existing[line.seller_sku] = item
                item.fnsku = line.fnsku or item.fnsku
                item.master_sku = catalog.match(line.seller_sku, line.fnsku) or item.master_sku
                item.quantity_shipped = line.quantity_shipped
                item.quantity_received = line.quantity_received

            row.total_units_shipped = sum(i.quantity_shipped or 0 for i in existing.values())
            row.total_units_received = sum(i.quantity_received or 0 for i in existing.values())
        return created

    async def cleanup_reconciled(self) -> int:
        """Delete reconciled shipments the vendor has not reported within the retention period."""
        cutoff = utcnow() - timedelta(days=self.retention_days)
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(FbaShipment)
                .options(selectinload(FbaShipment.items))
                .where(
                    FbaShipment.reconciliation_status != ReconciliationStatus.PENDING,
                    FbaShipment.last_synced_at < cutoff,
                )
            )
            expired = result.scalars().all()
            for shipment in expired:
                await session.delete(shipment)
        if expired:
            logger.info("Removed reconciled FBA shipments past retention", count=len(expired))
        return len(expired)

    async def run(
        self,
        statuses: Optional[List[str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> SyncRunResult:
        result = await start_sync_log(SyncType.FBA_SHIPMENTS, self.session_factory)
        try:
            async with session_scope(self.session_factory) as session:
                catalog = await load_catalog_index(session)

            now = utcnow()
            next_token: Optional[str] = None
            while True:
                if token is not None:
                    await token.raise_if_cancelled()
                page = await self.inbound.get_shipments(statuses or ACTIVE_SHIPMENT_STATUSES, next_token)

                for shipment in page.items:
                    if not self.is_relevant(shipment, now):
                        result.records_skipped += 1
                        continue
                    result.records_processed += 1
                    lines = await self.inbound.get_shipment_items(shipment.shipment_id)
                    try:
                        created = await self.upsert_shipment(shipment, lines, catalog)
                    except Exception as e:
                        result.records_failed += 1
                        logger.warning("FBA shipment upsert failed", shipment_id=shipment.shipment_id, error=str(e))
                        continue
                    if created:
                        result.records_created += 1
                    else:
                        result.records_updated += 1
                    if await pause(self.request_delay, token):
                        raise SyncCancelledError("cancelled between shipments")

                next_token = page.next_token
                if not next_token:
                    break

            result.details["removed"] = await self.cleanup_reconciled()
        except SyncCancelledError as e:
            return await finish_sync_log(result, SyncStatus.CANCELLED, self.session_factory, str(e))
        except Exception as e:
            await finish_sync_log(result, SyncStatus.FAILED, self.session_factory, str(e))
            raise
        return await finish_sync_log(result, SyncStatus.SUCCESS, self.session_factory)
