"""
FBA inventory sync: inventory summaries into ``inventory_levels`` and
FNSKU backfill on the catalog.
"""

from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sellerops.amazon.fulfillment import InventoryClient, InventorySummary
from sellerops.database.connection import session_scope
from sellerops.database.models import InventoryLevel, Product, SyncStatus, SyncType
from sellerops.errors import SyncCancelledError
from sellerops.jobs.cancellation import CancellationToken, pause
from sellerops.sync.base import SyncRunResult, finish_sync_log, start_sync_log

logger = structlog.get_logger(__name__)


class InventorySync:
    def __init__(
        self,
        inventory: InventoryClient,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        page_delay: float = 0.5,
    ):
        self.inventory = inventory
        self.session_factory = session_factory
        self.page_delay = page_delay

    async def _apply_page(self, summaries: List[InventorySummary], result: SyncRunResult) -> None:
        skus = [s.seller_sku for s in summaries if s.seller_sku]
        async with session_scope(self.session_factory) as session:
            levels = await session.execute(select(InventoryLevel).where(InventoryLevel.master_sku.in_(skus)))
            by_sku = {level.master_sku: level for level in levels.scalars().all()}
            products = await session.execute(select(Product).where(Product.sku.in_(skus)))
            catalog = {p.sku: p for p in products.scalars().all()}

            for summary in summaries:
                if not summary.seller_sku:
                    result.records_skipped += 1
                    continue
                result.records_processed += 1
                level = by_sku.get(summary.seller_sku)
                if level is None:
                    level = InventoryLevel(master_sku=summary.seller_sku, warehouse_available=0)
                    session.add(level)
                    by_sku[summary.seller_sku] = level
                    result.records_created += 1
                else:
                    result.records_updated += 1
                level.fba_available = summary.fulfillable
                level.fba_inbound = summary.inbound
                level.fba_reserved = summary.reserved

                product = catalog.get(summary.seller_sku)
                if product is not None and summary.fnsku and not product.fnsku:
                    product.fnsku = summary.fnsku
                    result.details["fnsku_backfilled"] = result.details.get("fnsku_backfilled", 0) + 1

    async def run(self, token: Optional[CancellationToken] = None) -> SyncRunResult:
        result = await start_sync_log(SyncType.INVENTORY, self.session_factory)
        next_token: Optional[str] = None
        try:
            while True:
                if token is not None:
                    await token.raise_if_cancelled()
                page = await self.inventory.get_inventory_summaries(next_token)
                await self._apply_page(page.items, result)
                next_token = page.next_token
                if not next_token:
                    break
                if await pause(self.page_delay, token):
                    raise SyncCancelledError("cancelled between inventory pages")
        except SyncCancelledError as e:
            return await finish_sync_log(result, SyncStatus.CANCELLED, self.session_factory, str(e))
        except Exception as e:
            await finish_sync_log(result, SyncStatus.FAILED, self.session_factory, str(e))
            raise
        return await finish_sync_log(result, SyncStatus.SUCCESS, self.session_factory)
