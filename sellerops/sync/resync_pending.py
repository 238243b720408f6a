"""
Re-fetch prices for order items that reports delivered without them.

Pending orders appear in the orders report with empty price columns; once
the vendor prices them the order-items API has the amounts.
"""

from decimal import Decimal
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sellerops.amazon.orders import OrderItemLine, OrdersClient
from sellerops.database.connection import session_scope
from sellerops.database.models import ZERO, Order, OrderItem, OrderStatus, SyncStatus, SyncType
from sellerops.errors import SyncCancelledError, TransientVendorError
from sellerops.jobs.cancellation import CancellationToken, pause
from sellerops.sync.base import SyncRunResult, finish_sync_log, start_sync_log
from sellerops.sync.order_upserts import ensure_products

logger = structlog.get_logger(__name__)

LINE_PRICE_FIELDS = (
    "item_price",
    "item_tax",
    "shipping_price",
    "shipping_tax",
    "promo_discount",
    "ship_promo_discount",
)


def _positive(current: Decimal, new: Decimal) -> Decimal:
    return new if new and new > 0 else current


async def apply_order_lines(session: AsyncSession, order_id: str, lines: List[OrderItemLine]) -> int:
    """
    Apply priced lines to an order's items.

    Returns:
        Number of items that received a price
    """
    await ensure_products(session, {line.seller_sku: line.asin for line in lines if line.seller_sku})
    result = await session.execute(select(OrderItem).where(OrderItem.order_id == order_id))
    items = {item.master_sku: item for item in result.scalars().all()}

    priced = 0
    for line in lines:
        if not line.seller_sku:
            continue
        item = items.get(line.seller_sku)
        if item is None:
            item = OrderItem(
                order_id=order_id,
                master_sku=line.seller_sku,
                asin=line.asin,
                quantity=line.quantity or 1,
                **{name: ZERO for name in LINE_PRICE_FIELDS},
            )
            item.gift_wrap_price = item.gift_wrap_tax = ZERO
            item.referral_fee = item.fba_fee = item.other_fees = ZERO
            session.add(item)
            items[line.seller_sku] = item
        was_zero = not item.item_price
        for name in LINE_PRICE_FIELDS:
            setattr(item, name, _positive(getattr(item, name), getattr(line, name)))
        item.recompute_totals()
        if was_zero and item.item_price:
            priced += 1

    order = await session.get(Order, order_id)
    if order is not None:
        order.order_total = sum(
            ((i.item_price or ZERO) + (i.shipping_price or ZERO) + (i.gift_wrap_price or ZERO) for i in items.values()),
            ZERO,
        )
    return priced


class ResyncPendingOrders:
    def __init__(
        self,
        orders: OrdersClient,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        order_delay: float = 0.2,
        limit: int = 100,
    ):
        self.orders = orders
        self.session_factory = session_factory
        self.order_delay = order_delay
        self.limit = limit

    async def find_unpriced_orders(self) -> List[str]:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(OrderItem.order_id)
                .join(Order, Order.id == OrderItem.order_id)
                .where(OrderItem.item_price == 0, Order.status != OrderStatus.CANCELLED)
                .group_by(OrderItem.order_id)
                .order_by(OrderItem.order_id)
                .limit(self.limit)
            )
            return list(result.scalars().all())

    async def run(self, token: Optional[CancellationToken] = None) -> SyncRunResult:
        result = await start_sync_log(SyncType.RESYNC_PENDING, self.session_factory)
        try:
            order_ids = await self.find_unpriced_orders()
            logger.info("Re-syncing unpriced orders", count=len(order_ids))
            for position, order_id in enumerate(order_ids):
                if token is not None:
                    await token.raise_if_cancelled()
                result.records_processed += 1
                try:
                    lines = await self.orders.get_order_items(order_id)
                    async with session_scope(self.session_factory) as session:
                        priced = await apply_order_lines(session, order_id, lines)
                except TransientVendorError:
                    raise
                except Exception as e:
                    result.records_failed += 1
                    logger.warning("Order re-sync failed", order_id=order_id, error=str(e))
                    continue
                if priced:
                    result.records_updated += 1
                else:
                    result.records_skipped += 1
                if position + 1 < len(order_ids) and await pause(self.order_delay, token):
                    raise SyncCancelledError("cancelled between orders")
        except SyncCancelledError as e:
            return await finish_sync_log(result, SyncStatus.CANCELLED, self.session_factory, str(e))
        except Exception as e:
            await finish_sync_log(result, SyncStatus.FAILED, self.session_factory, str(e))
            raise
        return await finish_sync_log(result, SyncStatus.SUCCESS, self.session_factory)
