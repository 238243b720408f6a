"""
Order and order-item upserts shared by every order-bearing sync.

All writes are keyed on the vendor's order id and (order id, SKU), so
re-applying the same report rows converges on the same rows instead of
duplicating them. Each order is its own transaction; a failure on one order
is counted and the rest of the batch continues.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sellerops.amazon.marketplaces import sales_channel_to_marketplace
from sellerops.database.connection import session_scope
from sellerops.database.models import (
    ZERO,
    Order,
    OrderItem,
    OrderStatus,
    Product,
    can_transition,
)
from sellerops.ingestion.report_parser import normalize_fulfillment_channel, normalize_order_status

logger = structlog.get_logger(__name__)

# report record field -> OrderItem attribute
ITEM_MONEY_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("item_price", "item_price"),
    ("item_tax", "item_tax"),
    ("shipping_price", "shipping_price"),
    ("shipping_tax", "shipping_tax"),
    ("gift_wrap_price", "gift_wrap_price"),
    ("gift_wrap_tax", "gift_wrap_tax"),
    ("item_promotion_discount", "promo_discount"),
    ("ship_promotion_discount", "ship_promo_discount"),
)

ProgressCallback = Callable[[int, int], Awaitable[None]]


def refine_amount(current: Optional[Decimal], new: Optional[Decimal]) -> Decimal:
    """Non-zero ``new`` wins; a zero/absent ``new`` never erases ``current``."""
    if new is not None and new != ZERO:
        return new
    return current if current is not None else ZERO


def refine_order_status(current: OrderStatus, proposed: OrderStatus) -> OrderStatus:
    """Apply ``proposed`` only when it is a legal forward move."""
    if proposed == current or can_transition(current, proposed):
        return proposed
    logger.debug("Ignoring backwards order status", current=current.value, proposed=proposed.value)
    return current


def group_rows_by_order(rows: Iterable[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    """Group report records by order id, keeping first-seen order."""
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for row in rows:
        grouped.setdefault(row["order_id"], []).append(row)
    return grouped


def aggregate_items(rows: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Collapse repeated SKUs within one order (quantities and money summed)."""
    items: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        sku = row["sku"]
        quantity = int(row.get("quantity") or 0)
        if sku not in items:
            items[sku] = {
                "asin": row.get("asin"),
                "quantity": quantity,
                **{source: row.get(source) or ZERO for source, _ in ITEM_MONEY_FIELDS},
            }
            continue
        entry = items[sku]
        entry["quantity"] += quantity
        entry["asin"] = entry["asin"] or row.get("asin")
        for source, _ in ITEM_MONEY_FIELDS:
            entry[source] = entry[source] + (row.get(source) or ZERO)
    return items


async def ensure_products(session: AsyncSession, asins_by_sku: Dict[str, Optional[str]]) -> int:
    """
    Create placeholder catalog rows for unknown SKUs.

    Returns:
        Number of placeholders created
    """
    if not asins_by_sku:
        return 0
    result = await session.execute(select(Product.sku).where(Product.sku.in_(list(asins_by_sku))))
    existing = set(result.scalars().all())
    created = 0
    for sku, asin in asins_by_sku.items():
        if sku in existing:
            continue
        session.add(Product(
            sku=sku,
            asin=asin,
            title=f"[Auto] {sku}",
            cost=ZERO,
            price=ZERO,
            is_active=False,
            is_placeholder=True,
        ))
        created += 1
    if created:
        await session.flush()
        logger.info("Created placeholder products", count=created)
    return created


@dataclass
class OrderUpsertOutcome:
    created: bool
    items_created: int = 0
    items_updated: int = 0
    products_created: int = 0


async def upsert_order(session: AsyncSession, order_id: str, rows: List[Dict[str, Any]]) -> OrderUpsertOutcome:
    """
    Upsert one order header and its items from report records.

    A new order receives every field; an existing one only has its status
    and ship date refined. Items are keyed by (order id, SKU).

    Raises:
        ValueError: No record carries a purchase date
    """
    header = next((r for r in rows if r.get("purchase_date")), None)
    if header is None:
        raise ValueError(f"Order {order_id} has no purchase date")

    status = normalize_order_status(header.get("order_status"))
    ship_date = next((r["ship_date"] for r in rows if r.get("ship_date")), None)
    items = aggregate_items(rows)

    products_created = await ensure_products(session, {sku: item["asin"] for sku, item in items.items()})

    order = await session.get(Order, order_id)
    created = order is None
    if created:
        marketplace = sales_channel_to_marketplace(header.get("sales_channel"))
        order = Order(
            id=order_id,
            purchase_date=header["purchase_date"],
            ship_date=ship_date,
            status=status,
            fulfillment_channel=normalize_fulfillment_channel(header.get("fulfillment_channel")),
            sales_channel=marketplace.channel if marketplace else header.get("sales_channel"),
            currency=header.get("currency") or (marketplace.currency if marketplace else None),
            ship_city=header.get("ship_city"),
            ship_state=header.get("ship_state"),
            ship_postal_code=header.get("ship_postal_code"),
            ship_country=header.get("ship_country"),
            order_total=ZERO,
        )
        session.add(order)
        await session.flush()
    else:
        order.status = refine_order_status(order.status, status)
        if ship_date:
            order.ship_date = ship_date

    result = await session.execute(select(OrderItem).where(OrderItem.order_id == order_id))
    existing_items = {item.master_sku: item for item in result.scalars().all()}

    outcome = OrderUpsertOutcome(created=created, products_created=products_created)
    for sku, values in items.items():
        item = existing_items.get(sku)
        if item is None:
            item = OrderItem(
                order_id=order_id,
                master_sku=sku,
                asin=values["asin"],
                quantity=values["quantity"],
                **{attr: values[source] for source, attr in ITEM_MONEY_FIELDS},
            )
            item.referral_fee = item.fba_fee = item.other_fees = ZERO
            item.recompute_totals()
            session.add(item)
            existing_items[sku] = item
            outcome.items_created += 1
        else:
            if values["quantity"] > 0:
                item.quantity = values["quantity"]
            item.asin = item.asin or values["asin"]
            for source, attr in ITEM_MONEY_FIELDS:
                setattr(item, attr, refine_amount(getattr(item, attr), values[source]))
            item.recompute_totals()
            outcome.items_updated += 1

    order.order_total = sum(
        ((i.item_price or ZERO) + (i.shipping_price or ZERO) + (i.gift_wrap_price or ZERO) for i in existing_items.values()),
        ZERO,
    )
    return outcome


@dataclass
class UpsertStats:
    """Counters for one batch of orders"""
    orders_processed: int = 0
    orders_created: int = 0
    orders_updated: int = 0
    items_created: int = 0
    items_updated: int = 0
    products_created: int = 0
    errors: int = 0
    error_samples: List[str] = field(default_factory=list)

    def merge(self, other: "UpsertStats") -> None:
        for name in (
            "orders_processed", "orders_created", "orders_updated", "items_created",
            "items_updated", "products_created", "errors",
        ):
            setattr(self, name, getattr(self, name) + getattr(other, name))
        self.error_samples = (self.error_samples + other.error_samples)[:10]

    def as_dict(self) -> Dict[str, int]:
        return {
            "orders_processed": self.orders_processed,
            "orders_created": self.orders_created,
            "orders_updated": self.orders_updated,
            "items_created": self.items_created,
            "items_updated": self.items_updated,
            "products_created": self.products_created,
            "errors": self.errors,
        }


class OrderUpserter:
    """
    Applies grouped report records order by order.

    Example:
        upserter = OrderUpserter(session_factory)
        stats = await upserter.upsert_records(parse_result.rows)
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        chunk_size: int = 50,
    ):
        self.session_factory = session_factory
        self.chunk_size = chunk_size

    async def upsert_records(
        self,
        records: Iterable[Dict[str, Any]],
        on_progress: Optional[ProgressCallback] = None,
    ) -> UpsertStats:
        grouped = group_rows_by_order(records)
        order_ids = list(grouped)
        stats = UpsertStats()

        for start in range(0, len(order_ids), self.chunk_size):
            chunk = order_ids[start:start + self.chunk_size]
            async with session_scope(self.session_factory) as session:
                result = await session.execute(select(Order.id).where(Order.id.in_(chunk)))
                known = set(result.scalars().all())

            for order_id in chunk:
                stats.orders_processed += 1
                try:
                    async with session_scope(self.session_factory) as session:
                        outcome = await upsert_order(session, order_id, grouped[order_id])
                except Exception as e:
                    stats.errors += 1
                    if len(stats.error_samples) < 10:
                        stats.error_samples.append(f"{order_id}: {e}")
                    logger.warning("Order upsert failed", order_id=order_id, error=str(e), error_type=type(e).__name__)
                    continue

                if order_id not in known:
                    stats.orders_created += 1
                else:
                    stats.orders_updated += 1
                stats.items_created += outcome.items_created
                stats.items_updated += outcome.items_updated
                stats.products_created += outcome.products_created

            if on_progress is not None:
                await on_progress(min(start + self.chunk_size, len(order_ids)), len(order_ids))

        return stats
