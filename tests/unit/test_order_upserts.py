"""
Unit Tests - Order Upserts
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select

from sellerops.database.models import FulfillmentChannel, Order, OrderItem, OrderStatus, Product
from sellerops.sync.order_upserts import (
    OrderUpserter,
    aggregate_items,
    group_rows_by_order,
    refine_amount,
    refine_order_status,
)


def record(order_id: str = "111-1", sku: str = "SKU-A", **overrides):
    row = {
        "order_id": order_id,
        "sku": sku,
        "asin": f"B0{sku}",
        "purchase_date": datetime(2024, 1, 10, 12, 0),
        "ship_date": None,
        "order_status": "Shipped",
        "fulfillment_channel": "Amazon",
        "sales_channel": "Amazon.com",
        "quantity": 1,
        "currency": "USD",
        "item_price": Decimal("10.00"),
        "item_tax": Decimal("0.80"),
        "shipping_price": Decimal("0"),
        "shipping_tax": Decimal("0"),
        "gift_wrap_price": Decimal("0"),
        "gift_wrap_tax": Decimal("0"),
        "item_promotion_discount": Decimal("0"),
        "ship_promotion_discount": Decimal("0"),
    }
    row.update(overrides)
    return row


async def count(session_factory, model) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


async def load_item(session_factory, order_id: str, sku: str) -> OrderItem:
    async with session_factory() as session:
        result = await session.execute(
            select(OrderItem).where(OrderItem.order_id == order_id, OrderItem.master_sku == sku)
        )
        return result.scalar_one()


class TestRefinement:
    """Tests for the merge rules applied to existing rows"""

    def test_non_zero_amount_wins(self):
        """A new non-zero value replaces the current one"""
        assert refine_amount(Decimal("5"), Decimal("7")) == Decimal("7")

    def test_zero_never_erases(self):
        """Zero or missing values keep the stored amount"""
        assert refine_amount(Decimal("5"), Decimal("0")) == Decimal("5")
        assert refine_amount(Decimal("5"), None) == Decimal("5")
        assert refine_amount(None, None) == Decimal("0")

    def test_status_moves_forward_only(self):
        """Backwards status changes are ignored"""
        assert refine_order_status(OrderStatus.PENDING, OrderStatus.SHIPPED) == OrderStatus.SHIPPED
        assert refine_order_status(OrderStatus.SHIPPED, OrderStatus.PENDING) == OrderStatus.SHIPPED
        assert refine_order_status(OrderStatus.CANCELLED, OrderStatus.SHIPPED) == OrderStatus.CANCELLED

    def test_group_rows_keeps_first_seen_order(self):
        """Rows are grouped per order in source order"""
        grouped = group_rows_by_order([record("B"), record("A"), record("B", sku="SKU-B")])

        assert list(grouped) == ["B", "A"]
        assert len(grouped["B"]) == 2

    def test_repeated_skus_are_summed(self):
        """Quantities and money for a repeated SKU are aggregated"""
        items = aggregate_items([
            record(quantity=1, item_price=Decimal("10.00")),
            record(quantity=2, item_price=Decimal("20.00")),
        ])

        assert items["SKU-A"]["quantity"] == 3
        assert items["SKU-A"]["item_price"] == Decimal("30.00")


class TestOrderUpserter:
    """Tests for applying report records to the database"""

    async def test_new_order_is_created(self, session_factory, seeded_catalog):
        """Header, items and derived totals are written for a new order"""
        upserter = OrderUpserter(session_factory)

        stats = await upserter.upsert_records([
            record(item_price=Decimal("10.00"), item_promotion_discount=Decimal("2.00")),
        ])

        assert stats.orders_created == 1
        assert stats.items_created == 1
        async with session_factory() as session:
            order = await session.get(Order, "111-1")
        assert order.status == OrderStatus.SHIPPED
        assert order.fulfillment_channel == FulfillmentChannel.FBA
        assert order.currency == "USD"
        assert order.order_total == Decimal("10.00")

        item = await load_item(session_factory, "111-1", "SKU-A")
        assert item.gross_revenue == Decimal("8.00")
        assert item.amazon_fees == Decimal("0")

    async def test_reapplying_rows_is_idempotent(self, session_factory, seeded_catalog):
        """Running the same records twice updates instead of duplicating"""
        upserter = OrderUpserter(session_factory)
        rows = [record(), record(sku="SKU-B")]

        await upserter.upsert_records(rows)
        stats = await upserter.upsert_records(rows)

        assert stats.orders_created == 0
        assert stats.orders_updated == 1
        assert stats.items_updated == 2
        assert await count(session_factory, Order) == 1
        assert await count(session_factory, OrderItem) == 2

    async def test_zero_quantity_is_kept(self, session_factory, seeded_catalog):
        """A cancelled line reported with quantity 0 is not stored as one unit"""
        upserter = OrderUpserter(session_factory)

        await upserter.upsert_records([record(order_status="Cancelled", quantity=0, item_price=Decimal("0"))])

        item = await load_item(session_factory, "111-1", "SKU-A")
        assert item.quantity == 0

    async def test_zero_amount_does_not_erase_existing(self, session_factory, seeded_catalog):
        """A later row with a zero price keeps the stored price"""
        upserter = OrderUpserter(session_factory)

        await upserter.upsert_records([record(item_price=Decimal("10.00"))])
        await upserter.upsert_records([record(item_price=Decimal("0"))])

        item = await load_item(session_factory, "111-1", "SKU-A")
        assert item.item_price == Decimal("10.00")

    async def test_status_does_not_regress(self, session_factory, seeded_catalog):
        """A stale pending row leaves a shipped order shipped"""
        upserter = OrderUpserter(session_factory)

        await upserter.upsert_records([record(order_status="Shipped", ship_date=datetime(2024, 1, 11))])
        await upserter.upsert_records([record(order_status="Pending")])

        async with session_factory() as session:
            order = await session.get(Order, "111-1")
        assert order.status == OrderStatus.SHIPPED
        assert order.ship_date == datetime(2024, 1, 11)

    async def test_unknown_sku_gets_placeholder_product(self, session_factory, seeded_catalog):
        """Order items never reference a SKU missing from the catalog"""
        upserter = OrderUpserter(session_factory)

        stats = await upserter.upsert_records([record(sku="NEW-1")])

        assert stats.products_created == 1
        async with session_factory() as session:
            product = await session.get(Product, "NEW-1")
        assert product.is_placeholder is True
        assert product.is_active is False
        assert product.asin == "B0NEW-1"

    async def test_bad_order_does_not_stop_batch(self, session_factory, seeded_catalog):
        """An order without a purchase date is counted and the rest are applied"""
        upserter = OrderUpserter(session_factory)

        stats = await upserter.upsert_records([
            record("BAD", purchase_date=None),
            record("GOOD"),
        ])

        assert stats.orders_processed == 2
        assert stats.errors == 1
        assert stats.error_samples[0].startswith("BAD:")
        assert await count(session_factory, Order) == 1

    async def test_progress_reported_per_chunk(self, session_factory, seeded_catalog):
        """The progress callback sees cumulative counts"""
        calls = []

        async def on_progress(done, total):
            calls.append((done, total))

        upserter = OrderUpserter(session_factory, chunk_size=2)
        await upserter.upsert_records([record(f"O-{i}") for i in range(3)], on_progress=on_progress)

        assert calls == [(2, 3), (3, 3)]
