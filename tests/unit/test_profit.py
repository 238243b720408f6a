"""
Unit Tests - Daily Profit Aggregation
"""
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import select

from sellerops.database.models import DailyProfit, Order, OrderItem, OrderStatus, SyncLog, SyncStatus
from sellerops.serving.cache import CacheManager
from sellerops.sync.profit import ProfitAggregator, aggregate_daily, get_daily_profit, seller_day_bounds, to_frame

JAN_10 = date(2024, 1, 10)


def item(order_id: str, sku: str, quantity: int, price: str, fees: str, actual=None) -> OrderItem:
    row = OrderItem(
        order_id=order_id,
        master_sku=sku,
        quantity=quantity,
        item_price=Decimal(price),
        shipping_price=Decimal("0"),
        gift_wrap_price=Decimal("0"),
        promo_discount=Decimal("0"),
        ship_promo_discount=Decimal("0"),
        referral_fee=Decimal(fees),
        fba_fee=Decimal("0"),
        other_fees=Decimal("0"),
        actual_revenue=Decimal(actual) if actual else None,
    )
    row.recompute_totals()
    return row


async def seed_sales(session_factory) -> None:
    """Two SKU-A orders on the same seller day and one cancelled order"""
    async with session_factory() as session:
        session.add_all([
            # 12:00 and 19:00 Pacific on Jan 10
            Order(id="O-1", purchase_date=datetime(2024, 1, 10, 20, 0), status=OrderStatus.SHIPPED),
            Order(id="O-2", purchase_date=datetime(2024, 1, 11, 3, 0), status=OrderStatus.SHIPPED),
            Order(id="O-3", purchase_date=datetime(2024, 1, 10, 20, 0), status=OrderStatus.CANCELLED),
            item("O-1", "SKU-A", 2, "20.00", "5.00"),
            item("O-2", "SKU-A", 1, "10.00", "2.00", actual="9.50"),
            item("O-3", "SKU-A", 4, "40.00", "0"),
        ])
        await session.commit()


class TestAggregation:
    """Tests for the polars rollup"""

    def test_seller_day_bounds(self):
        """Seller days start at Pacific midnight"""
        lower, upper = seller_day_bounds(JAN_10, JAN_10)

        assert lower == datetime(2024, 1, 10, 8, 0)
        assert upper == datetime(2024, 1, 11, 8, 0)

    def test_empty_rows(self):
        """No items produce an empty frame"""
        assert aggregate_daily(to_frame([])).height == 0

    def test_settled_revenue_wins(self):
        """Posted revenue replaces the report estimate"""
        frame = to_frame([{
            "purchase_date": datetime(2024, 1, 10, 20, 0),
            "order_id": "O-1",
            "master_sku": "SKU-A",
            "quantity": 1,
            "gross_revenue": Decimal("10.00"),
            "actual_revenue": Decimal("9.50"),
            "amazon_fees": Decimal("2.00"),
            "promo_discount": Decimal("0"),
            "ship_promo_discount": Decimal("0"),
            "unit_cost": Decimal("4.00"),
        }])

        row = aggregate_daily(frame).row(0, named=True)
        assert row["revenue"] == 9.5
        assert row["net_profit"] == 3.5


class TestProfitAggregator:
    """Tests for rebuilding the daily_profit projection"""

    async def test_rebuild_groups_by_seller_day(self, session_factory, seeded_catalog):
        """Orders are bucketed by Pacific date and cancelled ones excluded"""
        await seed_sales(session_factory)

        rows = await ProfitAggregator(session_factory).rebuild(JAN_10, JAN_10)

        assert rows == 1
        async with session_factory() as session:
            profit = (await session.execute(select(DailyProfit))).scalar_one()
        assert profit.profit_date == JAN_10
        assert profit.units_sold == 3
        assert profit.order_count == 2
        assert profit.revenue == Decimal("29.50")
        assert profit.amazon_fees == Decimal("7.00")
        assert profit.cogs == Decimal("12.00")
        assert profit.net_profit == Decimal("10.50")
        assert profit.profit_margin == Decimal("35.59")

    async def test_rebuild_replaces_range(self, session_factory, seeded_catalog):
        """Rows in the range are replaced, so reruns converge"""
        await seed_sales(session_factory)
        async with session_factory() as session:
            session.add(DailyProfit(profit_date=JAN_10, master_sku="SKU-B", units_sold=99))
            await session.commit()
        aggregator = ProfitAggregator(session_factory)

        await aggregator.rebuild(JAN_10, JAN_10)
        await aggregator.rebuild(JAN_10, JAN_10)

        async with session_factory() as session:
            rows = (await session.execute(select(DailyProfit))).scalars().all()
        assert [(r.master_sku, r.units_sold) for r in rows] == [("SKU-A", 3)]

    async def test_run_records_sync_log(self, session_factory, seeded_catalog):
        """A run logs its outcome and invalidates the cache namespace"""
        await seed_sales(session_factory)
        aggregator = ProfitAggregator(session_factory, cache=CacheManager("profit-test"))

        result = await aggregator.run(start=JAN_10, end=JAN_10)

        assert result.status == SyncStatus.SUCCESS
        assert result.records_created == 1
        assert result.details["cache_keys_invalidated"] == 0
        async with session_factory() as session:
            log = await session.get(SyncLog, result.sync_log_id)
        assert log.status == SyncStatus.SUCCESS

    async def test_get_daily_profit_filters_by_sku(self, session_factory, seeded_catalog):
        """The read helper returns plain dicts filtered by SKU"""
        await seed_sales(session_factory)
        await ProfitAggregator(session_factory).rebuild(JAN_10, JAN_10)

        async with session_factory() as session:
            rows = await get_daily_profit(session, JAN_10, JAN_10, sku="SKU-A")
            none = await get_daily_profit(session, JAN_10, JAN_10, sku="SKU-B")

        assert rows[0]["date"] == "2024-01-10"
        assert rows[0]["revenue"] == 29.5
        assert none == []
