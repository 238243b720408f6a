"""
Unit Tests - Inventory, Inbound Shipment, Returns and Re-price Syncs
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from sellerops.amazon.fulfillment import InboundShipment, InboundShipmentItem, InventorySummary, Page
from sellerops.amazon.orders import OrderItemLine
from sellerops.amazon.reports import ReportType
from sellerops.database.models import (
    FbaShipment,
    FbaShipmentItem,
    InventoryLevel,
    Order,
    OrderItem,
    OrderStatus,
    PendingReport,
    PendingReportStatus,
    Product,
    ReconciliationStatus,
    Return,
    SyncLog,
    SyncStatus,
)
from sellerops.errors import ReportTimeoutError, VendorApiError, VendorServerError
from sellerops.sync.fba_shipments import FbaShipmentSync, parse_shipment_name_date
from sellerops.sync.inventory import InventorySync
from sellerops.sync.resync_pending import ResyncPendingOrders
from sellerops.sync.returns import ReturnsSync
from sellerops.timeutils import utcnow
from tests.fakes import FakeReports


class FakeInventory:
    def __init__(self, *pages: Page):
        self.pages = list(pages)
        self.tokens = []

    async def get_inventory_summaries(self, next_token=None):
        self.tokens.append(next_token)
        return self.pages.pop(0)


class FakeInbound:
    def __init__(self, shipments, items):
        self.shipments = shipments
        self.items = items

    async def get_shipments(self, statuses=None, next_token=None, updated_after=None):
        return Page(items=self.shipments)

    async def get_shipment_items(self, shipment_id):
        return self.items.get(shipment_id, [])


class FakeOrders:
    def __init__(self, responses):
        self.responses = responses
        self.requested = []

    async def get_order_items(self, order_id):
        self.requested.append(order_id)
        response = self.responses[order_id]
        if isinstance(response, Exception):
            raise response
        return response


def priced_line(sku: str, price: str) -> OrderItemLine:
    zero = Decimal("0")
    return OrderItemLine(
        seller_sku=sku, asin=None, quantity=1, item_price=Decimal(price), item_tax=zero,
        shipping_price=zero, shipping_tax=zero, promo_discount=zero, ship_promo_discount=zero,
    )


class TestInventorySync:
    """Tests for FBA inventory levels"""

    async def test_levels_written_and_fnsku_backfilled(self, session_factory, seeded_catalog):
        """Summaries update levels; FNSKUs fill only empty catalog values"""
        async with session_factory() as session:
            session.add(Product(sku="SKU-C", title="Widget C"))
            await session.commit()
        inventory = FakeInventory(
            Page(items=[
                InventorySummary(seller_sku="SKU-A", fnsku="OTHER", asin=None, fulfillable=5, inbound=2, reserved=1),
                InventorySummary(seller_sku="", fnsku=None, asin=None),
            ], next_token="p2"),
            Page(items=[InventorySummary(seller_sku="SKU-C", fnsku="X00C", asin=None, fulfillable=9)]),
        )

        result = await InventorySync(inventory, session_factory, page_delay=0).run()

        assert result.status == SyncStatus.SUCCESS
        assert inventory.tokens == [None, "p2"]
        assert (result.records_created, result.records_skipped) == (2, 1)
        assert result.details["fnsku_backfilled"] == 1
        async with session_factory() as session:
            level = await session.get(InventoryLevel, "SKU-A")
            sku_a = await session.get(Product, "SKU-A")
            sku_c = await session.get(Product, "SKU-C")
        assert (level.fba_available, level.fba_inbound, level.fba_reserved) == (5, 2, 1)
        assert sku_a.fnsku == "X00A"
        assert sku_c.fnsku == "X00C"

    async def test_vendor_error_fails_run(self, session_factory, seeded_catalog):
        """A vendor error marks the run failed and propagates"""
        class Broken:
            async def get_inventory_summaries(self, next_token=None):
                raise VendorServerError("down", status_code=503)

        with pytest.raises(VendorServerError):
            await InventorySync(Broken(), session_factory).run()

        async with session_factory() as session:
            log = (await session.execute(select(SyncLog))).scalar_one()
        assert log.status == SyncStatus.FAILED


class TestFbaShipmentSync:
    """Tests for inbound shipment upserts"""

    def test_parse_shipment_name_date(self):
        """Creation dates are recovered from generated names"""
        assert parse_shipment_name_date("FBA STA (01/15/2024 10:30)-ONT8") == datetime(2024, 1, 15)
        assert parse_shipment_name_date("Restock 2024-03-02") == datetime(2024, 3, 2)
        assert parse_shipment_name_date("Restock") is None
        assert parse_shipment_name_date(None) is None

    async def test_new_shipment_starts_pending(self, session_factory, seeded_catalog):
        """Lines are matched to the catalog and totals computed"""
        inbound = FakeInbound(
            [InboundShipment(shipment_id="FBA1", status="SHIPPED", shipment_name="Restock", destination_fc="ONT8")],
            {"FBA1": [
                InboundShipmentItem(seller_sku="sku-b", fnsku=None, quantity_shipped=4),
                InboundShipmentItem(seller_sku="UNKNOWN", fnsku=None, quantity_shipped=1),
            ]},
        )

        result = await FbaShipmentSync(inbound, session_factory, request_delay=0).run()

        assert result.records_created == 1
        async with session_factory() as session:
            shipment = (await session.execute(select(FbaShipment))).scalar_one()
            items = (await session.execute(select(FbaShipmentItem))).scalars().all()
        assert shipment.reconciliation_status == ReconciliationStatus.PENDING
        assert shipment.total_units_shipped == 5
        assert {i.seller_sku: i.master_sku for i in items} == {"sku-b": "SKU-B", "UNKNOWN": None}

    async def test_resync_keeps_reconciliation_state(self, session_factory, seeded_catalog):
        """Vendor updates never reopen a reconciled shipment"""
        async with session_factory() as session:
            session.add(FbaShipment(
                shipment_id="FBA1", status="WORKING", reconciliation_status=ReconciliationStatus.ACCEPTED,
                items=[FbaShipmentItem(seller_sku="SKU-A", master_sku="SKU-A", quantity_shipped=1)],
            ))
            await session.commit()
        inbound = FakeInbound(
            [InboundShipment(shipment_id="FBA1", status="RECEIVING")],
            {"FBA1": [InboundShipmentItem(seller_sku="SKU-A", fnsku="X00A", quantity_shipped=6, quantity_received=2)]},
        )

        result = await FbaShipmentSync(inbound, session_factory, request_delay=0).run()

        assert result.records_updated == 1
        async with session_factory() as session:
            shipment = (await session.execute(select(FbaShipment))).scalar_one()
        assert shipment.reconciliation_status == ReconciliationStatus.ACCEPTED
        assert shipment.status == "RECEIVING"
        assert (shipment.total_units_shipped, shipment.total_units_received) == (6, 2)


    async def test_lines_keyed_by_seller_sku(self, session_factory, seeded_catalog):
        """Two listings of one product stay separate lines and a resync updates them in place"""
        lines = [
            InboundShipmentItem(seller_sku="SKU-A", fnsku="X00A", quantity_shipped=3),
            InboundShipmentItem(seller_sku="sku-a-bundle", fnsku="X00A", quantity_shipped=2),
            InboundShipmentItem(seller_sku="GHOST-1", fnsku=None, quantity_shipped=1),
            InboundShipmentItem(seller_sku="GHOST-2", fnsku=None, quantity_shipped=1),
        ]
        inbound = FakeInbound([InboundShipment(shipment_id="FBA1", status="SHIPPED")], {"FBA1": lines})
        sync = FbaShipmentSync(inbound, session_factory, request_delay=0)

        await sync.run()
        await sync.run()

        async with session_factory() as session:
            items = (await session.execute(select(FbaShipmentItem))).scalars().all()
            shipment = (await session.execute(select(FbaShipment))).scalar_one()
            saved = sorted((i.seller_sku, i.master_sku) for i in items)
            session.add(FbaShipmentItem(shipment_pk=shipment.id, seller_sku="SKU-A", quantity_shipped=9))
            with pytest.raises(IntegrityError):
                await session.commit()
        assert saved == [
            ("GHOST-1", None), ("GHOST-2", None), ("SKU-A", "SKU-A"), ("sku-a-bundle", "SKU-A"),
        ]

    async def test_irrelevant_shipments_skipped(self, session_factory, seeded_catalog):
        """Closed and very old shipments are ignored"""
        inbound = FakeInbound(
            [
                InboundShipment(shipment_id="OLD", status="WORKING", shipment_name="FBA STA (01/15/2020 10:30)"),
                InboundShipment(shipment_id="DONE", status="CLOSED"),
            ],
            {},
        )

        result = await FbaShipmentSync(inbound, session_factory, request_delay=0).run()

        assert result.records_skipped == 2
        assert result.records_processed == 0

    async def test_reconciled_shipments_expire(self, session_factory, seeded_catalog):
        """Reconciled shipments past retention are removed; pending ones stay"""
        long_ago = utcnow() - timedelta(days=800)
        async with session_factory() as session:
            session.add_all([
                FbaShipment(
                    shipment_id="OLD-DONE", reconciliation_status=ReconciliationStatus.DEDUCTED, last_synced_at=long_ago,
                    items=[FbaShipmentItem(seller_sku="SKU-A", quantity_shipped=1)],
                ),
                FbaShipment(
                    shipment_id="OLD-PENDING", reconciliation_status=ReconciliationStatus.PENDING, last_synced_at=long_ago,
                ),
            ])
            await session.commit()

        result = await FbaShipmentSync(FakeInbound([], {}), session_factory).run()

        assert result.details["removed"] == 1
        async with session_factory() as session:
            remaining = (await session.execute(select(FbaShipment.shipment_id))).scalars().all()
            orphans = (await session.execute(select(FbaShipmentItem))).scalars().all()
        assert remaining == ["OLD-PENDING"]
        assert orphans == []


class TestReturnsSync:
    """Tests for the customer returns report"""

    RETURNS_REPORT = (
        "return-date\torder-id\tsku\tquantity\treason\tdetailed-disposition\n"
        "2024-03-01T10:00:00Z\tO-1\tSKU-A\t1\tDEFECTIVE\tCUSTOMER_DAMAGED\n"
    )

    async def test_returns_upserted_and_order_marked_returned(self, session_factory, seeded_catalog):
        """Returns are keyed by order, SKU and date; refunds stay untouched"""
        async with session_factory() as session:
            session.add(Order(id="O-1", purchase_date=datetime(2024, 2, 1), status=OrderStatus.SHIPPED))
            await session.commit()
        reports = FakeReports(documents={ReportType.FBA_CUSTOMER_RETURNS.value: self.RETURNS_REPORT})

        first = await ReturnsSync(reports, session_factory).run(days=30)
        async with session_factory() as session:
            row = (await session.execute(select(Return))).scalar_one()
            row.refund_amount = Decimal("7.00")
            await session.commit()
        second = await ReturnsSync(reports, session_factory).run(days=30)

        assert (first.records_created, second.records_updated) == (1, 1)
        async with session_factory() as session:
            row = (await session.execute(select(Return))).scalar_one()
            order = await session.get(Order, "O-1")
        assert row.reason == "DEFECTIVE"
        assert row.disposition == "CUSTOMER_DAMAGED"
        assert row.refund_amount == Decimal("7.00")
        assert order.status == OrderStatus.RETURNED

    async def test_timed_out_report_reused_by_next_run(self, session_factory, seeded_catalog):
        """A later run picks up the pending report although its window end moved"""
        async with session_factory() as session:
            session.add(Order(id="O-1", purchase_date=datetime(2024, 2, 1), status=OrderStatus.SHIPPED))
            await session.commit()
        reports = FakeReports(
            documents={ReportType.FBA_CUSTOMER_RETURNS.value: self.RETURNS_REPORT},
            failures={ReportType.FBA_CUSTOMER_RETURNS.value: ReportTimeoutError("r1", 3)},
        )
        with pytest.raises(ReportTimeoutError):
            await ReturnsSync(reports, session_factory).run(days=30)
        async with session_factory() as session:
            pending = (await session.execute(select(PendingReport))).scalar_one()
            pending.data_start -= timedelta(minutes=5)
            pending.data_end -= timedelta(minutes=5)
            await session.commit()

        reports.failures.clear()
        result = await ReturnsSync(reports, session_factory).run(days=30)

        assert len(reports.requested) == 1
        assert result.records_created == 1
        async with session_factory() as session:
            pending = (await session.execute(select(PendingReport))).scalar_one()
        assert pending.status == PendingReportStatus.DONE


class TestResyncPendingOrders:
    """Tests for re-pricing unpriced order items"""

    async def seed(self, session_factory):
        async with session_factory() as session:
            session.add_all([
                Order(id="O-1", purchase_date=datetime(2024, 1, 1), status=OrderStatus.PENDING),
                Order(id="O-2", purchase_date=datetime(2024, 1, 1), status=OrderStatus.CANCELLED),
                Order(id="O-3", purchase_date=datetime(2024, 1, 1), status=OrderStatus.UNSHIPPED),
                OrderItem(order_id="O-1", master_sku="SKU-A", quantity=1, item_price=Decimal("0")),
                OrderItem(order_id="O-2", master_sku="SKU-A", quantity=1, item_price=Decimal("0")),
                OrderItem(order_id="O-3", master_sku="SKU-B", quantity=1, item_price=Decimal("0")),
            ])
            await session.commit()

    async def test_unpriced_items_get_prices(self, session_factory, seeded_catalog):
        """Priced lines fill zero prices; cancelled orders are ignored"""
        await self.seed(session_factory)
        orders = FakeOrders({
            "O-1": [priced_line("SKU-A", "12.00")],
            "O-3": VendorApiError("order not found", status_code=404),
        })

        result = await ResyncPendingOrders(orders, session_factory, order_delay=0).run()

        assert orders.requested == ["O-1", "O-3"]
        assert (result.records_updated, result.records_failed) == (1, 1)
        async with session_factory() as session:
            item = (await session.execute(select(OrderItem).where(OrderItem.order_id == "O-1"))).scalar_one()
            order = await session.get(Order, "O-1")
        assert item.item_price == Decimal("12.00")
        assert item.gross_revenue == Decimal("12.00")
        assert order.order_total == Decimal("12.00")

    async def test_transient_error_aborts_run(self, session_factory, seeded_catalog):
        """Throttling or outages stop the run so the job can be retried"""
        await self.seed(session_factory)
        orders = FakeOrders({"O-1": VendorServerError("down", status_code=503)})

        with pytest.raises(VendorServerError):
            await ResyncPendingOrders(orders, session_factory, order_delay=0).run()
