"""
Unit Tests - Financial Event Reconciliation
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

import pytest
from sqlalchemy import func, select

from sellerops.amazon.finances import FinancialEventsPage
from sellerops.database.models import Order, OrderItem, Return, SyncLog, SyncStatus
from sellerops.errors import RateLimitedError, TokenExpiredError, VendorServerError
from sellerops.jobs.cancellation import CancellationToken
from sellerops.sync.financial_events import (
    ChargeCategory,
    FeeCategory,
    FinancialEventReconciler,
    ItemFinancials,
    apply_financials,
    classify_charge,
    classify_fee,
    plan_windows,
)

START = datetime(2024, 1, 1)
ONE_WINDOW_END = datetime(2024, 1, 5)
TWO_WINDOW_END = datetime(2024, 1, 12)


class FakeFinances:
    """Serves scripted pages; exceptions are raised, coroutines awaited"""

    def __init__(self, *script):
        self.script = list(script)
        self.calls: List[tuple] = []

    async def list_financial_events(self, posted_after, posted_before, next_token=None):
        self.calls.append((posted_after, posted_before, next_token))
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return await step()
        return step


def money(amount: str):
    return {"CurrencyCode": "USD", "CurrencyAmount": amount}


def shipment_event(
    order_id: str,
    sku: str = "SKU-A",
    fees=(("Commission", "-1.50"),),
    charges=(("Principal", "10.00"), ("Tax", "0.80")),
    promotion: Optional[str] = None,
    posted: str = "2024-01-02T00:00:00Z",
):
    line = {
        "SellerSKU": sku,
        "ItemFeeList": [{"FeeType": t, "FeeAmount": money(a)} for t, a in fees],
        "ItemChargeList": [{"ChargeType": t, "ChargeAmount": money(a)} for t, a in charges],
    }
    if promotion:
        line["PromotionList"] = [{"PromotionAmount": money(promotion)}]
    return {"AmazonOrderId": order_id, "PostedDate": posted, "ShipmentItemList": [line]}


def refund_event(order_id: str, sku: str = "SKU-A", amount: str = "-10.00"):
    return {
        "AmazonOrderId": order_id,
        "PostedDate": "2024-01-03T00:00:00Z",
        "ShipmentItemAdjustmentList": [{
            "SellerSKU": sku,
            "ItemChargeAdjustmentList": [
                {"ChargeType": "Principal", "ChargeAmount": money(amount)},
                {"ChargeType": "Tax", "ChargeAmount": money("-0.80")},
            ],
        }],
    }


def page(*events, refunds=(), next_token=None) -> FinancialEventsPage:
    return FinancialEventsPage(shipment_events=list(events), refund_events=list(refunds), next_token=next_token)


async def seed_orders(session_factory, *order_ids: str, sku: str = "SKU-A") -> None:
    async with session_factory() as session:
        for order_id in order_ids:
            session.add(Order(id=order_id, purchase_date=datetime(2024, 1, 1)))
            session.add(OrderItem(order_id=order_id, master_sku=sku, quantity=1, item_price=Decimal("9.00")))
        await session.commit()


async def load_item(session_factory, order_id: str, sku: str = "SKU-A") -> OrderItem:
    async with session_factory() as session:
        result = await session.execute(
            select(OrderItem).where(OrderItem.order_id == order_id, OrderItem.master_sku == sku)
        )
        return result.scalar_one()


def make_reconciler(finances, session_factory, **kwargs) -> FinancialEventReconciler:
    options = dict(window_days=7, page_delay=0, window_delay=0, rate_limit_wait=0)
    options.update(kwargs)
    return FinancialEventReconciler(finances, session_factory, **options)


class TestClassification:
    """Tests for fee and charge bucketing"""

    @pytest.mark.parametrize("fee_type,expected", [
        ("Commission", FeeCategory.REFERRAL),
        ("ReferralFee", FeeCategory.REFERRAL),
        ("FBAWeightBasedFee", FeeCategory.WEIGHT_HANDLING),
        ("FBAPerUnitFulfillmentFee", FeeCategory.FULFILLMENT),
        ("VariableClosingFee", FeeCategory.CLOSING),
        ("DigitalServicesFee", FeeCategory.OTHER),
        (None, FeeCategory.OTHER),
    ])
    def test_classify_fee(self, fee_type, expected):
        """Fee types map to buckets by substring"""
        assert classify_fee(fee_type) == expected

    @pytest.mark.parametrize("charge_type,expected", [
        ("Principal", ChargeCategory.ITEM_PRICE),
        ("ShippingCharge", ChargeCategory.SHIPPING),
        ("ShippingTax", ChargeCategory.TAX),
        ("GiftWrap", ChargeCategory.GIFT_WRAP),
        ("Tax", ChargeCategory.TAX),
        ("Goodwill", ChargeCategory.OTHER),
    ])
    def test_classify_charge(self, charge_type, expected):
        """Tax wins over shipping for shipping tax"""
        assert classify_charge(charge_type) == expected

    def test_actual_revenue_excludes_tax_and_nets_promotions(self):
        """Revenue is item + shipping + gift wrap less promotions"""
        fin = ItemFinancials()
        fin.add_charge(ChargeCategory.ITEM_PRICE, Decimal("10.00"))
        fin.add_charge(ChargeCategory.SHIPPING, Decimal("2.00"))
        fin.add_charge(ChargeCategory.TAX, Decimal("0.96"))
        fin.promotions = Decimal("1.00")

        assert fin.actual_revenue == Decimal("11.00")

    def test_fees_are_stored_positive(self):
        """Vendor fees arrive negative and are accumulated as magnitudes"""
        fin = ItemFinancials()
        fin.add_fee(FeeCategory.FULFILLMENT, Decimal("-3.00"))
        fin.add_fee(FeeCategory.WEIGHT_HANDLING, Decimal("-0.50"))

        assert fin.fba_fee == Decimal("3.50")

    def test_apply_never_regresses_to_zero(self):
        """A zero fee leaves the stored fee in place"""
        item = OrderItem(order_id="O", master_sku="S", referral_fee=Decimal("1.50"), fba_fee=Decimal("3.00"),
                         other_fees=Decimal("0"), item_price=Decimal("10.00"))
        fin = ItemFinancials()
        fin.add_fee(FeeCategory.REFERRAL, Decimal("0"))

        apply_financials(item, fin)

        assert item.referral_fee == Decimal("1.50")
        assert item.fba_fee == Decimal("3.00")
        assert item.amazon_fees == Decimal("4.50")

    def test_plan_windows(self):
        """Windows tile the range and the last one is clipped"""
        windows = plan_windows(START, datetime(2024, 1, 10), 7)

        assert [(w.start, w.end) for w in windows] == [
            (START, datetime(2024, 1, 8)),
            (datetime(2024, 1, 8), datetime(2024, 1, 10)),
        ]


class TestFinancialEventReconciler:
    """Tests for the incremental, flush-on-failure sync"""

    async def test_fees_and_revenue_applied(self, session_factory, seeded_catalog):
        """Fees from separate pages combine onto one order item"""
        await seed_orders(session_factory, "O-1")
        finances = FakeFinances(
            page(shipment_event("O-1"), next_token="t1"),
            page(shipment_event("O-1", fees=(("FBAPerUnitFulfillmentFee", "-3.00"),), charges=())),
        )

        result = await make_reconciler(finances, session_factory).run(start=START, end=ONE_WINDOW_END)

        assert result.status == SyncStatus.SUCCESS
        assert result.pages == 2
        assert result.items_updated == 1
        item = await load_item(session_factory, "O-1")
        assert item.referral_fee == Decimal("1.50")
        assert item.fba_fee == Decimal("3.00")
        assert item.amazon_fees == Decimal("4.50")
        assert item.actual_revenue == Decimal("10.00")
        assert item.item_tax == Decimal("0.80")
        assert finances.calls[1][2] == "t1"

    async def test_promotions_reduce_revenue(self, session_factory, seeded_catalog):
        """Promotions are netted out of actual revenue"""
        await seed_orders(session_factory, "O-1")
        finances = FakeFinances(page(shipment_event("O-1", promotion="-2.00")))

        await make_reconciler(finances, session_factory).run(start=START, end=ONE_WINDOW_END)

        item = await load_item(session_factory, "O-1")
        assert item.actual_revenue == Decimal("8.00")
        assert item.promo_discount == Decimal("2.00")

    async def test_rate_limit_flushes_before_waiting(self, session_factory, seeded_catalog):
        """Accumulated keys reach the database before the window restarts"""
        order_ids = [f"O-{i:02d}" for i in range(40)]
        await seed_orders(session_factory, *order_ids)
        first_page = page(*[shipment_event(o) for o in order_ids], next_token="t1")
        flushed_before_restart = []

        async def restarted_page():
            async with session_factory() as session:
                flushed_before_restart.append(await session.scalar(
                    select(func.count()).select_from(OrderItem).where(OrderItem.fees_posted_at.is_not(None))
                ))
            return page(*[shipment_event(o) for o in order_ids])

        finances = FakeFinances(first_page, RateLimitedError("throttled"), restarted_page)
        reconciler = make_reconciler(finances, session_factory, flush_every_page=False, flush_threshold=1000)

        result = await reconciler.run(start=START, end=ONE_WINDOW_END)

        assert flushed_before_restart == [40]
        assert result.rate_limit_restarts == 1
        assert result.status == SyncStatus.SUCCESS
        item = await load_item(session_factory, "O-07")
        assert item.referral_fee == Decimal("1.50")

    async def test_window_gives_up_after_max_restarts(self, session_factory, seeded_catalog):
        """A window that stays throttled is counted as failed"""
        finances = FakeFinances(RateLimitedError("throttled"), RateLimitedError("throttled"))
        reconciler = make_reconciler(finances, session_factory, max_rate_limit_restarts=1)

        result = await reconciler.run(start=START, end=ONE_WINDOW_END)

        assert result.windows_failed == 1
        assert result.status == SyncStatus.SUCCESS

    async def test_expired_token_window_is_retried_last(self, session_factory, seeded_catalog):
        """A window whose cursor expired gets one more pass after the others"""
        await seed_orders(session_factory, "O-1", "O-2")
        invalidations = []
        finances = FakeFinances(
            page(shipment_event("O-1"), next_token="t1"),
            TokenExpiredError("NextToken expired", status_code=400),
            page(shipment_event("O-2")),
            page(shipment_event("O-1", fees=(("Commission", "-1.50"), ("FBAPerUnitFulfillmentFee", "-3.00")))),
        )
        reconciler = make_reconciler(finances, session_factory, on_token_expired=lambda: invalidations.append(1))

        result = await reconciler.run(start=START, end=TWO_WINDOW_END)

        assert result.windows == 2
        assert result.windows_failed == 0
        assert invalidations == [1]
        assert [call[0] for call in finances.calls] == [START, START, datetime(2024, 1, 8), START]
        item = await load_item(session_factory, "O-1")
        assert item.fba_fee == Decimal("3.00")
        assert item.referral_fee == Decimal("1.50")

    async def test_refund_backfills_unset_returns_only(self, session_factory, seeded_catalog):
        """Refund events fill a missing refund amount and leave set ones alone"""
        await seed_orders(session_factory, "O-1", "O-2")
        async with session_factory() as session:
            session.add_all([
                Return(order_id="O-1", master_sku="SKU-A", return_date=datetime(2024, 1, 3)),
                Return(order_id="O-2", master_sku="SKU-A", return_date=datetime(2024, 1, 3),
                       refund_amount=Decimal("5.00")),
            ])
            await session.commit()
        finances = FakeFinances(page(refunds=[refund_event("O-1"), refund_event("O-2")]))

        result = await make_reconciler(finances, session_factory).run(start=START, end=ONE_WINDOW_END)

        assert result.refunds_backfilled == 1
        async with session_factory() as session:
            refunds = {r.order_id: r.refund_amount for r in (await session.execute(select(Return))).scalars()}
        assert refunds == {"O-1": Decimal("10.00"), "O-2": Decimal("5.00")}

    async def test_failed_run_keeps_aggregated_pages(self, session_factory, seeded_catalog):
        """Pages read before an unexpected vendor error still reach the database"""
        await seed_orders(session_factory, "O-1")
        finances = FakeFinances(
            page(shipment_event("O-1"), next_token="t1"),
            VendorServerError("upstream error", status_code=503),
        )
        reconciler = make_reconciler(finances, session_factory, flush_every_page=False, flush_threshold=1000)

        with pytest.raises(VendorServerError):
            await reconciler.run(start=START, end=ONE_WINDOW_END)

        item = await load_item(session_factory, "O-1")
        assert item.referral_fee == Decimal("1.50")
        assert item.fees_posted_at is not None
        async with session_factory() as session:
            log = (await session.execute(select(SyncLog))).scalar_one()
        assert log.status == SyncStatus.FAILED
        assert log.records_updated == 1

    async def test_unmatched_keys_are_counted(self, session_factory, seeded_catalog):
        """Events for orders not yet synced are reported as unmatched"""
        finances = FakeFinances(page(shipment_event("UNKNOWN")))

        result = await make_reconciler(finances, session_factory).run(start=START, end=ONE_WINDOW_END)

        assert result.items_unmatched == 1
        assert result.items_updated == 0

    async def test_cancelled_before_first_page(self, session_factory, seeded_catalog):
        """A cancelled token ends the run without calling the vendor"""
        token = CancellationToken()
        token.cancel()
        finances = FakeFinances()

        result = await make_reconciler(finances, session_factory).run(start=START, end=ONE_WINDOW_END, token=token)

        assert result.status == SyncStatus.CANCELLED
        assert finances.calls == []
        async with session_factory() as session:
            log = await session.get(SyncLog, result.sync_log_id)
        assert log.status == SyncStatus.CANCELLED
