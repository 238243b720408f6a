"""
Financial Event Reconciler

Walks the cursor-paginated financial event feed window by window and
overlays settlement data onto order items:

- Fee lines are classified into referral / fulfillment / weight-handling /
  closing / other by substring match on the vendor fee type
- Charge lines are classified into item price / shipping / gift wrap / tax
- Promotions are netted out of revenue
- Refund events backfill ``Return.refund_amount`` where it is still unset

Aggregates are held per (order id, SKU) and per window, and flushed
incrementally (every page or every N dirty keys). Before waiting on a rate
limit or abandoning an expired pagination token the accumulated state is
flushed, so at most the in-flight part of one window is ever at risk.
Flushes write absolute aggregates rather than increments, which makes
restarting a window and re-flushing safe.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, NamedTuple, Optional, Set

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sellerops.amazon.finances import FinancesClient, FinancialEventsPage
from sellerops.config import get_settings
from sellerops.database.connection import session_scope
from sellerops.database.models import ZERO, OrderItem, Return, SyncLog, SyncStatus, SyncType, validate_transition
from sellerops.errors import RateLimitedError, TokenExpiredError
from sellerops.jobs.cancellation import CancellationToken, pause
from sellerops.sync.order_upserts import refine_amount
from sellerops.timeutils import isoformat_z, parse_timestamp, utcnow

logger = structlog.get_logger(__name__)
settings = get_settings()

# Events posted in the last few minutes are not yet queryable
POSTED_BEFORE_MARGIN = timedelta(minutes=5)


class FeeCategory(str, Enum):
    REFERRAL = "referral"
    FULFILLMENT = "fulfillment"
    WEIGHT_HANDLING = "weight_handling"
    CLOSING = "closing"
    OTHER = "other"


class ChargeCategory(str, Enum):
    ITEM_PRICE = "item_price"
    SHIPPING = "shipping"
    GIFT_WRAP = "gift_wrap"
    TAX = "tax"
    OTHER = "other"


class WindowOutcome(str, Enum):
    COMPLETED = "completed"
    DEFERRED = "deferred"
    FAILED = "failed"
    CANCELLED = "cancelled"


def classify_fee(fee_type: Optional[str]) -> FeeCategory:
    """
    Map a vendor fee type onto a bucket.

    Weight-based FBA fees must be matched before the generic FBA check.
    """
    text = (fee_type or "").lower()
    if "closing" in text:
        return FeeCategory.CLOSING
    if "weight" in text:
        return FeeCategory.WEIGHT_HANDLING
    if "commission" in text or "referral" in text:
        return FeeCategory.REFERRAL
    if "fba" in text or "fulfillment" in text or "pick" in text or "pack" in text:
        return FeeCategory.FULFILLMENT
    return FeeCategory.OTHER


def classify_charge(charge_type: Optional[str]) -> ChargeCategory:
    text = (charge_type or "").lower()
    if "tax" in text:
        return ChargeCategory.TAX
    if "giftwrap" in text or "gift wrap" in text:
        return ChargeCategory.GIFT_WRAP
    if "shipping" in text:
        return ChargeCategory.SHIPPING
    if "principal" in text:
        return ChargeCategory.ITEM_PRICE
    return ChargeCategory.OTHER


def _amount(block: Optional[Dict[str, Any]]) -> Decimal:
    if not block:
        return ZERO
    try:
        return Decimal(str(block.get("CurrencyAmount") or "0"))
    except ArithmeticError:
        return ZERO


class OrderSkuKey(NamedTuple):
    order_id: str
    sku: str


@dataclass
class ItemFinancials:
    """Aggregated settlement figures for one (order, SKU)"""
    fees: Dict[FeeCategory, Decimal] = field(default_factory=dict)
    charges: Dict[ChargeCategory, Decimal] = field(default_factory=dict)
    promotions: Decimal = ZERO
    refund: Decimal = ZERO
    posted_at: Optional[datetime] = None

    def add_fee(self, category: FeeCategory, amount: Decimal) -> None:
        self.fees[category] = self.fees.get(category, ZERO) + abs(amount)

    def add_charge(self, category: ChargeCategory, amount: Decimal) -> None:
        if amount > 0:
            self.charges[category] = self.charges.get(category, ZERO) + amount

    def touch(self, posted_at: Optional[datetime]) -> None:
        if posted_at and (self.posted_at is None or posted_at > self.posted_at):
            self.posted_at = posted_at

    def merge(self, other: "ItemFinancials") -> "ItemFinancials":
        for category, amount in other.fees.items():
            self.fees[category] = self.fees.get(category, ZERO) + amount
        for category, amount in other.charges.items():
            self.charges[category] = self.charges.get(category, ZERO) + amount
        self.promotions += other.promotions
        self.refund += other.refund
        self.touch(other.posted_at)
        return self

    def _fee(self, *categories: FeeCategory) -> Decimal:
        return sum((self.fees.get(c, ZERO) for c in categories), ZERO)

    @property
    def referral_fee(self) -> Decimal:
        return self._fee(FeeCategory.REFERRAL)

    @property
    def fba_fee(self) -> Decimal:
        return self._fee(FeeCategory.FULFILLMENT, FeeCategory.WEIGHT_HANDLING)

    @property
    def other_fees(self) -> Decimal:
        return self._fee(FeeCategory.CLOSING, FeeCategory.OTHER)

    @property
    def has_item_data(self) -> bool:
        return bool(self.fees or self.charges or self.promotions)

    @property
    def actual_revenue(self) -> Decimal:
        """Item + shipping + gift wrap, net of promotions; tax excluded"""
        gross = (
            self.charges.get(ChargeCategory.ITEM_PRICE, ZERO)
            + self.charges.get(ChargeCategory.SHIPPING, ZERO)
            + self.charges.get(ChargeCategory.GIFT_WRAP, ZERO)
        )
        return gross - abs(self.promotions)


def apply_financials(item: OrderItem, fin: ItemFinancials, now: Optional[datetime] = None) -> bool:
    """
    Overlay settlement figures onto an order item without regressing it.

    A non-zero figure replaces the stored one; a zero never does.

    Returns:
        True if anything was applied
    """
    now = now or utcnow()
    applied = False
    if fin.fees:
        item.referral_fee = refine_amount(item.referral_fee, fin.referral_fee)
        item.fba_fee = refine_amount(item.fba_fee, fin.fba_fee)
        item.other_fees = refine_amount(item.other_fees, fin.other_fees)
        item.fees_posted_at = fin.posted_at or now
        applied = True
    if fin.charges:
        item.item_price = refine_amount(item.item_price, fin.charges.get(ChargeCategory.ITEM_PRICE))
        item.shipping_price = refine_amount(item.shipping_price, fin.charges.get(ChargeCategory.SHIPPING))
        item.gift_wrap_price = refine_amount(item.gift_wrap_price, fin.charges.get(ChargeCategory.GIFT_WRAP))
        item.item_tax = refine_amount(item.item_tax, fin.charges.get(ChargeCategory.TAX))
    if fin.promotions:
        item.promo_discount = refine_amount(item.promo_discount, abs(fin.promotions))
    revenue = fin.actual_revenue
    if revenue > 0:
        item.actual_revenue = revenue
        item.actual_revenue_posted_at = fin.posted_at or now
        applied = True
    item.recompute_totals()
    return applied


@dataclass(frozen=True)
class FinanceWindow:
    index: int
    start: datetime
    end: datetime


def plan_windows(start: datetime, end: datetime, window_days: int) -> List[FinanceWindow]:
    windows = []
    cursor = start
    while cursor < end:
        window_end = min(cursor + timedelta(days=window_days), end)
        windows.append(FinanceWindow(len(windows), cursor, window_end))
        cursor = window_end
    return windows


@dataclass
class FinancialSyncResult:
    sync_log_id: int
    status: SyncStatus
    windows: int = 0
    windows_failed: int = 0
    pages: int = 0
    events: int = 0
    items_updated: int = 0
    items_unmatched: int = 0
    refunds_backfilled: int = 0
    flushes: int = 0
    rate_limit_restarts: int = 0
    error_message: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sync_log_id": self.sync_log_id,
            "status": self.status.value,
            "windows": self.windows,
            "windows_failed": self.windows_failed,
            "pages": self.pages,
            "events": self.events,
            "items_updated": self.items_updated,
            "items_unmatched": self.items_unmatched,
            "refunds_backfilled": self.refunds_backfilled,
            "flushes": self.flushes,
            "rate_limit_restarts": self.rate_limit_restarts,
            "error_message": self.error_message,
        }


class FinancialEventReconciler:
    """
    Incremental, flush-on-failure financial event sync.

    One instance serves one run; all accumulation state is per instance.

    Example:
        reconciler = FinancialEventReconciler(FinancesClient(client), session_factory)
        result = await reconciler.run(days=30)
    """

    def __init__(
        self,
        finances: FinancesClient,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        window_days: Optional[int] = None,
        page_delay: Optional[float] = None,
        window_delay: Optional[float] = None,
        rate_limit_wait: Optional[float] = None,
        flush_threshold: Optional[int] = None,
        flush_every_page: Optional[bool] = None,
        max_rate_limit_restarts: Optional[int] = None,
        on_token_expired: Optional[Callable[[], None]] = None,
    ):
        sync = settings.sync
        self.finances = finances
        self.session_factory = session_factory
        self.window_days = window_days or sync.finance_window_days
        self.page_delay = sync.finance_page_delay_seconds if page_delay is None else page_delay
        self.window_delay = sync.finance_window_delay_seconds if window_delay is None else window_delay
        self.rate_limit_wait = sync.finance_rate_limit_wait_seconds if rate_limit_wait is None else rate_limit_wait
        self.flush_threshold = flush_threshold or sync.finance_flush_threshold
        self.flush_every_page = sync.finance_flush_every_page if flush_every_page is None else flush_every_page
        self.max_rate_limit_restarts = (
            sync.finance_max_rate_limit_restarts if max_rate_limit_restarts is None else max_rate_limit_restarts
        )
        self.on_token_expired = on_token_expired

        self._by_window: Dict[int, Dict[OrderSkuKey, ItemFinancials]] = {}
        self._dirty: Set[OrderSkuKey] = set()
        self._written: Set[OrderSkuKey] = set()
        self._unmatched: Set[OrderSkuKey] = set()
        self._refund_rows: Set[int] = set()
        self._result: Optional[FinancialSyncResult] = None

    # =========================================================================
    # ACCUMULATION
    # =========================================================================

    def _entry(self, window: FinanceWindow, key: OrderSkuKey) -> ItemFinancials:
        totals = self._by_window.setdefault(window.index, {})
        if key not in totals:
            totals[key] = ItemFinancials()
        self._dirty.add(key)
        return totals[key]

    def accumulate(self, window: FinanceWindow, page: FinancialEventsPage) -> None:
        """Fold one page of events into the window's aggregates."""
        for event in page.shipment_events:
            order_id = event.get("AmazonOrderId")
            posted_at = parse_timestamp(event.get("PostedDate"))
            for line in event.get("ShipmentItemList") or []:
                sku = line.get("SellerSKU")
                if not order_id or not sku:
                    continue
                entry = self._entry(window, OrderSkuKey(order_id, sku))
                entry.touch(posted_at)
                for fee in line.get("ItemFeeList") or []:
                    entry.add_fee(classify_fee(fee.get("FeeType")), _amount(fee.get("FeeAmount")))
                for charge in line.get("ItemChargeList") or []:
                    entry.add_charge(classify_charge(charge.get("ChargeType")), _amount(charge.get("ChargeAmount")))
                for promo in line.get("PromotionList") or []:
                    entry.promotions += abs(_amount(promo.get("PromotionAmount")))

        for event in page.refund_events:
            order_id = event.get("AmazonOrderId")
            posted_at = parse_timestamp(event.get("PostedDate"))
            for line in event.get("ShipmentItemAdjustmentList") or []:
                sku = line.get("SellerSKU")
                if not order_id or not sku:
                    continue
                refunded = sum(
                    (
                        _amount(adj.get("ChargeAmount"))
                        for adj in line.get("ItemChargeAdjustmentList") or []
                        if classify_charge(adj.get("ChargeType")) != ChargeCategory.TAX
                    ),
                    ZERO,
                )
                if refunded:
                    entry = self._entry(window, OrderSkuKey(order_id, sku))
                    entry.refund += abs(refunded)
                    entry.touch(posted_at)

    def combined(self, key: OrderSkuKey) -> ItemFinancials:
        """Run-wide aggregate for ``key`` across every window seen so far."""
        total = ItemFinancials()
        for totals in self._by_window.values():
            if key in totals:
                total.merge(totals[key])
        return total

    @property
    def pending_keys(self) -> int:
        return len(self._dirty)

    # =========================================================================
    # FLUSH
    # =========================================================================

    async def flush(self) -> int:
        """
        Persist aggregates for every dirty key in one transaction.

        Returns:
            Number of order items updated by this flush
        """
        if not self._dirty:
            return 0
        keys = list(self._dirty)
        order_ids = sorted({k.order_id for k in keys})
        now = utcnow()
        updated = 0
        refunds = 0

        async with session_scope(self.session_factory) as session:
            items: Dict[OrderSkuKey, OrderItem] = {}
            returns: Dict[OrderSkuKey, List[Return]] = {}
            for start in range(0, len(order_ids), 500):
                chunk = order_ids[start:start + 500]
                result = await session.execute(select(OrderItem).where(OrderItem.order_id.in_(chunk)))
                for item in result.scalars().all():
                    items[OrderSkuKey(item.order_id, item.master_sku)] = item
                result = await session.execute(
                    select(Return).where(Return.order_id.in_(chunk)).order_by(Return.return_date)
                )
                for row in result.scalars().all():
                    returns.setdefault(OrderSkuKey(row.order_id, row.master_sku), []).append(row)

            for key in keys:
                fin = self.combined(key)
                if fin.has_item_data:
                    item = items.get(key)
                    if item is None:
                        self._unmatched.add(key)
                    elif apply_financials(item, fin, now):
                        self._written.add(key)
                        self._unmatched.discard(key)
                        updated += 1
                if fin.refund:
                    refunds += self._backfill_refund(returns.get(key, []), fin, now)

        self._dirty.clear()
        if self._result is not None:
            self._result.flushes += 1
            self._result.refunds_backfilled += refunds
        logger.debug("Flushed financial aggregates", keys=len(keys), items_updated=updated, refunds=refunds)
        return updated

    def _backfill_refund(self, rows: Iterable[Return], fin: ItemFinancials, now: datetime) -> int:
        """Only unset refunds, or ones this run wrote itself, are touched."""
        for row in rows:
            if row.id in self._refund_rows or not row.refund_amount:
                if row.refund_amount != fin.refund:
                    row.refund_amount = fin.refund
                    row.refund_posted_at = fin.posted_at or now
                new = row.id not in self._refund_rows
                self._refund_rows.add(row.id)
                return 1 if new else 0
        return 0

    # =========================================================================
    # WINDOWS
    # =========================================================================

    async def _sync_window(self, window: FinanceWindow, token: Optional[CancellationToken]) -> WindowOutcome:
        result = self._result
        restarts = 0
        while True:
            # restarting recomputes the window's aggregates from scratch
            self._by_window[window.index] = {}
            next_token: Optional[str] = None
            try:
                while True:
                    if token is not None and await token.is_cancelled():
                        await self.flush()
                        return WindowOutcome.CANCELLED

                    page = await self.finances.list_financial_events(window.start, window.end, next_token)
                    self.accumulate(window, page)
                    result.pages += 1
                    result.events += page.event_count

                    if self.flush_every_page or len(self._dirty) >= self.flush_threshold:
                        await self.flush()

                    next_token = page.next_token
                    if not next_token:
                        break
                    if await pause(self.page_delay, token):
                        await self.flush()
                        return WindowOutcome.CANCELLED

                await self.flush()
                return WindowOutcome.COMPLETED

            except RateLimitedError as e:
                await self.flush()
                restarts += 1
                result.rate_limit_restarts += 1
                if restarts > self.max_rate_limit_restarts:
                    logger.error(
                        "Finance window still rate limited, giving up on it",
                        start=isoformat_z(window.start),
                        end=isoformat_z(window.end),
                        restarts=restarts - 1,
                    )
                    return WindowOutcome.FAILED
                wait = max(e.retry_after or 0, self.rate_limit_wait)
                logger.warning(
                    "Finance window rate limited, flushed and restarting",
                    start=isoformat_z(window.start),
                    restart=restarts,
                    wait_seconds=wait,
                )
                if await pause(wait, token):
                    return WindowOutcome.CANCELLED

            except TokenExpiredError:
                await self.flush()
                if self.on_token_expired is not None:
                    self.on_token_expired()
                logger.warning(
                    "Pagination token expired, deferring window",
                    start=isoformat_z(window.start),
                    end=isoformat_z(window.end),
                )
                return WindowOutcome.DEFERRED

    async def run(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        days: Optional[int] = None,
        token: Optional[CancellationToken] = None,
        on_progress: Optional[Callable[[Dict[str, Any]], Any]] = None,
    ) -> FinancialSyncResult:
        """
        Sync events posted in ``[start, end]`` (default: the configured look-back).

        Token-expired windows get one more pass after the main loop.
        """
        latest = utcnow() - POSTED_BEFORE_MARGIN
        end = min(end or latest, latest)
        start = start or end - timedelta(days=days or settings.sync.finance_lookback_days)
        windows = plan_windows(start, end, self.window_days)

        log_id = await self._start_log(start, end, len(windows))
        result = self._result = FinancialSyncResult(sync_log_id=log_id, status=SyncStatus.RUNNING, windows=len(windows))
        logger.info("Financial events sync started", sync_log_id=log_id, start=isoformat_z(start), end=isoformat_z(end), windows=len(windows))

        deferred: List[FinanceWindow] = []
        try:
            cancelled = False
            for position, window in enumerate(windows):
                outcome = await self._sync_window(window, token)
                if outcome == WindowOutcome.CANCELLED:
                    cancelled = True
                    break
                if outcome == WindowOutcome.DEFERRED:
                    deferred.append(window)
                elif outcome == WindowOutcome.FAILED:
                    result.windows_failed += 1

                if on_progress is not None:
                    await on_progress({"window": position + 1, "windows": len(windows), **result.as_dict()})
                if position + 1 < len(windows) and await pause(self.window_delay, token):
                    cancelled = True
                    break

            if not cancelled:
                for window in deferred:
                    outcome = await self._sync_window(window, token)
                    if outcome == WindowOutcome.CANCELLED:
                        cancelled = True
                        break
                    if outcome != WindowOutcome.COMPLETED:
                        result.windows_failed += 1

            await self.flush()
        except Exception as e:
            logger.error("Financial events sync failed", sync_log_id=log_id, error=str(e), error_type=type(e).__name__)
            result.error_message = str(e)
            # keep the pages already aggregated
            try:
                await self.flush()
            finally:
                await self._finish_log(result, SyncStatus.FAILED)
            raise

        await self._finish_log(result, SyncStatus.CANCELLED if cancelled else SyncStatus.SUCCESS)
        logger.info("Financial events sync finished", **result.as_dict())
        return result

    async def _start_log(self, start: datetime, end: datetime, windows: int) -> int:
        async with session_scope(self.session_factory) as session:
            log = SyncLog(
                sync_type=SyncType.FINANCIAL_EVENTS.value,
                status=SyncStatus.RUNNING,
                run_metadata={"start": isoformat_z(start), "end": isoformat_z(end), "windows": windows},
            )
            session.add(log)
            await session.flush()
            return log.id

    async def _finish_log(self, result: FinancialSyncResult, status: SyncStatus) -> None:
        result.status = status
        result.items_updated = len(self._written)
        result.items_unmatched = len(self._unmatched)
        async with session_scope(self.session_factory) as session:
            log = await session.get(SyncLog, result.sync_log_id)
            log.status = validate_transition(log.status, status)
            log.completed_at = utcnow()
            log.records_processed = result.events
            log.records_updated = result.items_updated
            log.records_skipped = result.items_unmatched
            log.records_failed = result.windows_failed
            log.error_message = result.error_message
            log.run_metadata = {**(log.run_metadata or {}), **result.as_dict()}
