"""
Database Models

Relational model for the seller operations backend. Tables group into:

Catalog & Sales:
- Product: catalog keyed by seller SKU
- Order / OrderItem: vendor orders, one item row per (order, SKU)
- Return: customer returns with backfilled refund amounts
- DailyProfit: re-aggregated (date, SKU) profit projection

Inventory:
- Warehouse / WarehouseInventory: local stock per warehouse
- InventoryLevel: cross-warehouse and FBA totals per SKU
- InventoryAdjustment: append-only audit log, also the idempotency record
- FbaShipment / FbaShipmentItem: inbound shipments awaiting reconciliation

Sync bookkeeping:
- SyncLog: one sync run, its counters and resumption checkpoint
- PendingReport: outstanding vendor report ids and the window they cover
- SyncJob: durable job queue entries

Every status column is a closed enum with an explicit transition table.
"""

from datetime import datetime, date
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum as SQLEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from sellerops.errors import InvalidTransitionError
from sellerops.timeutils import utcnow

ZERO = Decimal("0")


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# =============================================================================
# ENUMERATIONS
# =============================================================================

class OrderStatus(str, Enum):
    """Vendor order lifecycle"""
    PENDING = "Pending"
    UNSHIPPED = "Unshipped"
    PARTIALLY_SHIPPED = "PartiallyShipped"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    RETURNED = "Returned"


class FulfillmentChannel(str, Enum):
    """Who ships the order"""
    FBA = "FBA"
    MFN = "MFN"


class ReconciliationStatus(str, Enum):
    """FBA shipment reconciliation state"""
    PENDING = "pending"
    ACCEPTED = "accepted"
    DEDUCTED = "deducted"


class SyncStatus(str, Enum):
    """Sync run state"""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PendingReportStatus(str, Enum):
    """Outstanding vendor report state"""
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class JobStatus(str, Enum):
    """Queue job state"""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncType(str, Enum):
    """Sync run kinds recorded in SyncLog"""
    HISTORICAL_ORDERS = "historical_orders"
    RECENT_ORDERS = "recent_orders"
    FINANCIAL_EVENTS = "financial_events"
    INVENTORY = "inventory"
    FBA_SHIPMENTS = "fba_shipments"
    RETURNS = "returns"
    RESYNC_PENDING = "resync_pending"
    PROFIT_AGGREGATION = "profit_aggregation"


# =============================================================================
# STATE TRANSITIONS
# =============================================================================

_FINAL: FrozenSet = frozenset()

TRANSITIONS: Dict[type, Dict[Enum, FrozenSet]] = {
    OrderStatus: {
        OrderStatus.PENDING: frozenset({
            OrderStatus.UNSHIPPED, OrderStatus.PARTIALLY_SHIPPED, OrderStatus.SHIPPED,
            OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.RETURNED,
        }),
        OrderStatus.UNSHIPPED: frozenset({
            OrderStatus.PARTIALLY_SHIPPED, OrderStatus.SHIPPED, OrderStatus.DELIVERED,
            OrderStatus.CANCELLED, OrderStatus.RETURNED,
        }),
        OrderStatus.PARTIALLY_SHIPPED: frozenset({
            OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.RETURNED,
        }),
        OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.RETURNED}),
        OrderStatus.DELIVERED: frozenset({OrderStatus.RETURNED}),
        OrderStatus.CANCELLED: _FINAL,
        OrderStatus.RETURNED: _FINAL,
    },
    ReconciliationStatus: {
        ReconciliationStatus.PENDING: frozenset({ReconciliationStatus.ACCEPTED, ReconciliationStatus.DEDUCTED}),
        # accepted had no side effect, so it can be reopened
        ReconciliationStatus.ACCEPTED: frozenset({ReconciliationStatus.PENDING}),
        ReconciliationStatus.DEDUCTED: _FINAL,
    },
    SyncStatus: {
        SyncStatus.RUNNING: frozenset({SyncStatus.SUCCESS, SyncStatus.FAILED, SyncStatus.CANCELLED}),
        SyncStatus.CANCELLED: frozenset({SyncStatus.RUNNING}),
        SyncStatus.SUCCESS: _FINAL,
        SyncStatus.FAILED: _FINAL,
    },
    PendingReportStatus: {
        PendingReportStatus.PENDING: frozenset({PendingReportStatus.DONE, PendingReportStatus.FAILED}),
        PendingReportStatus.DONE: _FINAL,
        PendingReportStatus.FAILED: _FINAL,
    },
    JobStatus: {
        JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
        JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.QUEUED, JobStatus.CANCELLED}),
        JobStatus.COMPLETED: _FINAL,
        JobStatus.FAILED: _FINAL,
        JobStatus.CANCELLED: _FINAL,
    },
}


def can_transition(current: Enum, target: Enum) -> bool:
    """True when ``current -> target`` is a legal move for the enum's entity."""
    table = TRANSITIONS[type(current)]
    return target in table[current]


def validate_transition(current: Enum, target: Enum) -> Enum:
    """Return ``target`` or raise InvalidTransitionError."""
    if not can_transition(current, target):
        raise InvalidTransitionError(type(current).__name__, current, target)
    return target


# =============================================================================
# CATALOG & SALES
# =============================================================================

class Product(Base):
    """
    Catalog entry keyed by seller SKU.

    Rows created by order ingestion for unknown SKUs are placeholders
    (inactive, zero cost) that catalog syncs later backfill.
    """
    __tablename__ = "products"

    sku: Mapped[str] = mapped_column(String(100), primary_key=True)
    asin: Mapped[Optional[str]] = mapped_column(String(20))
    fnsku: Mapped[Optional[str]] = mapped_column(String(20), index=True)
    title: Mapped[Optional[str]] = mapped_column(String(500))
    cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_hidden: Mapped[bool] = mapped_column(Boolean, default=False)
    is_placeholder: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class Order(Base):
    """Vendor order header keyed by the vendor's order id"""
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    purchase_date: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    ship_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    status: Mapped[OrderStatus] = mapped_column(SQLEnum(OrderStatus), default=OrderStatus.PENDING)
    fulfillment_channel: Mapped[FulfillmentChannel] = mapped_column(
        SQLEnum(FulfillmentChannel), default=FulfillmentChannel.FBA
    )
    sales_channel: Mapped[Optional[str]] = mapped_column(String(50))
    order_total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    currency: Mapped[Optional[str]] = mapped_column(String(3))

    ship_city: Mapped[Optional[str]] = mapped_column(String(100))
    ship_state: Mapped[Optional[str]] = mapped_column(String(100))
    ship_postal_code: Mapped[Optional[str]] = mapped_column(String(20))
    ship_country: Mapped[Optional[str]] = mapped_column(String(2))

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    items: Mapped[List["OrderItem"]] = relationship(back_populates="order")

    __table_args__ = (
        Index("ix_orders_status_purchase", "status", "purchase_date"),
    )


class OrderItem(Base):
    """
    One row per distinct SKU within an order.

    Money fields are refined monotonically: a later source only replaces a
    zero value or supplies a non-zero authoritative amount.
    """
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(50), ForeignKey("orders.id"), nullable=False)
    master_sku: Mapped[str] = mapped_column(String(100), ForeignKey("products.sku"), nullable=False)
    asin: Mapped[Optional[str]] = mapped_column(String(20))
    quantity: Mapped[int] = mapped_column(Integer, default=1)

    # Charges
    item_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    item_tax: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    shipping_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    shipping_tax: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    gift_wrap_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    gift_wrap_tax: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    promo_discount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    ship_promo_discount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    gross_revenue: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)

    # Amazon-deducted fees
    referral_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    fba_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    other_fees: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    amazon_fees: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    fees_posted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Settlement-side revenue from financial events
    actual_revenue: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    actual_revenue_posted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    order: Mapped["Order"] = relationship(back_populates="items")

    __table_args__ = (
        UniqueConstraint("order_id", "master_sku", name="uq_order_items_order_sku"),
        Index("ix_order_items_sku", "master_sku"),
    )

    def recompute_totals(self) -> None:
        """Derive gross revenue and total fees from their components."""
        self.gross_revenue = (
            (self.item_price or ZERO)
            + (self.shipping_price or ZERO)
            + (self.gift_wrap_price or ZERO)
            - (self.promo_discount or ZERO)
            - (self.ship_promo_discount or ZERO)
        )
        self.amazon_fees = (self.referral_fee or ZERO) + (self.fba_fee or ZERO) + (self.other_fees or ZERO)


class Return(Base):
    """Customer return; refund amount is backfilled from refund events"""
    __tablename__ = "returns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    master_sku: Mapped[str] = mapped_column(String(100), nullable=False)
    return_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    reason: Mapped[Optional[str]] = mapped_column(String(200))
    disposition: Mapped[Optional[str]] = mapped_column(String(100))
    status: Mapped[Optional[str]] = mapped_column(String(100))
    license_plate_number: Mapped[Optional[str]] = mapped_column(String(50))
    refund_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=ZERO)
    refund_posted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("order_id", "master_sku", "return_date", name="uq_returns_order_sku_date"),
    )


class DailyProfit(Base):
    """Idempotent (date, SKU) projection rebuilt from order items"""
    __tablename__ = "daily_profit"

    profit_date: Mapped[date] = mapped_column("date", Date, primary_key=True)
    master_sku: Mapped[str] = mapped_column(String(100), primary_key=True)
    units_sold: Mapped[int] = mapped_column(Integer, default=0)
    order_count: Mapped[int] = mapped_column(Integer, default=0)
    revenue: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=ZERO)
    amazon_fees: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=ZERO)
    cogs: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=ZERO)
    promo_discounts: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=ZERO)
    gross_profit: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=ZERO)
    net_profit: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=ZERO)
    profit_margin: Mapped[Decimal] = mapped_column(Numeric(8, 2), default=ZERO)
    computed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


# =============================================================================
# INVENTORY
# =============================================================================

class Warehouse(Base):
    """Local (non-FBA) stock location"""
    __tablename__ = "warehouses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)


class WarehouseInventory(Base):
    """On-hand quantity for a SKU in one warehouse; never negative"""
    __tablename__ = "warehouse_inventory"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    warehouse_id: Mapped[int] = mapped_column(Integer, ForeignKey("warehouses.id"), nullable=False)
    master_sku: Mapped[str] = mapped_column(String(100), nullable=False)
    available: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("warehouse_id", "master_sku", name="uq_warehouse_inventory_sku"),
    )


class InventoryLevel(Base):
    """Cross-warehouse and FBA totals per SKU"""
    __tablename__ = "inventory_levels"

    master_sku: Mapped[str] = mapped_column(String(100), primary_key=True)
    fba_available: Mapped[int] = mapped_column(Integer, default=0)
    fba_inbound: Mapped[int] = mapped_column(Integer, default=0)
    fba_reserved: Mapped[int] = mapped_column(Integer, default=0)
    warehouse_available: Mapped[int] = mapped_column(Integer, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class InventoryAdjustment(Base):
    """
    Append-only inventory audit log.

    (master_sku, adjustment_type, reference) is unique, which makes the row
    itself the idempotency record for reference-carrying mutations.
    """
    __tablename__ = "inventory_adjustments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    master_sku: Mapped[str] = mapped_column(String(100), nullable=False)
    warehouse_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("warehouses.id"))
    location: Mapped[str] = mapped_column(String(50), default="warehouse")
    adjustment_type: Mapped[str] = mapped_column(String(50), nullable=False)
    quantity_change: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_before: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_after: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    reference: Mapped[Optional[str]] = mapped_column(String(100))
    created_by: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("master_sku", "adjustment_type", "reference", name="uq_inventory_adjustment_reference"),
        Index("ix_inventory_adjustments_reference", "reference"),
    )


class FbaShipment(Base):
    """Inbound shipment to a fulfillment center"""
    __tablename__ = "fba_shipments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shipment_id: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    shipment_name: Mapped[Optional[str]] = mapped_column(String(200))
    destination_fc: Mapped[Optional[str]] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(30), default="working")
    created_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    total_units_shipped: Mapped[int] = mapped_column(Integer, default=0)
    total_units_received: Mapped[int] = mapped_column(Integer, default=0)

    reconciliation_status: Mapped[ReconciliationStatus] = mapped_column(
        SQLEnum(ReconciliationStatus), default=ReconciliationStatus.PENDING, nullable=False
    )
    reconciled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    reconciled_by: Mapped[Optional[str]] = mapped_column(String(100))
    deducted_from_warehouse_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("warehouses.id"))
    inventory_deducted: Mapped[bool] = mapped_column(Boolean, default=False)
    reconciliation_notes: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    items: Mapped[List["FbaShipmentItem"]] = relationship(
        back_populates="shipment", cascade="all, delete-orphan"
    )


class FbaShipmentItem(Base):
    """Shipment line; master_sku is null when no catalog row matched"""
    __tablename__ = "fba_shipment_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    shipment_pk: Mapped[int] = mapped_column(Integer, ForeignKey("fba_shipments.id"), nullable=False)
    seller_sku: Mapped[str] = mapped_column(String(100), nullable=False)
    master_sku: Mapped[Optional[str]] = mapped_column(String(100))
    fnsku: Mapped[Optional[str]] = mapped_column(String(20))
    quantity_shipped: Mapped[int] = mapped_column(Integer, default=0)
    quantity_received: Mapped[int] = mapped_column(Integer, default=0)

    shipment: Mapped["FbaShipment"] = relationship(back_populates="items")

    __table_args__ = (
        UniqueConstraint("shipment_pk", "seller_sku", name="uq_fba_shipment_items_sku"),
    )


# =============================================================================
# SYNC BOOKKEEPING
# =============================================================================

class SyncLog(Base):
    """
    One sync run.

    ``run_metadata`` carries run parameters and, for resumable runs, the
    checkpoint (next batch index, per-batch results, anchor timestamp).
    """
    __tablename__ = "sync_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sync_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[SyncStatus] = mapped_column(SQLEnum(SyncStatus), default=SyncStatus.RUNNING, nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    records_processed: Mapped[int] = mapped_column(Integer, default=0)
    records_created: Mapped[int] = mapped_column(Integer, default=0)
    records_updated: Mapped[int] = mapped_column(Integer, default=0)
    records_skipped: Mapped[int] = mapped_column(Integer, default=0)
    records_failed: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    run_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON)

    __table_args__ = (
        Index("ix_sync_logs_type_started", "sync_type", "started_at"),
    )


class PendingReport(Base):
    """Outstanding vendor report; the cross-invocation resumption checkpoint"""
    __tablename__ = "pending_reports"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    report_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    report_type: Mapped[str] = mapped_column(String(100), nullable=False)
    data_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    data_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[PendingReportStatus] = mapped_column(
        SQLEnum(PendingReportStatus), default=PendingReportStatus.PENDING, nullable=False
    )
    document_id: Mapped[Optional[str]] = mapped_column(String(200))
    failure_reason: Mapped[Optional[str]] = mapped_column(Text)
    sync_log_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("sync_logs.id"))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_pending_reports_window", "report_type", "data_start", "data_end", "status"),
    )


class SyncJob(Base):
    """Durable queue entry; also owns the per-run progress of its job"""
    __tablename__ = "sync_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[Optional[dict]] = mapped_column(JSON)
    status: Mapped[JobStatus] = mapped_column(SQLEnum(JobStatus), default=JobStatus.QUEUED, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    backoff_seconds: Mapped[float] = mapped_column(Float, default=5.0)
    available_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    progress: Mapped[Optional[dict]] = mapped_column(JSON)
    logs: Mapped[Optional[list]] = mapped_column(JSON)
    result: Mapped[Optional[dict]] = mapped_column(JSON)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    worker_id: Mapped[Optional[str]] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_sync_jobs_claim", "status", "priority", "available_at"),
    )
