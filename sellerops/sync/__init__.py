"""
Sync Module

Long-running, resumable syncs of vendor state into the local database:
- Batched historical and recent order sync
- Incremental financial event reconciliation
- FBA inventory, inbound shipments and customer returns
- Re-pricing of unpriced orders and daily profit aggregation
"""
from .base import SyncRunResult
from .fba_shipments import FbaShipmentSync
from .financial_events import FinancialEventReconciler, FinancialSyncResult
from .historical import (
    BatchProgress,
    BatchState,
    HistoricalOrderSync,
    HistoricalSyncResult,
    RecentOrdersSync,
    SyncDirection,
    plan_batches,
)
from .inventory import InventorySync
from .order_upserts import OrderUpserter, UpsertStats
from .pending_reports import PendingReportStore, fetch_checkpointed_report
from .profit import ProfitAggregator
from .resync_pending import ResyncPendingOrders
from .returns import ReturnsSync

__all__ = [
    "SyncRunResult",
    "FbaShipmentSync",
    "FinancialEventReconciler",
    "FinancialSyncResult",
    "BatchProgress",
    "BatchState",
    "HistoricalOrderSync",
    "HistoricalSyncResult",
    "RecentOrdersSync",
    "SyncDirection",
    "plan_batches",
    "InventorySync",
    "OrderUpserter",
    "UpsertStats",
    "PendingReportStore",
    "fetch_checkpointed_report",
    "ProfitAggregator",
    "ResyncPendingOrders",
    "ReturnsSync",
]
