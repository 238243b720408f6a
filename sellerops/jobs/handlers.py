"""
Job Handlers

One coroutine per job type. Each builds its service from settings, runs it
with the job's cancellation token and returns a JSON-safe result dict that
the worker stores on the job row.
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sellerops.amazon import (
    FinancesClient,
    FulfillmentInboundClient,
    InventoryClient,
    OrdersClient,
    ReportLifecycleClient,
    SpApiClient,
)
from sellerops.config import get_settings
from sellerops.database.models import SyncType
from sellerops.jobs.cancellation import CancellationToken
from sellerops.jobs.queue import CLEAR_STALE_REPORTS, JobQueue
from sellerops.serving.cache import profit_cache
from sellerops.sync import (
    FbaShipmentSync,
    FinancialEventReconciler,
    HistoricalOrderSync,
    InventorySync,
    PendingReportStore,
    ProfitAggregator,
    RecentOrdersSync,
    ResyncPendingOrders,
    ReturnsSync,
    SyncDirection,
)

logger = structlog.get_logger(__name__)
settings = get_settings()


class VendorServices:
    """SP-API clients sharing one authenticated HTTP session"""

    def __init__(self, client: SpApiClient):
        self.client = client
        self.reports = ReportLifecycleClient(client)
        self.finances = FinancesClient(client)
        self.inventory = InventoryClient(client)
        self.inbound = FulfillmentInboundClient(client)
        self.orders = OrdersClient(client)

    @classmethod
    def from_settings(cls) -> "VendorServices":
        return cls(SpApiClient.from_settings())


@dataclass
class JobContext:
    """Everything a handler needs for one claimed job"""
    job_id: int
    job_type: str
    queue: JobQueue
    token: CancellationToken
    payload: Dict[str, Any] = field(default_factory=dict)
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None
    services_factory: Callable[[], VendorServices] = VendorServices.from_settings
    _services: Optional[VendorServices] = None

    @property
    def services(self) -> VendorServices:
        # built lazily so DB-only jobs never need credentials
        if self._services is None:
            self._services = self.services_factory()
        return self._services

    async def progress(self, data: Dict[str, Any]) -> None:
        await self.queue.report_progress(self.job_id, data)

    async def log(self, message: str) -> None:
        await self.queue.append_log(self.job_id, message)


JobHandler = Callable[[JobContext], Awaitable[Dict[str, Any]]]


# =============================================================================
# ORDERS
# =============================================================================

async def run_historical_orders(ctx: JobContext) -> Dict[str, Any]:
    """
    Batched report sync over ``days`` of history.

    When the wall-clock budget stops the run early, a follow-up job with the
    same payload is enqueued; it resumes from the saved checkpoint.
    """
    payload = ctx.payload
    days = int(payload.get("days") or settings.sync.max_history_days)
    sync = HistoricalOrderSync(
        ctx.services.reports,
        ctx.session_factory,
        direction=SyncDirection(payload.get("direction", SyncDirection.OLDEST_FIRST.value)),
        max_runtime_seconds=payload.get("max_runtime_seconds"),
    )

    async def on_batch(progress) -> None:
        await ctx.progress(progress.as_dict())
        await ctx.log(f"batch {progress.batch_number}/{progress.total_batches} {progress.state.value}")

    result = await sync.run_to_completion(
        days,
        batch_size_days=payload.get("batch_size_days"),
        token=ctx.token,
        on_progress=on_batch,
    )
    summary = result.as_dict()
    if result.needs_continuation:
        summary["continuation_job_id"] = await ctx.queue.enqueue(ctx.job_type, payload)
        await ctx.log(f"runtime budget reached, continuing as job {summary['continuation_job_id']}")
    return summary


async def run_recent_orders(ctx: JobContext) -> Dict[str, Any]:
    result = await RecentOrdersSync(ctx.services.reports, ctx.session_factory).run(
        days=ctx.payload.get("days"),
        token=ctx.token,
    )
    return result.as_dict()


async def run_resync_pending(ctx: JobContext) -> Dict[str, Any]:
    sync = ResyncPendingOrders(
        ctx.services.orders,
        ctx.session_factory,
        order_delay=settings.sync.resync_order_delay_seconds,
        limit=int(ctx.payload.get("limit", 100)),
    )
    return (await sync.run(token=ctx.token)).as_dict()


# =============================================================================
# FINANCES, INVENTORY, SHIPMENTS
# =============================================================================

async def run_financial_events(ctx: JobContext) -> Dict[str, Any]:
    services = ctx.services
    reconciler = FinancialEventReconciler(
        services.finances,
        ctx.session_factory,
        on_token_expired=services.client.auth.invalidate,
    )
    result = await reconciler.run(days=ctx.payload.get("days"), token=ctx.token, on_progress=ctx.progress)
    return result.as_dict()


async def run_inventory(ctx: JobContext) -> Dict[str, Any]:
    return (await InventorySync(ctx.services.inventory, ctx.session_factory).run(token=ctx.token)).as_dict()


async def run_fba_shipments(ctx: JobContext) -> Dict[str, Any]:
    sync = FbaShipmentSync(ctx.services.inbound, ctx.session_factory)
    return (await sync.run(statuses=ctx.payload.get("statuses"), token=ctx.token)).as_dict()


async def run_returns(ctx: JobContext) -> Dict[str, Any]:
    sync = ReturnsSync(ctx.services.reports, ctx.session_factory)
    return (await sync.run(days=int(ctx.payload.get("days", 30)), token=ctx.token)).as_dict()


# =============================================================================
# LOCAL MAINTENANCE
# =============================================================================

async def run_profit_aggregation(ctx: JobContext) -> Dict[str, Any]:
    aggregator = ProfitAggregator(ctx.session_factory, cache=profit_cache)
    return (await aggregator.run(days=int(ctx.payload.get("days", 30)), token=ctx.token)).as_dict()


async def run_clear_stale_reports(ctx: JobContext) -> Dict[str, Any]:
    hours = int(ctx.payload.get("max_age_hours", settings.sync.stale_report_hours))
    cleared = await PendingReportStore(ctx.session_factory).clear_stale_reports(max_age_hours=hours)
    return {"reports_failed": cleared, "max_age_hours": hours}


DEFAULT_HANDLERS: Dict[str, JobHandler] = {
    SyncType.HISTORICAL_ORDERS.value: run_historical_orders,
    SyncType.RECENT_ORDERS.value: run_recent_orders,
    SyncType.FINANCIAL_EVENTS.value: run_financial_events,
    SyncType.INVENTORY.value: run_inventory,
    SyncType.FBA_SHIPMENTS.value: run_fba_shipments,
    SyncType.RETURNS.value: run_returns,
    SyncType.RESYNC_PENDING.value: run_resync_pending,
    SyncType.PROFIT_AGGREGATION.value: run_profit_aggregation,
    CLEAR_STALE_REPORTS: run_clear_stale_reports,
}
