"""
Daily profit aggregation.

``daily_profit`` is a projection, not a ledger: every run recomputes the
requested date range from order items and replaces it in one transaction,
so it is always safe to rerun.

Rows are bucketed by the purchase date in the seller's timezone
(America/Los_Angeles), which is how seller central reports days.
"""

from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import polars as pl
import structlog
from sqlalchemy import DateTime, Integer, Numeric, String, bindparam, delete, select, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sellerops.database.connection import session_scope
from sellerops.database.models import DailyProfit, OrderStatus, SyncStatus, SyncType
from sellerops.jobs.cancellation import CancellationToken
from sellerops.serving.cache import CacheManager
from sellerops.sync.base import SyncRunResult, finish_sync_log, start_sync_log
from sellerops.timeutils import SELLER_TZ, seller_date, to_naive_utc, utcnow

logger = structlog.get_logger(__name__)

DEFAULT_PROFIT_DAYS = 30

PROFIT_ROWS_SQL = text(
    """
    SELECT
        o.purchase_date AS purchase_date,
        o.id AS order_id,
        oi.master_sku AS master_sku,
        oi.quantity AS quantity,
        oi.gross_revenue AS gross_revenue,
        oi.actual_revenue AS actual_revenue,
        oi.amazon_fees AS amazon_fees,
        oi.promo_discount AS promo_discount,
        oi.ship_promo_discount AS ship_promo_discount,
        COALESCE(p.cost, 0) AS unit_cost
    FROM order_items oi
    JOIN orders o ON o.id = oi.order_id
    LEFT JOIN products p ON p.sku = oi.master_sku
    WHERE o.purchase_date >= :start
      AND o.purchase_date < :end
      AND o.status != :cancelled
    """
).bindparams(
    bindparam("start", type_=DateTime),
    bindparam("end", type_=DateTime),
).columns(
    purchase_date=DateTime,
    order_id=String,
    master_sku=String,
    quantity=Integer,
    gross_revenue=Numeric(12, 2),
    actual_revenue=Numeric(12, 2),
    amazon_fees=Numeric(12, 2),
    promo_discount=Numeric(12, 2),
    ship_promo_discount=Numeric(12, 2),
    unit_cost=Numeric(12, 2),
)

_SCHEMA = {
    "profit_date": pl.Date,
    "order_id": pl.Utf8,
    "master_sku": pl.Utf8,
    "quantity": pl.Int64,
    "revenue": pl.Float64,
    "amazon_fees": pl.Float64,
    "cogs": pl.Float64,
    "promo_discounts": pl.Float64,
}


def seller_day_bounds(start: date, end: date) -> tuple:
    """Naive-UTC ``[start 00:00, end+1 00:00)`` in the seller's timezone."""
    lower = to_naive_utc(datetime.combine(start, time.min, tzinfo=SELLER_TZ))
    upper = to_naive_utc(datetime.combine(end + timedelta(days=1), time.min, tzinfo=SELLER_TZ))
    return lower, upper


def _float(value: Optional[Decimal]) -> float:
    return float(value) if value is not None else 0.0


def to_frame(rows: List[Dict[str, Any]]) -> pl.DataFrame:
    """Item rows from ``PROFIT_ROWS_SQL`` as a polars frame of per-item figures."""
    records = []
    for row in rows:
        actual = _float(row["actual_revenue"])
        quantity = row["quantity"] or 0
        records.append({
            "profit_date": seller_date(row["purchase_date"]),
            "order_id": row["order_id"],
            "master_sku": row["master_sku"],
            "quantity": quantity,
            # settled revenue wins over the report estimate once posted
            "revenue": actual if actual > 0 else _float(row["gross_revenue"]),
            "amazon_fees": _float(row["amazon_fees"]),
            "cogs": _float(row["unit_cost"]) * quantity,
            "promo_discounts": _float(row["promo_discount"]) + _float(row["ship_promo_discount"]),
        })
    return pl.DataFrame(records, schema=_SCHEMA)


def aggregate_daily(items: pl.DataFrame) -> pl.DataFrame:
    """Group per-item figures by (seller date, SKU) and derive profit columns."""
    return (
        items.group_by(["profit_date", "master_sku"])
        .agg([
            pl.col("quantity").sum().alias("units_sold"),
            pl.col("order_id").n_unique().alias("order_count"),
            pl.col("revenue").sum(),
            pl.col("amazon_fees").sum(),
            pl.col("cogs").sum(),
            pl.col("promo_discounts").sum(),
        ])
        .with_columns((pl.col("revenue") - pl.col("amazon_fees")).alias("gross_profit"))
        .with_columns((pl.col("gross_profit") - pl.col("cogs")).alias("net_profit"))
        .with_columns(
            pl.when(pl.col("revenue") > 0)
            .then(pl.col("net_profit") / pl.col("revenue") * 100)
            .otherwise(0.0)
            .alias("profit_margin")
        )
        .sort(["profit_date", "master_sku"])
    )


def _money(value: float) -> Decimal:
    return Decimal(str(round(value, 2)))


class ProfitAggregator:
    """
    Rebuilds ``daily_profit`` for a date range.

    Example:
        aggregator = ProfitAggregator(session_factory, cache=profit_cache)
        result = await aggregator.run(start=date(2024, 1, 1), end=date(2024, 1, 31))
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        cache: Optional[CacheManager] = None,
    ):
        self.session_factory = session_factory
        self.cache = cache

    async def rebuild(self, start: date, end: date) -> int:
        """Replace ``[start, end]`` with freshly aggregated rows."""
        lower, upper = seller_day_bounds(start, end)
        computed_at = utcnow()
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                PROFIT_ROWS_SQL,
                {"start": lower, "end": upper, "cancelled": OrderStatus.CANCELLED.name},
            )
            rows = [dict(r) for r in result.mappings().all()]
            daily = aggregate_daily(to_frame(rows))

            await session.execute(
                delete(DailyProfit).where(DailyProfit.profit_date >= start, DailyProfit.profit_date <= end)
            )
            for record in daily.iter_rows(named=True):
                session.add(DailyProfit(
                    profit_date=record["profit_date"],
                    master_sku=record["master_sku"],
                    units_sold=int(record["units_sold"]),
                    order_count=int(record["order_count"]),
                    revenue=_money(record["revenue"]),
                    amazon_fees=_money(record["amazon_fees"]),
                    cogs=_money(record["cogs"]),
                    promo_discounts=_money(record["promo_discounts"]),
                    gross_profit=_money(record["gross_profit"]),
                    net_profit=_money(record["net_profit"]),
                    profit_margin=_money(record["profit_margin"]),
                    computed_at=computed_at,
                ))
        logger.info("Daily profit rebuilt", start=start.isoformat(), end=end.isoformat(), rows=daily.height)
        return daily.height

    async def run(
        self,
        start: Optional[date] = None,
        end: Optional[date] = None,
        days: int = DEFAULT_PROFIT_DAYS,
        token: Optional[CancellationToken] = None,
    ) -> SyncRunResult:
        end = end or seller_date(utcnow())
        start = start or end - timedelta(days=days)
        result = await start_sync_log(
            SyncType.PROFIT_AGGREGATION,
            self.session_factory,
            {"start": start.isoformat(), "end": end.isoformat()},
        )
        try:
            if token is not None:
                await token.raise_if_cancelled()
            rows = await self.rebuild(start, end)
        except Exception as e:
            await finish_sync_log(result, SyncStatus.FAILED, self.session_factory, str(e))
            raise
        result.records_processed = result.records_created = rows

        if self.cache is not None:
            result.details["cache_keys_invalidated"] = await self.cache.invalidate_all()
        return await finish_sync_log(result, SyncStatus.SUCCESS, self.session_factory)


async def get_daily_profit(
    session: AsyncSession,
    start: date,
    end: date,
    sku: Optional[str] = None,
) -> List[Dict[str, Any]]:
    query = (
        select(DailyProfit)
        .where(DailyProfit.profit_date >= start, DailyProfit.profit_date <= end)
        .order_by(DailyProfit.profit_date, DailyProfit.master_sku)
    )
    if sku:
        query = query.where(DailyProfit.master_sku == sku)
    result = await session.execute(query)
    return [
        {
            "date": row.profit_date.isoformat(),
            "sku": row.master_sku,
            "units_sold": row.units_sold,
            "order_count": row.order_count,
            "revenue": float(row.revenue),
            "amazon_fees": float(row.amazon_fees),
            "cogs": float(row.cogs),
            "promo_discounts": float(row.promo_discounts),
            "gross_profit": float(row.gross_profit),
            "net_profit": float(row.net_profit),
            "profit_margin": float(row.profit_margin),
        }
        for row in result.scalars().all()
    ]
