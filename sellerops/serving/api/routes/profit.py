"""
Profit API Endpoints
"""

from datetime import date, timedelta
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException

from sellerops.database.connection import session_scope
from sellerops.serving.cache import profit_cache
from sellerops.sync.profit import get_daily_profit
from sellerops.timeutils import seller_date, utcnow

router = APIRouter()


@router.get("/daily")
async def daily_profit(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    sku: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Daily profit rows per SKU for a seller-local date range.

    Defaults to the last 30 days. Results are cached until the next rollup.
    """
    end_date = end_date or seller_date(utcnow())
    start_date = start_date or end_date - timedelta(days=30)
    if start_date > end_date:
        raise HTTPException(status_code=400, detail="start_date must not be after end_date")

    async def load() -> Dict[str, Any]:
        async with session_scope() as session:
            rows = await get_daily_profit(session, start_date, end_date, sku)
        return {
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
            "sku": sku,
            "rows": rows,
            "totals": {
                "revenue": round(sum(r["revenue"] for r in rows), 2),
                "net_profit": round(sum(r["net_profit"] for r in rows), 2),
                "units_sold": sum(r["units_sold"] for r in rows),
            },
        }

    return await profit_cache.get_or_set(f"{start_date}:{end_date}:{sku or '*'}", load)
