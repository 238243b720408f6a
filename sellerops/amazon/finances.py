"""
Finances API client (financial event listing).
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sellerops.amazon.client import SpApiClient
from sellerops.timeutils import isoformat_z

FINANCES_PATH = "/finances/v0/financialEvents"


@dataclass
class FinancialEventsPage:
    """One page of the cursor-paginated financial event feed"""
    shipment_events: List[Dict[str, Any]] = field(default_factory=list)
    refund_events: List[Dict[str, Any]] = field(default_factory=list)
    next_token: Optional[str] = None

    @property
    def event_count(self) -> int:
        return len(self.shipment_events) + len(self.refund_events)


class FinancesClient:
    """Lists financial events posted within a window."""

    def __init__(self, client: SpApiClient, page_size: int = 100):
        self.client = client
        self.page_size = page_size

    async def list_financial_events(
        self,
        posted_after: datetime,
        posted_before: datetime,
        next_token: Optional[str] = None,
    ) -> FinancialEventsPage:
        """
        Fetch one page.

        Raises:
            RateLimitedError: HTTP 429
            TokenExpiredError: ``next_token`` is no longer accepted
        """
        params: Dict[str, Any] = {
            "PostedAfter": isoformat_z(posted_after),
            "PostedBefore": isoformat_z(posted_before),
            "MaxResultsPerPage": self.page_size,
        }
        if next_token:
            params["NextToken"] = next_token

        payload = await self.client.call("GET", FINANCES_PATH, params=params)
        body = payload.get("payload") or {}
        events = body.get("FinancialEvents") or {}
        return FinancialEventsPage(
            shipment_events=events.get("ShipmentEventList") or [],
            refund_events=events.get("RefundEventList") or [],
            next_token=body.get("NextToken"),
        )
