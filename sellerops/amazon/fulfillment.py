"""
FBA inventory and inbound shipment clients.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sellerops.amazon.client import SpApiClient
from sellerops.timeutils import isoformat_z, utcnow

INVENTORY_PATH = "/fba/inventory/v1/summaries"
INBOUND_PATH = "/fba/inbound/v0"

ACTIVE_SHIPMENT_STATUSES = ["WORKING", "SHIPPED", "RECEIVING", "CHECKED_IN", "IN_TRANSIT", "DELIVERED"]


@dataclass
class InventorySummary:
    seller_sku: str
    fnsku: Optional[str]
    asin: Optional[str]
    fulfillable: int = 0
    inbound: int = 0
    reserved: int = 0


@dataclass
class InboundShipment:
    shipment_id: str
    status: str
    shipment_name: Optional[str] = None
    destination_fc: Optional[str] = None
    created_date: Optional[datetime] = None


@dataclass
class InboundShipmentItem:
    seller_sku: str
    fnsku: Optional[str]
    quantity_shipped: int = 0
    quantity_received: int = 0


@dataclass
class Page:
    items: List[Any] = field(default_factory=list)
    next_token: Optional[str] = None


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


class InventoryClient:
    """``getInventorySummaries`` with details"""

    def __init__(self, client: SpApiClient):
        self.client = client

    async def get_inventory_summaries(self, next_token: Optional[str] = None) -> Page:
        params: Dict[str, Any] = {
            "details": "true",
            "granularityType": "Marketplace",
            "granularityId": self.client.marketplace_id,
            "marketplaceIds": self.client.marketplace_id,
        }
        if next_token:
            params["nextToken"] = next_token
        payload = await self.client.call("GET", INVENTORY_PATH, params=params)

        summaries = []
        for raw in (payload.get("payload") or {}).get("inventorySummaries") or []:
            details = raw.get("inventoryDetails") or {}
            reserved = details.get("reservedQuantity") or {}
            summaries.append(InventorySummary(
                seller_sku=raw.get("sellerSku") or "",
                fnsku=raw.get("fnSku"),
                asin=raw.get("asin"),
                fulfillable=_int(details.get("fulfillableQuantity")),
                inbound=(
                    _int(details.get("inboundWorkingQuantity"))
                    + _int(details.get("inboundShippedQuantity"))
                    + _int(details.get("inboundReceivingQuantity"))
                ),
                reserved=_int(reserved.get("totalReservedQuantity")),
            ))
        pagination = payload.get("pagination") or {}
        return Page(items=summaries, next_token=pagination.get("nextToken"))


class FulfillmentInboundClient:
    """Inbound (v0) shipment listing and shipment items"""

    def __init__(self, client: SpApiClient):
        self.client = client

    async def get_shipments(
        self,
        statuses: Optional[List[str]] = None,
        next_token: Optional[str] = None,
        updated_after: Optional[datetime] = None,
    ) -> Page:
        if next_token:
            params: Dict[str, Any] = {"QueryType": "NEXT_TOKEN", "NextToken": next_token}
        elif updated_after:
            params = {
                "QueryType": "DATE_RANGE",
                "LastUpdatedAfter": isoformat_z(updated_after),
                "LastUpdatedBefore": isoformat_z(utcnow()),
            }
        else:
            params = {"QueryType": "SHIPMENT", "ShipmentStatusList": ",".join(statuses or ACTIVE_SHIPMENT_STATUSES)}
        params["MarketplaceId"] = self.client.marketplace_id

        payload = await self.client.call("GET", f"{INBOUND_PATH}/shipments", params=params)
        body = payload.get("payload") or {}
        shipments = [
            InboundShipment(
                shipment_id=raw["ShipmentId"],
                status=raw.get("ShipmentStatus", "WORKING"),
                shipment_name=raw.get("ShipmentName"),
                destination_fc=raw.get("DestinationFulfillmentCenterId"),
            )
            for raw in body.get("ShipmentData") or []
            if raw.get("ShipmentId")
        ]
        return Page(items=shipments, next_token=body.get("NextToken"))

    async def get_shipment_items(self, shipment_id: str) -> List[InboundShipmentItem]:
        items: List[InboundShipmentItem] = []
        params: Dict[str, Any] = {"MarketplaceId": self.client.marketplace_id}
        path = f"{INBOUND_PATH}/shipments/{shipment_id}/items"
        while True:
            payload = await self.client.call("GET", path, params=params)
            body = payload.get("payload") or {}
            for raw in body.get("ItemData") or []:
                items.append(InboundShipmentItem(
                    seller_sku=raw.get("SellerSKU") or "",
                    fnsku=raw.get("FulfillmentNetworkSKU"),
                    quantity_shipped=_int(raw.get("QuantityShipped")),
                    quantity_received=_int(raw.get("QuantityReceived")),
                ))
            token = body.get("NextToken")
            if not token:
                return items
            params = {"MarketplaceId": self.client.marketplace_id, "NextToken": token}
