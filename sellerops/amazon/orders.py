"""
Orders API client (order-item lookup).
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sellerops.amazon.client import SpApiClient

ORDERS_PATH = "/orders/v0/orders"


@dataclass
class OrderItemLine:
    """Priced line of an order as returned by getOrderItems"""
    seller_sku: str
    asin: Optional[str]
    quantity: int
    item_price: Decimal
    item_tax: Decimal
    shipping_price: Decimal
    shipping_tax: Decimal
    promo_discount: Decimal
    ship_promo_discount: Decimal
    title: Optional[str] = None


def _money(block: Optional[Dict[str, Any]]) -> Decimal:
    if not block:
        return Decimal("0")
    try:
        return Decimal(str(block.get("Amount") or "0"))
    except ArithmeticError:
        return Decimal("0")


class OrdersClient:
    """``getOrderItems`` with pagination"""

    def __init__(self, client: SpApiClient):
        self.client = client

    async def get_order_items(self, order_id: str) -> List[OrderItemLine]:
        lines: List[OrderItemLine] = []
        params: Optional[Dict[str, Any]] = None
        while True:
            payload = await self.client.call("GET", f"{ORDERS_PATH}/{order_id}/orderItems", params=params)
            body = payload.get("payload") or {}
            for raw in body.get("OrderItems") or []:
                lines.append(OrderItemLine(
                    seller_sku=raw.get("SellerSKU") or "",
                    asin=raw.get("ASIN"),
                    quantity=int(raw.get("QuantityOrdered") or 0),
                    item_price=_money(raw.get("ItemPrice")),
                    item_tax=_money(raw.get("ItemTax")),
                    shipping_price=_money(raw.get("ShippingPrice")),
                    shipping_tax=_money(raw.get("ShippingTax")),
                    promo_discount=_money(raw.get("PromotionDiscount")),
                    ship_promo_discount=_money(raw.get("ShippingDiscount")),
                    title=raw.get("Title"),
                ))
            token = body.get("NextToken")
            if not token:
                return lines
            params = {"NextToken": token}
