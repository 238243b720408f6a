"""
Amazon Selling Partner API Module
"""
from .auth import LwaAuth, SpApiCredentials
from .client import SpApiClient, build_session, parse_duplicate_report_id
from .finances import FinancesClient, FinancialEventsPage
from .fulfillment import FulfillmentInboundClient, InventoryClient
from .orders import OrdersClient
from .reports import ProcessingStatus, ReportLifecycleClient, ReportType

__all__ = [
    "LwaAuth",
    "SpApiCredentials",
    "SpApiClient",
    "build_session",
    "parse_duplicate_report_id",
    "FinancesClient",
    "FinancialEventsPage",
    "FulfillmentInboundClient",
    "InventoryClient",
    "OrdersClient",
    "ProcessingStatus",
    "ReportLifecycleClient",
    "ReportType",
]
