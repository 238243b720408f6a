"""
Vendor fakes shared by the unit tests
"""
from datetime import datetime
from typing import Dict, List, Optional

ORDERS_HEADER = (
    "amazon-order-id\tpurchase-date\torder-status\tfulfillment-channel\tsales-channel\t"
    "sku\tasin\tquantity\tcurrency\titem-price\titem-tax\tshipping-price\titem-promotion-discount"
)


def order_row(
    order_id: str,
    sku: str,
    purchase_date: str = "2024-01-10T12:00:00+00:00",
    status: str = "Shipped",
    quantity: int = 1,
    price: str = "10.00",
    promo: str = "0",
) -> str:
    return "\t".join([
        order_id, purchase_date, status, "Amazon", "Amazon.com",
        sku, f"B0{sku}", str(quantity), "USD", price, "0.80", "0", promo,
    ])


def orders_report(*rows: str) -> str:
    return "\n".join([ORDERS_HEADER, *rows]) + "\n"


class FakeReports:
    """
    Stand-in for ReportLifecycleClient.

    ``documents`` maps ``(report_type, start, end)`` or ``report_type`` to the
    text returned by ``download_document``; ``failures`` maps a report type to
    the exception raised by ``wait_for_report``.
    """

    def __init__(self, documents: Optional[Dict] = None, failures: Optional[Dict] = None):
        self.documents = documents or {}
        self.failures = failures or {}
        self.requested: List[tuple] = []
        self._reports: Dict[str, tuple] = {}

    async def request_report(self, report_type, start: datetime, end: datetime, marketplace_ids=None, token=None) -> str:
        report_type = getattr(report_type, "value", report_type)
        report_id = f"r{len(self.requested) + 1}"
        self.requested.append((report_type, start, end))
        self._reports[report_id] = (report_type, start, end)
        return report_id

    async def wait_for_report(self, report_id: str, token=None, max_attempts=None):
        from sellerops.amazon.reports import ProcessingStatus, ReportStatus

        report_type = self._reports[report_id][0]
        if report_type in self.failures:
            raise self.failures[report_type]
        return ReportStatus(report_id=report_id, status=ProcessingStatus.DONE, document_id=f"doc-{report_id}")

    async def download_document(self, document_id: str) -> str:
        report_type, start, end = self._reports[document_id.replace("doc-", "")]
        for key in ((report_type, start, end), report_type):
            if key in self.documents:
                value = self.documents[key]
                return value(start, end) if callable(value) else value
        return ""
