"""
Report Lifecycle Client

Wraps the vendor's asynchronous report protocol:

    create report -> poll status -> fetch document -> download -> gunzip

- ``request_report`` reuses an in-progress duplicate (HTTP 425) and backs
  off on 429 for up to 5 attempts
- ``wait_for_report`` is a bounded fixed-interval poll; DONE succeeds,
  CANCELLED/FATAL raise ReportFailedError, exhaustion raises
  ReportTimeoutError (the report id stays valid and can be polled again)
- ``fetch_report`` composes the whole lifecycle into one call
"""

import gzip
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

import structlog

from sellerops.amazon.client import SpApiClient
from sellerops.config import get_settings
from sellerops.errors import (
    DuplicateReportError,
    RateLimitedError,
    ReportFailedError,
    ReportTimeoutError,
    SyncCancelledError,
    VendorApiError,
)
from sellerops.jobs.cancellation import CancellationToken, pause
from sellerops.timeutils import isoformat_z

logger = structlog.get_logger(__name__)
settings = get_settings()

REPORTS_PATH = "/reports/2021-06-30"
GZIP_MAGIC = b"\x1f\x8b"


class ReportType(str, Enum):
    """Report types consumed by the sync engine"""
    ALL_ORDERS_BY_ORDER_DATE = "GET_FLAT_FILE_ALL_ORDERS_DATA_BY_ORDER_DATE_GENERAL"
    FBA_SHIPMENTS = "GET_AMAZON_FULFILLED_SHIPMENTS_DATA_GENERAL"
    FBA_CUSTOMER_RETURNS = "GET_FBA_FULFILLMENT_CUSTOMER_RETURNS_DATA"


class ProcessingStatus(str, Enum):
    """Vendor report processing states"""
    IN_QUEUE = "IN_QUEUE"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    CANCELLED = "CANCELLED"
    FATAL = "FATAL"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessingStatus.DONE, ProcessingStatus.CANCELLED, ProcessingStatus.FATAL)

    @property
    def is_failure(self) -> bool:
        return self in (ProcessingStatus.CANCELLED, ProcessingStatus.FATAL)


@dataclass
class ReportStatus:
    """One poll result"""
    report_id: str
    status: ProcessingStatus
    document_id: Optional[str] = None
    failure_reason: Optional[str] = None


@dataclass
class ReportDocument:
    """Document descriptor; ``compression`` is ``GZIP`` or None"""
    document_id: str
    url: str
    compression: Optional[str] = None


def decompress_document(raw: bytes, compression: Optional[str] = None) -> bytes:
    """Gunzip when the vendor says so or the payload carries the gzip magic."""
    if (compression or "").upper() == "GZIP" or raw[:2] == GZIP_MAGIC:
        return gzip.decompress(raw)
    return raw


def decode_document(raw: bytes) -> str:
    """Reports are UTF-8 in most regions; JP/legacy files fall back to cp1252."""
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        return raw.decode("cp1252", errors="replace")


class ReportLifecycleClient:
    """
    Vendor report lifecycle as one blocking or resumable call.

    Example:
        reports = ReportLifecycleClient(SpApiClient.from_settings())
        report_id = await reports.request_report(ReportType.ALL_ORDERS_BY_ORDER_DATE, start, end)
        status = await reports.wait_for_report(report_id)
        text = await reports.download_document(status.document_id)
    """

    def __init__(
        self,
        client: SpApiClient,
        poll_interval: Optional[float] = None,
        max_poll_attempts: Optional[int] = None,
        create_max_attempts: Optional[int] = None,
        create_backoff_seconds: Optional[float] = None,
        create_backoff_cap_seconds: Optional[float] = None,
        status_rate_limit_wait: Optional[float] = None,
    ):
        sync = settings.sync
        self.client = client
        self.poll_interval = sync.report_poll_interval_seconds if poll_interval is None else poll_interval
        self.max_poll_attempts = max_poll_attempts or sync.report_max_poll_attempts
        self.create_max_attempts = create_max_attempts or sync.report_create_max_attempts
        self.create_backoff_seconds = (
            sync.report_create_backoff_seconds if create_backoff_seconds is None else create_backoff_seconds
        )
        self.create_backoff_cap_seconds = (
            sync.report_create_backoff_cap_seconds if create_backoff_cap_seconds is None else create_backoff_cap_seconds
        )
        self.status_rate_limit_wait = (
            sync.status_rate_limit_wait_seconds if status_rate_limit_wait is None else status_rate_limit_wait
        )

    async def request_report(
        self,
        report_type: str,
        start: datetime,
        end: datetime,
        marketplace_ids: Optional[List[str]] = None,
        token: Optional[CancellationToken] = None,
    ) -> str:
        """
        Create a report for ``[start, end]``.

        Returns:
            The new report id, or the id of an identical in-progress report

        Raises:
            RateLimitedError: Still throttled after ``create_max_attempts``
        """
        report_type = getattr(report_type, "value", report_type)
        body = {
            "reportType": report_type,
            "marketplaceIds": marketplace_ids or [self.client.marketplace_id],
            "dataStartTime": isoformat_z(start),
            "dataEndTime": isoformat_z(end),
        }

        for attempt in range(1, self.create_max_attempts + 1):
            try:
                payload = await self.client.call("POST", f"{REPORTS_PATH}/reports", json=body)
                report_id = str(payload["reportId"])
                logger.info("Report requested", report_type=report_type, report_id=report_id, start=body["dataStartTime"], end=body["dataEndTime"])
                return report_id
            except DuplicateReportError as e:
                if e.existing_report_id:
                    logger.info("Reusing in-progress duplicate report", report_type=report_type, report_id=e.existing_report_id)
                    return e.existing_report_id
                raise
            except RateLimitedError:
                if attempt >= self.create_max_attempts:
                    raise
                wait = min(self.create_backoff_seconds * attempt, self.create_backoff_cap_seconds)
                logger.warning("createReport rate limited", report_type=report_type, attempt=attempt, wait_seconds=wait)
                if await pause(wait, token):
                    raise SyncCancelledError("cancelled while waiting to create report")

        raise VendorApiError(f"createReport for {report_type} did not succeed")

    async def poll_status(self, report_id: str) -> ReportStatus:
        """Single status lookup."""
        payload = await self.client.call("GET", f"{REPORTS_PATH}/reports/{report_id}")
        status = ProcessingStatus(payload.get("processingStatus", "IN_QUEUE"))
        failure_reason = None
        if status.is_failure:
            failure_reason = payload.get("failureReason") or payload.get("processingStatus")
        return ReportStatus(
            report_id=report_id,
            status=status,
            document_id=payload.get("reportDocumentId"),
            failure_reason=failure_reason,
        )

    async def wait_for_report(
        self,
        report_id: str,
        token: Optional[CancellationToken] = None,
        max_attempts: Optional[int] = None,
    ) -> ReportStatus:
        """
        Poll until the report reaches a terminal state.

        Raises:
            ReportFailedError: CANCELLED or FATAL
            ReportTimeoutError: still processing after ``max_attempts`` polls
            SyncCancelledError: token cancelled while waiting
        """
        attempts = max_attempts or self.max_poll_attempts
        for attempt in range(1, attempts + 1):
            try:
                result = await self.poll_status(report_id)
            except RateLimitedError:
                logger.warning("Report status rate limited", report_id=report_id, attempt=attempt)
                if await pause(self.status_rate_limit_wait, token):
                    raise SyncCancelledError("cancelled while polling report")
                continue

            if result.status == ProcessingStatus.DONE:
                logger.info("Report ready", report_id=report_id, polls=attempt)
                return result
            if result.status.is_failure:
                logger.error("Report failed", report_id=report_id, status=result.status.value, reason=result.failure_reason)
                raise ReportFailedError(report_id, result.status.value, result.failure_reason)

            if attempt % 10 == 0:
                logger.info("Report still processing", report_id=report_id, status=result.status.value, polls=attempt)
            if attempt < attempts and await pause(self.poll_interval, token):
                raise SyncCancelledError("cancelled while polling report")

        raise ReportTimeoutError(report_id, attempts)

    async def get_document(self, document_id: str) -> ReportDocument:
        payload = await self.client.call("GET", f"{REPORTS_PATH}/documents/{document_id}")
        return ReportDocument(
            document_id=document_id,
            url=payload["url"],
            compression=payload.get("compressionAlgorithm"),
        )

    async def download(self, url: str, compression: Optional[str] = None) -> bytes:
        """Raw document bytes, decompressed when needed."""
        raw = await self.client.download(url)
        return decompress_document(raw, compression)

    async def download_document(self, document_id: str) -> str:
        document = await self.get_document(document_id)
        return decode_document(await self.download(document.url, document.compression))

    async def fetch_report(
        self,
        report_type: str,
        start: datetime,
        end: datetime,
        token: Optional[CancellationToken] = None,
        report_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> str:
        """Request (or resume ``report_id``), wait, download and decode."""
        report_id = report_id or await self.request_report(report_type, start, end, token=token)
        status = await self.wait_for_report(report_id, token=token, max_attempts=max_attempts)
        if not status.document_id:
            raise ReportFailedError(report_id, status.status.value, "DONE without a document id")
        return await self.download_document(status.document_id)
