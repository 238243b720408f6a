"""
Batched Historical Sync Orchestrator

Splits a long look-back into fixed-size windows and processes them strictly
in sequence:

    fetching -> parsing -> upserting -> flushed   (or failed)

Progress (anchor timestamp, next batch index, per-batch results, cumulative
counters) is checkpointed on the run's SyncLog after every batch, so a later
invocation with the same parameters continues where a killed or
budget-limited one stopped. All upserts are keyed on vendor ids, so replaying
a batch converges instead of double-counting.
"""

import math
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sellerops.amazon.reports import ReportLifecycleClient, ReportType
from sellerops.config import get_settings
from sellerops.database.connection import session_scope
from sellerops.database.models import (
    PendingReport,
    PendingReportStatus,
    SyncLog,
    SyncStatus,
    SyncType,
    validate_transition,
)
from sellerops.errors import ConfigurationError, ReportFailedError, SyncCancelledError
from sellerops.ingestion.report_parser import parse_report
from sellerops.jobs.cancellation import CancellationToken, pause
from sellerops.sync.order_upserts import OrderUpserter, UpsertStats
from sellerops.sync.pending_reports import PendingReportStore, fetch_checkpointed_report
from sellerops.timeutils import isoformat_z, parse_timestamp, utcnow

logger = structlog.get_logger(__name__)
settings = get_settings()

DEFAULT_REPORT_TYPES: Tuple[ReportType, ...] = (
    ReportType.ALL_ORDERS_BY_ORDER_DATE,
    ReportType.FBA_SHIPMENTS,
)


class BatchState(str, Enum):
    """Per-batch state machine"""
    FETCHING = "fetching"
    PARSING = "parsing"
    UPSERTING = "upserting"
    FLUSHED = "flushed"
    FAILED = "failed"


class SyncDirection(str, Enum):
    OLDEST_FIRST = "oldest_first"
    NEWEST_FIRST = "newest_first"


@dataclass(frozen=True)
class BatchWindow:
    """One date window; ``position`` is its place in processing order"""
    position: int
    start: datetime
    end: datetime
    start_days_ago: int
    end_days_ago: int


def plan_batches(
    total_days: int,
    batch_size_days: int,
    anchor: datetime,
    direction: SyncDirection = SyncDirection.OLDEST_FIRST,
) -> List[BatchWindow]:
    """
    Partition ``[anchor - total_days, anchor]`` into windows of ``batch_size_days``.

    The last (oldest) window is shortened to fit. Windows are returned in
    processing order.
    """
    if total_days <= 0 or batch_size_days <= 0:
        raise ValueError("total_days and batch_size_days must be positive")

    count = math.ceil(total_days / batch_size_days)
    spans = []
    for b in range(1, count + 1):
        end_days_ago = (b - 1) * batch_size_days
        start_days_ago = min(b * batch_size_days, total_days)
        spans.append((start_days_ago, end_days_ago))

    if direction == SyncDirection.OLDEST_FIRST:
        spans.reverse()

    return [
        BatchWindow(
            position=i,
            start=anchor - timedelta(days=start_ago),
            end=anchor - timedelta(days=end_ago),
            start_days_ago=start_ago,
            end_days_ago=end_ago,
        )
        for i, (start_ago, end_ago) in enumerate(spans)
    ]


@dataclass
class BatchProgress:
    """One progress event from ``run_sync``"""
    sync_log_id: int
    batch_number: int
    total_batches: int
    state: BatchState
    start: datetime
    end: datetime
    report_type: Optional[str] = None
    rows_parsed: int = 0
    rows_skipped: int = 0
    stats: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sync_log_id": self.sync_log_id,
            "batch": self.batch_number,
            "total_batches": self.total_batches,
            "state": self.state.value,
            "start": isoformat_z(self.start),
            "end": isoformat_z(self.end),
            "report_type": self.report_type,
            "rows_parsed": self.rows_parsed,
            "rows_skipped": self.rows_skipped,
            "stats": self.stats,
            "error": self.error,
        }


@dataclass
class HistoricalSyncResult:
    sync_log_id: int
    status: SyncStatus
    total_batches: int
    batches_completed: int
    batches_failed: int
    needs_continuation: bool
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    error_message: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sync_log_id": self.sync_log_id,
            "status": self.status.value,
            "total_batches": self.total_batches,
            "batches_completed": self.batches_completed,
            "batches_failed": self.batches_failed,
            "needs_continuation": self.needs_continuation,
            "records_processed": self.records_processed,
            "records_created": self.records_created,
            "records_updated": self.records_updated,
            "records_skipped": self.records_skipped,
            "records_failed": self.records_failed,
            "error_message": self.error_message,
        }


class HistoricalOrderSync:
    """
    Report-backed order sync over a batched date range.

    Example:
        sync = HistoricalOrderSync(reports, session_factory)
        async for progress in sync.run_sync(total_days=180, batch_size_days=90):
            print(progress.batch_number, progress.state)
    """

    def __init__(
        self,
        reports: ReportLifecycleClient,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        report_types: Sequence[Any] = DEFAULT_REPORT_TYPES,
        direction: SyncDirection = SyncDirection.OLDEST_FIRST,
        inter_batch_delay: Optional[float] = None,
        batch_error_delay: Optional[float] = None,
        max_runtime_seconds: Optional[float] = None,
        max_poll_attempts: Optional[int] = None,
        sync_type: SyncType = SyncType.HISTORICAL_ORDERS,
        clock: Callable[[], float] = time.monotonic,
    ):
        sync = settings.sync
        self.reports = reports
        self.session_factory = session_factory
        self.report_types = tuple(getattr(t, "value", t) for t in report_types)
        self.direction = direction
        self.inter_batch_delay = sync.inter_batch_delay_seconds if inter_batch_delay is None else inter_batch_delay
        self.batch_error_delay = sync.batch_error_delay_seconds if batch_error_delay is None else batch_error_delay
        self.max_runtime_seconds = sync.max_runtime_seconds if max_runtime_seconds is None else max_runtime_seconds
        self.max_poll_attempts = max_poll_attempts or sync.historical_report_max_poll_attempts
        self.sync_type = sync_type
        self.clock = clock
        self.upserter = OrderUpserter(session_factory, chunk_size=sync.order_chunk_size)
        self.pending = PendingReportStore(session_factory)

    # =========================================================================
    # CHECKPOINT
    # =========================================================================

    async def _start_or_resume(self, params: Dict[str, Any], total_batches: int) -> Tuple[int, Dict[str, Any]]:
        """Resume the newest unfinished run with identical params or start a new one."""
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(SyncLog)
                .where(
                    SyncLog.sync_type == self.sync_type.value,
                    SyncLog.status.in_([SyncStatus.RUNNING, SyncStatus.CANCELLED]),
                )
                .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
            )
            unfinished = result.scalars().all()

            for log in unfinished:
                checkpoint = dict(log.run_metadata or {})
                if checkpoint.get("params") == params and checkpoint.get("next_batch", 0) < total_batches:
                    if log.status == SyncStatus.CANCELLED:
                        log.status = validate_transition(log.status, SyncStatus.RUNNING)
                    checkpoint["needs_continuation"] = False
                    log.run_metadata = checkpoint
                    logger.info(
                        "Resuming historical sync",
                        sync_log_id=log.id,
                        next_batch=checkpoint["next_batch"] + 1,
                        total_batches=total_batches,
                    )
                    return log.id, checkpoint

            for log in unfinished:
                if log.status == SyncStatus.RUNNING:
                    log.status = validate_transition(log.status, SyncStatus.FAILED)
                    log.error_message = "Superseded by a run with different parameters"
                    log.completed_at = utcnow()

            anchor = await self._outstanding_anchor(session, params) or utcnow()
            checkpoint = {
                "params": params,
                "anchor": isoformat_z(anchor),
                "next_batch": 0,
                "total_batches": total_batches,
                "batch_results": [],
                "needs_continuation": False,
            }
            log = SyncLog(sync_type=self.sync_type.value, status=SyncStatus.RUNNING, run_metadata=checkpoint)
            session.add(log)
            await session.flush()
            logger.info("Starting historical sync", sync_log_id=log.id, **params)
            return log.id, checkpoint

    async def _outstanding_anchor(self, session: AsyncSession, params: Dict[str, Any]) -> Optional[datetime]:
        """
        Anchor of an earlier run with the same params that still has a report
        pending, so the new run plans identical windows and resumes it.
        """
        cutoff = utcnow() - timedelta(hours=settings.sync.stale_report_hours)
        result = await session.execute(
            select(SyncLog)
            .join(PendingReport, PendingReport.sync_log_id == SyncLog.id)
            .where(
                SyncLog.sync_type == self.sync_type.value,
                PendingReport.status == PendingReportStatus.PENDING,
                PendingReport.created_at >= cutoff,
            )
            .order_by(SyncLog.id.desc())
        )
        for log in result.scalars().unique():
            checkpoint = log.run_metadata or {}
            if checkpoint.get("params") == params and checkpoint.get("anchor"):
                anchor = parse_timestamp(checkpoint["anchor"])
                logger.info("Reusing anchor of a run with a pending report", sync_log_id=log.id, anchor=checkpoint["anchor"])
                return anchor
        return None

    async def _save_checkpoint(
        self,
        log_id: int,
        checkpoint: Dict[str, Any],
        stats: Optional[UpsertStats] = None,
        skipped: int = 0,
    ) -> None:
        async with session_scope(self.session_factory) as session:
            log = await session.get(SyncLog, log_id)
            # reassign so the JSON column is marked dirty
            log.run_metadata = dict(checkpoint)
            if stats is not None:
                log.records_processed += stats.orders_processed
                log.records_created += stats.orders_created
                log.records_updated += stats.orders_updated
                log.records_failed += stats.errors
            log.records_skipped += skipped

    async def _finish(self, log_id: int, status: SyncStatus, error_message: Optional[str] = None) -> None:
        async with session_scope(self.session_factory) as session:
            log = await session.get(SyncLog, log_id)
            if log.status != status:
                log.status = validate_transition(log.status, status)
            log.error_message = error_message
            log.completed_at = utcnow()

    # =========================================================================
    # BATCH
    # =========================================================================

    async def _fetch_window(
        self,
        window: BatchWindow,
        log_id: int,
        token: Optional[CancellationToken],
    ) -> Tuple[str, str]:
        """Try each report type in turn; a failed report falls through to the next."""
        last_error: Optional[Exception] = None
        for report_type in self.report_types:
            try:
                text = await fetch_checkpointed_report(
                    self.reports,
                    self.pending,
                    report_type,
                    window.start,
                    window.end,
                    token=token,
                    sync_log_id=log_id,
                    max_attempts=self.max_poll_attempts,
                )
                return text, report_type
            except ReportFailedError as e:
                logger.warning("Report type failed, trying fallback", report_type=report_type, reason=e.failure_reason)
                last_error = e
        raise last_error or ReportFailedError("-", "FATAL", "no report types configured")

    async def run_sync(
        self,
        total_days: int,
        batch_size_days: Optional[int] = None,
        token: Optional[CancellationToken] = None,
    ) -> AsyncGenerator[BatchProgress, None]:
        """
        Run (or resume) the sync, yielding progress per batch state change.

        The checkpoint is written before the ``flushed`` event is yielded, so
        a consumer that stops iterating after it loses nothing.
        """
        total_days = min(total_days, settings.sync.max_history_days)
        batch_size_days = batch_size_days or settings.sync.batch_size_days
        params = {
            "total_days": total_days,
            "batch_size_days": batch_size_days,
            "direction": self.direction.value,
        }
        total_batches = math.ceil(total_days / batch_size_days)
        log_id, checkpoint = await self._start_or_resume(params, total_batches)
        windows = plan_batches(total_days, batch_size_days, parse_timestamp(checkpoint["anchor"]), self.direction)
        started = self.clock()
        processed_here = 0

        try:
            for window in windows[checkpoint["next_batch"]:]:
                number = window.position + 1

                if token is not None and await token.is_cancelled():
                    raise SyncCancelledError(token.reason or "cancel requested")

                if (
                    self.max_runtime_seconds is not None
                    and processed_here > 0
                    and self.clock() - started >= self.max_runtime_seconds
                ):
                    checkpoint["needs_continuation"] = True
                    await self._save_checkpoint(log_id, checkpoint)
                    logger.info("Runtime budget reached", sync_log_id=log_id, next_batch=number)
                    return

                progress = BatchProgress(log_id, number, total_batches, BatchState.FETCHING, window.start, window.end)
                yield progress

                stats: Optional[UpsertStats] = None
                skipped = 0
                try:
                    text, report_type = await self._fetch_window(window, log_id, token)
                    progress.report_type = report_type
                    progress.state = BatchState.PARSING
                    yield progress

                    parsed = parse_report(text, report_type)
                    progress.rows_parsed = parsed.parsed
                    progress.rows_skipped = skipped = parsed.skipped
                    progress.state = BatchState.UPSERTING
                    yield progress

                    stats = await self.upserter.upsert_records(parsed.rows)
                    progress.stats = stats.as_dict()
                    progress.state = BatchState.FLUSHED
                except (SyncCancelledError, ConfigurationError):
                    raise
                except Exception as e:
                    progress.state = BatchState.FAILED
                    progress.error = str(e)
                    logger.error(
                        "Historical batch failed, skipping",
                        sync_log_id=log_id,
                        batch=number,
                        start=isoformat_z(window.start),
                        end=isoformat_z(window.end),
                        error=str(e),
                        error_type=type(e).__name__,
                    )

                checkpoint["next_batch"] = window.position + 1
                checkpoint["batch_results"] = checkpoint["batch_results"] + [{
                    "batch": number,
                    "state": progress.state.value,
                    "report_type": progress.report_type,
                    "stats": progress.stats,
                    "error": progress.error,
                }]
                await self._save_checkpoint(log_id, checkpoint, stats, skipped)
                processed_here += 1
                logger.info(
                    "Historical batch finished",
                    sync_log_id=log_id,
                    batch=number,
                    total_batches=total_batches,
                    state=progress.state.value,
                    **progress.stats,
                )
                yield progress

                if number < total_batches:
                    delay = self.batch_error_delay if progress.state == BatchState.FAILED else self.inter_batch_delay
                    if await pause(delay, token):
                        raise SyncCancelledError(token.reason if token else "cancel requested")

        except SyncCancelledError as e:
            logger.info("Historical sync cancelled", sync_log_id=log_id, reason=str(e))
            await self._finish(log_id, SyncStatus.CANCELLED, str(e))
            return
        except Exception as e:
            logger.error("Historical sync failed", sync_log_id=log_id, error=str(e), error_type=type(e).__name__)
            await self._finish(log_id, SyncStatus.FAILED, str(e))
            raise

        results = checkpoint["batch_results"]
        failed = [r for r in results if r["state"] == BatchState.FAILED.value]
        if results and len(failed) == len(results):
            await self._finish(log_id, SyncStatus.FAILED, failed[-1]["error"])
        else:
            await self._finish(log_id, SyncStatus.SUCCESS)
        logger.info("Historical sync completed", sync_log_id=log_id, batches=len(results), failed_batches=len(failed))

    async def run_to_completion(
        self,
        total_days: int,
        batch_size_days: Optional[int] = None,
        token: Optional[CancellationToken] = None,
        on_progress: Optional[Callable[[BatchProgress], Any]] = None,
    ) -> HistoricalSyncResult:
        """Drain ``run_sync`` and summarize the run from its SyncLog."""
        log_id: Optional[int] = None
        async for progress in self.run_sync(total_days, batch_size_days, token):
            log_id = progress.sync_log_id
            if on_progress is not None:
                await on_progress(progress)

        if log_id is None:
            log_id = await self._latest_log_id()
        return await load_result(log_id, self.session_factory)

    async def _latest_log_id(self) -> int:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(SyncLog.id)
                .where(SyncLog.sync_type == self.sync_type.value)
                .order_by(SyncLog.id.desc())
                .limit(1)
            )
            return result.scalar_one()


async def load_result(
    log_id: int,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> HistoricalSyncResult:
    """Build a run summary from a persisted SyncLog checkpoint."""
    async with session_scope(session_factory) as session:
        log = await session.get(SyncLog, log_id)
        checkpoint = log.run_metadata or {}
        results = checkpoint.get("batch_results", [])
        return HistoricalSyncResult(
            sync_log_id=log.id,
            status=log.status,
            total_batches=checkpoint.get("total_batches", 0),
            batches_completed=sum(1 for r in results if r["state"] == BatchState.FLUSHED.value),
            batches_failed=sum(1 for r in results if r["state"] == BatchState.FAILED.value),
            needs_continuation=bool(checkpoint.get("needs_continuation")),
            records_processed=log.records_processed,
            records_created=log.records_created,
            records_updated=log.records_updated,
            records_skipped=log.records_skipped,
            records_failed=log.records_failed,
            error_message=log.error_message,
        )


class RecentOrdersSync(HistoricalOrderSync):
    """Trailing look-back as a single batch; scheduled every 15 minutes"""

    def __init__(self, reports: ReportLifecycleClient, session_factory=None, **kwargs):
        kwargs.setdefault("max_poll_attempts", settings.sync.report_max_poll_attempts)
        kwargs.setdefault("sync_type", SyncType.RECENT_ORDERS)
        super().__init__(reports, session_factory, **kwargs)

    async def run(self, days: Optional[int] = None, token: Optional[CancellationToken] = None) -> HistoricalSyncResult:
        days = days or settings.sync.recent_orders_days
        return await self.run_to_completion(days, batch_size_days=days, token=token)
