"""
Unit Tests - Batched Historical Sync
"""
from datetime import datetime

import pytest
from sqlalchemy import func, select

from sellerops.amazon.reports import ReportType
from sellerops.database.models import Order, PendingReport, PendingReportStatus, SyncLog, SyncStatus
from sellerops.errors import ReportFailedError, ReportTimeoutError
from sellerops.jobs.cancellation import CancellationToken
from sellerops.sync.historical import (
    BatchState,
    HistoricalOrderSync,
    RecentOrdersSync,
    SyncDirection,
    plan_batches,
)
from tests.fakes import FakeReports, order_row, orders_report

ALL_ORDERS = ReportType.ALL_ORDERS_BY_ORDER_DATE.value
FBA_SHIPMENTS = ReportType.FBA_SHIPMENTS.value


def window_orders(start, end) -> str:
    """One distinct order per requested window"""
    return orders_report(order_row(f"O-{start:%Y%m%d}", "SKU-A"))


async def order_count(session_factory) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(Order))


class TestPlanBatches:
    """Tests for window partitioning"""

    def test_oldest_first(self):
        """The oldest window comes first and is shortened to fit"""
        anchor = datetime(2024, 6, 1)
        windows = plan_batches(20, 7, anchor, SyncDirection.OLDEST_FIRST)

        assert [(w.start_days_ago, w.end_days_ago) for w in windows] == [(20, 14), (14, 7), (7, 0)]
        assert windows[0].position == 0
        assert windows[-1].end == anchor

    def test_newest_first(self):
        """Newest-first starts at the anchor"""
        windows = plan_batches(14, 7, datetime(2024, 6, 1), SyncDirection.NEWEST_FIRST)

        assert [(w.start_days_ago, w.end_days_ago) for w in windows] == [(7, 0), (14, 7)]

    def test_windows_are_contiguous(self):
        """Each window ends where the next older one starts"""
        windows = plan_batches(30, 7, datetime(2024, 6, 1), SyncDirection.OLDEST_FIRST)

        for older, newer in zip(windows, windows[1:]):
            assert older.end == newer.start

    @pytest.mark.parametrize("days,size", [(0, 7), (7, 0), (-1, 7)])
    def test_invalid_sizes(self, days, size):
        """Non-positive inputs are rejected"""
        with pytest.raises(ValueError):
            plan_batches(days, size, datetime(2024, 6, 1))


class TestHistoricalOrderSync:
    """Tests for the batch state machine and checkpointing"""

    async def test_full_run_flushes_every_batch(self, session_factory, seeded_catalog):
        """Each batch walks fetching, parsing, upserting and flushed"""
        reports = FakeReports(documents={ALL_ORDERS: window_orders})
        sync = HistoricalOrderSync(reports, session_factory)
        states = []

        async for progress in sync.run_sync(total_days=14, batch_size_days=7):
            states.append((progress.batch_number, progress.state))

        assert states == [
            (1, BatchState.FETCHING), (1, BatchState.PARSING), (1, BatchState.UPSERTING), (1, BatchState.FLUSHED),
            (2, BatchState.FETCHING), (2, BatchState.PARSING), (2, BatchState.UPSERTING), (2, BatchState.FLUSHED),
        ]
        assert await order_count(session_factory) == 2

    async def test_run_to_completion_summary(self, session_factory, seeded_catalog):
        """The summary is read back from the run's SyncLog"""
        reports = FakeReports(documents={ALL_ORDERS: window_orders})
        sync = HistoricalOrderSync(reports, session_factory)

        result = await sync.run_to_completion(total_days=14, batch_size_days=7)

        assert result.status == SyncStatus.SUCCESS
        assert result.total_batches == 2
        assert result.batches_completed == 2
        assert result.batches_failed == 0
        assert result.records_created == 2
        assert result.needs_continuation is False

    async def test_rerun_is_idempotent(self, session_factory, seeded_catalog):
        """Replaying the same windows updates existing orders"""
        reports = FakeReports(documents={ALL_ORDERS: orders_report(order_row("O-1", "SKU-A"))})

        await HistoricalOrderSync(reports, session_factory).run_to_completion(total_days=14, batch_size_days=7)
        second = await HistoricalOrderSync(reports, session_factory).run_to_completion(total_days=14, batch_size_days=7)

        assert await order_count(session_factory) == 1
        assert second.records_created == 0
        assert second.records_updated == 2

    async def test_falls_back_to_shipments_report(self, session_factory, seeded_catalog):
        """A failed orders report falls through to the shipments report"""
        shipments = (
            "amazon-order-id\tsku\tpurchase-date\tquantity-shipped\titem-price\n"
            "S-1\tSKU-A\t2024-01-10T00:00:00Z\t1\t10.00\n"
        )
        reports = FakeReports(
            documents={FBA_SHIPMENTS: shipments},
            failures={ALL_ORDERS: ReportFailedError("x", "FATAL", "no data")},
        )
        sync = HistoricalOrderSync(reports, session_factory)

        result = await sync.run_to_completion(total_days=7, batch_size_days=7)

        assert result.batches_completed == 1
        assert [r[0] for r in reports.requested] == [ALL_ORDERS, FBA_SHIPMENTS]
        async with session_factory() as session:
            rows = (await session.execute(select(PendingReport))).scalars().all()
        assert {r.report_type: r.status for r in rows} == {
            ALL_ORDERS: PendingReportStatus.FAILED,
            FBA_SHIPMENTS: PendingReportStatus.DONE,
        }

    async def test_all_batches_failed_marks_run_failed(self, session_factory, seeded_catalog):
        """A run where no batch flushed ends FAILED"""
        failure = ReportFailedError("x", "FATAL", "no data")
        reports = FakeReports(failures={ALL_ORDERS: failure, FBA_SHIPMENTS: failure})
        sync = HistoricalOrderSync(reports, session_factory)

        result = await sync.run_to_completion(total_days=14, batch_size_days=7)

        assert result.status == SyncStatus.FAILED
        assert result.batches_failed == 2
        assert result.error_message

    async def test_timed_out_report_reused_by_next_run(self, session_factory, seeded_catalog):
        """A fresh run resumes the report an earlier run gave up waiting for"""
        reports = FakeReports(
            documents={ALL_ORDERS: window_orders},
            failures={ALL_ORDERS: ReportTimeoutError("r1", 3)},
        )
        first = await HistoricalOrderSync(reports, session_factory).run_to_completion(total_days=7, batch_size_days=7)
        assert first.status == SyncStatus.FAILED

        reports.failures.clear()
        second = await HistoricalOrderSync(reports, session_factory).run_to_completion(total_days=7, batch_size_days=7)

        assert second.sync_log_id != first.sync_log_id
        assert second.status == SyncStatus.SUCCESS
        assert len(reports.requested) == 1
        assert await order_count(session_factory) == 1
        async with session_factory() as session:
            pending = (await session.execute(select(PendingReport))).scalar_one()
        assert (pending.report_id, pending.status) == ("r1", PendingReportStatus.DONE)

    async def test_resume_after_interruption(self, session_factory, seeded_catalog):
        """A stopped run continues from the first unprocessed batch"""
        reports = FakeReports(documents={ALL_ORDERS: window_orders})

        stream = HistoricalOrderSync(reports, session_factory).run_sync(total_days=14, batch_size_days=7)
        async for progress in stream:
            if progress.state == BatchState.FLUSHED:
                break
        await stream.aclose()
        first_log_id = progress.sync_log_id
        assert len(reports.requested) == 1

        resumed = []
        async for progress in HistoricalOrderSync(reports, session_factory).run_sync(total_days=14, batch_size_days=7):
            resumed.append((progress.sync_log_id, progress.batch_number))

        assert {log_id for log_id, _ in resumed} == {first_log_id}
        assert {number for _, number in resumed} == {2}
        assert len(reports.requested) == 2
        assert reports.requested[0][1:] != reports.requested[1][1:]
        assert await order_count(session_factory) == 2

    async def test_different_params_start_new_run(self, session_factory, seeded_catalog):
        """An unfinished run with other params is superseded"""
        reports = FakeReports(documents={ALL_ORDERS: window_orders})
        stream = HistoricalOrderSync(reports, session_factory).run_sync(total_days=14, batch_size_days=7)
        async for progress in stream:
            break
        await stream.aclose()
        stale_id = progress.sync_log_id

        result = await HistoricalOrderSync(reports, session_factory).run_to_completion(total_days=21, batch_size_days=7)

        assert result.sync_log_id != stale_id
        async with session_factory() as session:
            stale = await session.get(SyncLog, stale_id)
        assert stale.status == SyncStatus.FAILED

    async def test_cancelled_run_is_resumable(self, session_factory, seeded_catalog):
        """A cancelled run is picked up again by the next invocation"""
        reports = FakeReports(documents={ALL_ORDERS: window_orders})
        token = CancellationToken()
        token.cancel("operator")

        cancelled = await HistoricalOrderSync(reports, session_factory).run_to_completion(
            total_days=14, batch_size_days=7, token=token,
        )
        assert cancelled.status == SyncStatus.CANCELLED
        assert reports.requested == []

        resumed = await HistoricalOrderSync(reports, session_factory).run_to_completion(total_days=14, batch_size_days=7)

        assert resumed.sync_log_id == cancelled.sync_log_id
        assert resumed.status == SyncStatus.SUCCESS
        assert resumed.batches_completed == 2

    async def test_runtime_budget_requests_continuation(self, session_factory, seeded_catalog):
        """Exhausting the budget checkpoints and flags continuation"""
        reports = FakeReports(documents={ALL_ORDERS: window_orders})
        sync = HistoricalOrderSync(reports, session_factory, max_runtime_seconds=0)

        result = await sync.run_to_completion(total_days=21, batch_size_days=7)

        assert result.needs_continuation is True
        assert result.status == SyncStatus.RUNNING
        assert result.batches_completed == 1

        final = await HistoricalOrderSync(reports, session_factory).run_to_completion(total_days=21, batch_size_days=7)
        assert final.sync_log_id == result.sync_log_id
        assert final.batches_completed == 3
        assert final.needs_continuation is False


class TestRecentOrdersSync:
    """Tests for the trailing single-window sync"""

    async def test_single_window(self, session_factory, seeded_catalog):
        """The look-back is fetched as one report"""
        reports = FakeReports(documents={ALL_ORDERS: window_orders})

        result = await RecentOrdersSync(reports, session_factory).run(days=3)

        assert result.total_batches == 1
        assert result.status == SyncStatus.SUCCESS
        assert len(reports.requested) == 1
