"""
Job worker entry point.

Usage:
    sellerops-worker                  # poll forever
    sellerops-worker --drain          # run until the queue is idle
    sellerops-worker --max-jobs 10
"""

import argparse
import asyncio
import signal

import structlog
from prometheus_client import start_http_server

from sellerops.config import get_settings
from sellerops.config.logging import configure_logging
from sellerops.database.connection import close_database, init_database
from sellerops.jobs.worker import create_worker

logger = structlog.get_logger(__name__)


async def run(drain: bool, max_jobs=None) -> None:
    await init_database()
    worker = create_worker()
    try:
        if drain or max_jobs:
            count = await worker.drain(max_jobs=max_jobs)
            logger.info("Worker finished", jobs_run=count)
            return

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(worker.stop()))
        await worker.start()
    finally:
        await close_database()


def main() -> None:
    parser = argparse.ArgumentParser(description="Seller Operations job worker")
    parser.add_argument("--drain", action="store_true", help="Exit once the queue is idle")
    parser.add_argument("--max-jobs", type=int, default=None, help="Stop after this many jobs")
    parser.add_argument("--metrics", action="store_true", help="Expose Prometheus metrics")
    args = parser.parse_args()

    configure_logging()
    if args.metrics:
        start_http_server(get_settings().monitoring.prometheus_port)
    asyncio.run(run(args.drain, args.max_jobs))


if __name__ == "__main__":
    main()
