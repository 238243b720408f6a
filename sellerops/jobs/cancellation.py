"""
Cooperative cancellation.

A token is passed explicitly down the call chain of one run. Loops check it
per page/batch and the long waits (report polling, rate-limit and
inter-batch delays) sleep through it so a stop request is observed promptly.
Observing a cancellation never interrupts a write: callers flush and exit.
"""

import asyncio
import time
from typing import Optional

import structlog

from sellerops.errors import SyncCancelledError

logger = structlog.get_logger(__name__)


class CancellationToken:
    """In-process stop flag for a single run."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        self.reason = reason or "cancel requested"
        self._event.set()

    @property
    def requested(self) -> bool:
        return self._event.is_set()

    async def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def raise_if_cancelled(self) -> None:
        if await self.is_cancelled():
            raise SyncCancelledError(self.reason or "cancel requested")

    async def sleep(self, seconds: float) -> bool:
        """
        Wait up to ``seconds``.

        Returns:
            True if cancellation was observed before or during the wait
        """
        if await self.is_cancelled():
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return await self.is_cancelled()
        return True


class JobCancellationToken(CancellationToken):
    """
    Token backed by the job record's ``cancel_requested`` flag.

    Lets an API process cancel a run executing inside a worker process.
    The flag is re-read at most once per ``check_interval`` seconds.
    """

    def __init__(self, queue, job_id: int, check_interval: float = 5.0) -> None:
        super().__init__()
        self.queue = queue
        self.job_id = job_id
        self.check_interval = check_interval
        self._last_check = 0.0

    async def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        now = time.monotonic()
        if now - self._last_check < self.check_interval:
            return False
        self._last_check = now
        if await self.queue.is_cancel_requested(self.job_id):
            logger.info("Cancellation observed", job_id=self.job_id)
            self.cancel("job cancel requested")
            return True
        return False

    async def sleep(self, seconds: float) -> bool:
        deadline = time.monotonic() + max(seconds, 0)
        while True:
            if await self.is_cancelled():
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            if await super().sleep(min(remaining, self.check_interval)):
                return True


async def pause(seconds: float, token: Optional[CancellationToken] = None) -> bool:
    """Sleep honoring ``token`` when given; returns True if cancelled."""
    if token is not None:
        return await token.sleep(seconds)
    if seconds > 0:
        await asyncio.sleep(seconds)
    return False
