"""Bounded admission control for extraction pipelines.

At most ``max_workers`` pipelines (upload + model call + parse) run at
once. Excess callers wait on the semaphore; a caller whose cancel event
fires, or whose admission timeout elapses, while waiting gets
AdmissionCancelledError and never runs its pipeline.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from enum import Enum

from invoice_processor.shared.errors import AdmissionCancelledError

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 5


class AdmissionState(str, Enum):
    """Lifecycle of one request passing through the pool."""

    WAITING = "waiting"
    ADMITTED = "admitted"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Admission:
    """Handle for a single request's trip through the pool."""

    def __init__(self) -> None:
        self.state = AdmissionState.WAITING


class WorkerPool:
    """Fixed-capacity gate over an asyncio semaphore.

    The semaphore's own waiter list is the only queue; admission order is
    not guaranteed to be FIFO.
    """

    def __init__(self, max_workers: int = DEFAULT_MAX_WORKERS) -> None:
        """Initialize the pool.

        Args:
            max_workers: Slot count; values <= 0 fall back to the default of 5
        """
        if max_workers <= 0:
            max_workers = DEFAULT_MAX_WORKERS
        self.max_workers = max_workers
        self._semaphore = asyncio.Semaphore(max_workers)
        self._in_flight = 0
        self._waiting = 0

    @property
    def in_flight(self) -> int:
        """Number of admitted requests currently holding a slot."""
        return self._in_flight

    @property
    def waiting(self) -> int:
        """Number of requests blocked on admission."""
        return self._waiting

    async def acquire(
        self,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        """Wait for a free slot.

        Args:
            timeout: Seconds to wait before giving up (None = no limit)
            cancel_event: Caller's cancellation signal

        Raises:
            AdmissionCancelledError: If the cancel event fired or the timeout
                elapsed before a slot was free
        """
        if cancel_event is not None and cancel_event.is_set():
            raise AdmissionCancelledError("cancelled before waiting for a worker")

        self._waiting += 1
        try:
            await self._wait_for_slot(timeout, cancel_event)
        finally:
            self._waiting -= 1
        self._in_flight += 1

    async def _wait_for_slot(
        self, timeout: float | None, cancel_event: asyncio.Event | None
    ) -> None:
        acquire = asyncio.ensure_future(self._semaphore.acquire())
        waiters: set[asyncio.Future[object]] = {acquire}
        cancel_wait = None
        if cancel_event is not None:
            cancel_wait = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            self._abandon(acquire)
            raise
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()

        if acquire in done:
            return

        self._abandon(acquire)
        if cancel_wait is not None and cancel_wait in done:
            logger.info("Request cancelled while waiting for a worker")
            raise AdmissionCancelledError("cancelled while waiting for a worker")
        logger.warning(f"No worker became free within {timeout}s")
        raise AdmissionCancelledError(f"no worker available within {timeout}s")

    def _abandon(self, acquire: "asyncio.Future[object]") -> None:
        """Give back a slot that was won after the caller stopped waiting."""
        if acquire.done():
            if not acquire.cancelled() and acquire.exception() is None:
                self._semaphore.release()
        else:
            acquire.cancel()

    def release(self) -> None:
        """Return a slot to the pool."""
        self._in_flight -= 1
        self._semaphore.release()

    @asynccontextmanager
    async def slot(
        self,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[Admission]:
        """Hold one slot for the duration of the block.

        The slot is released when the block exits, including on error or
        task cancellation.

        Example:
            >>> async with pool.slot(timeout=5) as admission:
            ...     invoice = await run_pipeline()
        """
        admission = Admission()
        try:
            await self.acquire(timeout=timeout, cancel_event=cancel_event)
        except AdmissionCancelledError:
            admission.state = AdmissionState.CANCELLED
            raise
        admission.state = AdmissionState.ADMITTED
        try:
            admission.state = AdmissionState.RUNNING
            yield admission
        finally:
            self.release()
            admission.state = AdmissionState.COMPLETED
