"""Sync trigger contract and interval scheduler.

``SyncTrigger`` is what any caller (CLI, scheduler) uses to run a cycle: it
serializes cycles and always answers with a ``SyncResult``. ``SyncScheduler``
drives the trigger on an APScheduler interval.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from taskbridge.core.engine import ReconciliationEngine
from taskbridge.core.errors import SyncCycleError
from taskbridge.core.models import SyncResult

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "taskbridge_sync"


class SyncTrigger:
    """
    Serialized entry point for reconciliation cycles.

    A trigger received while a cycle is running is rejected: the caller gets a
    result with ``rejected=True`` and nothing is queued.
    """

    def __init__(self, engine: ReconciliationEngine):
        self.engine = engine
        self._lock = asyncio.Lock()
        self.last_result: SyncResult | None = None

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def trigger(self) -> SyncResult:
        """
        Run one cycle unless one is already in progress.

        Returns:
            The cycle's result. ``fatal_error`` is set when the cycle aborted.
        """
        if self._lock.locked():
            logger.warning("Sync already in progress, rejecting trigger")
            now = datetime.now(timezone.utc)
            return SyncResult(rejected=True, started_at=now, finished_at=now)

        async with self._lock:
            try:
                result = await self.engine.run_cycle()
            except SyncCycleError as e:
                result = e.result
                result.fatal_error = e.cause
            self.last_result = result
            return result


class SyncScheduler:
    """Runs the trigger every ``interval_seconds`` on an AsyncIOScheduler."""

    def __init__(
        self,
        trigger: SyncTrigger,
        interval_seconds: int,
        on_result: Callable[[SyncResult], Awaitable[None] | None] | None = None,
    ):
        """
        Initialize the scheduler.

        Args:
            trigger: Trigger to invoke
            interval_seconds: Seconds between cycles
            on_result: Optional callback receiving each cycle's result
        """
        self.trigger = trigger
        self.interval_seconds = interval_seconds
        self.on_result = on_result
        self.scheduler = AsyncIOScheduler()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def _add_job(self) -> None:
        self.scheduler.add_job(
            self._run_job,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=SYNC_JOB_ID,
            name="Task sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def start(self) -> None:
        """Start the scheduler (needs a running event loop)."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        self._add_job()
        self.scheduler.start()
        self._running = True
        logger.info(f"Scheduler started, syncing every {self.interval_seconds}s")

    def stop(self) -> None:
        """Stop the scheduler."""
        if not self._running:
            return

        self.scheduler.shutdown(wait=False)
        self._running = False
        logger.info("Scheduler stopped")

    async def run_now(self) -> SyncResult:
        """Run a cycle immediately and restart the interval from now."""
        result = await self._run_job()
        if self._running:
            self._add_job()
            logger.debug("Sync interval timer reset")
        return result

    async def _run_job(self) -> SyncResult:
        result = await self.trigger.trigger()
        if result.fatal_error:
            logger.error(f"Scheduled sync failed: {result.fatal_error}")
        elif not result.rejected:
            logger.info(
                f"Scheduled sync finished: {result.success_count} ok, {result.failure_count} failed"
            )

        if self.on_result:
            outcome = self.on_result(result)
            if asyncio.iscoroutine(outcome):
                await outcome
        return result
