"""
Periodic ingest scheduler.

Runs an ingest cycle at a fixed interval. At most one cycle is in flight:
a tick that fires while a cycle is still running is skipped, not queued.
Stopping the scheduler cancels the in-flight cycle and waits for it to
unwind.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from common.logging import get_logger

from .ingest import Ingester

LOGGER = get_logger(__name__)

JOB_ID = "periodic_ingest"


class IngestScheduler:
    """Manages periodic background ingest cycles."""

    def __init__(self, ingester: Ingester, interval_minutes: float = 60):
        """
        Initialize ingest scheduler.

        Args:
            ingester: Ingester whose run() is invoked on every tick
            interval_minutes: Interval between cycle starts
        """
        self.ingester = ingester
        self.interval_minutes = interval_minutes

        self.scheduler: Optional[AsyncIOScheduler] = None
        self._cycle: Optional[asyncio.Task] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def cycle_in_progress(self) -> bool:
        return self._cycle is not None and not self._cycle.done()

    async def start(self, run_immediately: bool = True) -> None:
        """Start the periodic scheduler, optionally kicking off a first cycle."""
        if self._running:
            LOGGER.warning("Scheduler already running")
            return

        LOGGER.info("Starting periodic ingest", interval_minutes=self.interval_minutes)

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.trigger,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=JOB_ID,
            name="Periodic Ingest",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.start()
        self._running = True

        if run_immediately:
            self._launch()

    async def stop(self) -> None:
        """Stop scheduling and cancel the in-flight cycle, if any."""
        if not self._running:
            return

        LOGGER.info("Stopping periodic ingest")
        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        self._running = False

        cycle = self._cycle
        if cycle is not None and not cycle.done():
            cycle.cancel()
            await asyncio.gather(cycle, return_exceptions=True)

    async def trigger(self) -> Optional[int]:
        """
        Run one cycle unless another is already in flight.

        Returns:
            New-image count of the cycle, or None when it was skipped,
            cancelled or failed
        """
        task = self._launch()
        if task is None:
            return None
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return None
            raise

    def _launch(self) -> Optional[asyncio.Task]:
        if self.cycle_in_progress:
            LOGGER.warning("Ingest cycle already running, skipping tick")
            return None
        self._cycle = asyncio.create_task(self._run_cycle())
        return self._cycle

    async def _run_cycle(self) -> Optional[int]:
        try:
            count = await self.ingester.run()
        except asyncio.CancelledError:
            LOGGER.info("Ingest cycle cancelled")
            raise
        except Exception as e:  # noqa: BLE001
            LOGGER.error("Ingest cycle failed", error=str(e), exc_info=True)
            return None

        if count:
            LOGGER.info("Ingested new images", count=count)
        return count
