"""
Queue maintenance — periodic housekeeping for the work item table.

Every ``interval`` seconds:
  - delete COMPLETED / FAILED / CANCELLED items older than the retention window
  - return items stuck in PROCESSING longer than ``stuck_after`` to PENDING
  - log the per-status counts
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import timedelta
from typing import Optional

from job_queue.work_queue import WorkQueue

logger = structlog.get_logger()


class QueueMaintenance:

    def __init__(
        self,
        queue: WorkQueue,
        interval_seconds: float = 6 * 60 * 60,
        retention_days: int = 7,
        stuck_after_seconds: float = 60 * 60,
    ):
        self.queue = queue
        self.interval = interval_seconds
        self.retention = timedelta(days=retention_days)
        self.stuck_after = timedelta(seconds=stuck_after_seconds)
        self._task: Optional[asyncio.Task] = None

    async def run_once(self) -> dict[str, int]:
        now = self.queue.clock()
        purged = await self.queue.purge_finished(now - self.retention)
        reset = await self.queue.reset_stuck(now - self.stuck_after)
        stats = await self.queue.stats()
        logger.info("queue_maintenance_done", purged=purged, stuck_reset=reset, **stats)
        return {"purged": purged, "stuck_reset": reset}

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("queue_maintenance_started", interval=self.interval)
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("queue_maintenance_error", error=str(e))
            await asyncio.sleep(self.interval)
