"""
Lease Manager — time-bounded exclusive claims on work items.

A lease is not a separate record: it is the (lease_owner, lease_expires_at)
pair on a PROCESSING WorkItem. The manager binds a worker identity, a lease
duration and a clock to the queue's claim/reclaim operations. An expired
lease is reclaimable by any worker, which is how a crashed worker's items
come back.
"""
from __future__ import annotations

import os
import time
import structlog
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from job_queue.work_queue import WorkQueue
from models.schemas import WorkItem, utcnow

logger = structlog.get_logger()


def default_worker_id() -> str:
    return f"worker-{os.getpid()}-{int(time.time() * 1000)}"


class LeaseManager:

    def __init__(
        self,
        queue: WorkQueue,
        lease_duration: float = 30.0,
        owner_id: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.queue = queue
        self.lease_duration = timedelta(seconds=lease_duration)
        self.owner_id = owner_id or default_worker_id()
        self.clock = clock or queue.clock

    def expiry(self) -> datetime:
        return self.clock() + self.lease_duration

    def is_expired(self, item: WorkItem, now: Optional[datetime] = None) -> bool:
        if item.lease_expires_at is None:
            return False
        return (now or self.clock()) > item.lease_expires_at

    async def try_acquire(self, item: WorkItem) -> Optional[WorkItem]:
        return await self.queue.try_lease(item.id, self.owner_id, self.expiry())

    async def acquire_next(
        self,
        excluded_keys: Iterable[str] = (),
        tenant: Optional[str] = None,
        excluded_tenants: Iterable[str] = (),
    ) -> Optional[WorkItem]:
        return await self.queue.acquire_next(
            self.owner_id, self.expiry(), excluded_keys,
            tenant=tenant, excluded_tenants=excluded_tenants,
        )

    async def reclaim_expired(self) -> list[WorkItem]:
        reclaimed = await self.queue.reclaim_expired_leases(self.clock())
        for item in reclaimed:
            logger.warning("lease_reclaimed",
                           item_id=item.id,
                           key=item.conversation_key,
                           previous_owner=item.lease_owner,
                           expired_at=item.lease_expires_at.isoformat() if item.lease_expires_at else None)
        return reclaimed

    async def recover_on_startup(self) -> int:
        """Return items this worker id left in PROCESSING to PENDING (restart of the same id)."""
        count = await self.queue.release_owned(self.owner_id)
        if count:
            logger.info("leases_released", owner=self.owner_id, count=count)
        return count
