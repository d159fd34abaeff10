"""
Conversation work queue — abstract interface with in-memory and SQL backends.

Every piece of outbound or side-effect work is a WorkItem grouped under a
conversation key. The queue guarantees:

  - at most one item per conversation key is PROCESSING at any time
  - items for one key are handed out in (priority desc, enqueue order) order
  - claiming, retrying and reclaiming are single conditional updates against
    the item store, so several worker processes can share one table

Item lifecycle:
  PENDING ──lease──▶ PROCESSING ──complete──▶ COMPLETED
     ▲                   │
     └──retry / reclaim──┤
                         └──retries exhausted / permanent──▶ FAILED
  PENDING ──cancel(key)──▶ CANCELLED

Backends:
  InMemoryWorkQueue  — dev/tests, not durable
  SqlWorkQueue       — SQLAlchemy async (job_queue/sql_queue.py)
"""
from __future__ import annotations

import asyncio
import time
import structlog
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from models.schemas import (
    FINISHED_STATUSES, WorkItem, WorkItemStatus, new_id, utcnow,
)

logger = structlog.get_logger()

ERROR_MAX_LENGTH = 1000
STUCK_RESET_ERROR = "Reset: stuck in PROCESSING for too long"
LEASE_EXPIRED_ERROR = "Lease expired before completion"


# ──────────────────────────────────────────────────────────────
#  Errors
# ──────────────────────────────────────────────────────────────

class WorkQueueError(Exception):
    """Base class for queue errors."""


class PermanentWorkError(WorkQueueError):
    """Raised by a handler for an item that can never succeed (skips retries)."""
    retryable = False


class QueueCancelledError(WorkQueueError):
    """Delivered to callers waiting on an item that was cancelled."""


class WorkItemFailedError(WorkQueueError):
    """Delivered to callers waiting on an item that ended FAILED."""

    def __init__(self, item_id: str, error: Optional[str]):
        super().__init__(error or "work item failed")
        self.item_id = item_id
        self.error = error


_last_sequence = 0


def next_sequence() -> int:
    """Strictly increasing enqueue sequence, roughly wall-clock ordered across processes."""
    global _last_sequence
    _last_sequence = max(time.time_ns(), _last_sequence + 1)
    return _last_sequence


def truncate_error(error: Any) -> str:
    return str(error)[:ERROR_MAX_LENGTH]


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class WorkQueue(ABC):
    """Abstract per-conversation work queue."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._waiters: dict[str, list[asyncio.Future]] = {}

    # ── Producers ─────────────────────────────────────────────

    @abstractmethod
    async def enqueue(
        self,
        conversation_key: str,
        payload: dict[str, Any],
        priority: int = 0,
        max_retries: int = 3,
        tenant: Optional[str] = None,
    ) -> str:
        """Persist a PENDING item and return its id."""
        ...

    @abstractmethod
    async def cancel(self, conversation_key: str) -> int:
        """Mark every PENDING item of a key CANCELLED. PROCESSING items are untouched."""
        ...

    # ── Scheduling ────────────────────────────────────────────

    @abstractmethod
    async def fetch_candidates(
        self,
        limit: int,
        excluded_keys: Iterable[str] = (),
        tenant: Optional[str] = None,
        excluded_tenants: Iterable[str] = (),
    ) -> list[WorkItem]:
        """PENDING items whose key is not currently leased, by (priority desc, sequence asc)."""
        ...

    @abstractmethod
    async def try_lease(
        self, item_id: str, owner: str, lease_expires_at: datetime,
    ) -> Optional[WorkItem]:
        """Atomically move a PENDING item to PROCESSING unless its key is already leased."""
        ...

    async def acquire_next(
        self,
        owner: str,
        lease_expires_at: datetime,
        excluded_keys: Iterable[str] = (),
        tenant: Optional[str] = None,
        excluded_tenants: Iterable[str] = (),
        batch: int = 30,
    ) -> Optional[WorkItem]:
        """Claim the head item of the first eligible key."""
        excluded = set(excluded_keys)
        candidates = await self.fetch_candidates(
            batch, excluded, tenant=tenant, excluded_tenants=excluded_tenants,
        )
        seen: set[str] = set()
        for item in candidates:
            if item.conversation_key in seen:
                continue
            seen.add(item.conversation_key)
            leased = await self.try_lease(item.id, owner, lease_expires_at)
            if leased is not None:
                return leased
        return None

    # ── Outcomes ──────────────────────────────────────────────

    @abstractmethod
    async def complete(self, item_id: str, owner: Optional[str] = None) -> bool:
        """Archive a PROCESSING item as COMPLETED. False if the lease was lost."""
        ...

    @abstractmethod
    async def fail(
        self,
        item_id: str,
        error: Any,
        retryable: bool = True,
        owner: Optional[str] = None,
    ) -> Optional[WorkItemStatus]:
        """Requeue (retry budget left) or mark FAILED. Returns the new status."""
        ...

    # ── Recovery ──────────────────────────────────────────────

    @abstractmethod
    async def reclaim_expired_leases(self, now: Optional[datetime] = None) -> list[WorkItem]:
        """Return PROCESSING items whose lease has expired to PENDING.

        The returned items describe the leases as they were before reclaiming.
        """
        ...

    @abstractmethod
    async def reset_stuck(self, started_before: datetime) -> int:
        """Return items PROCESSING since before the threshold to PENDING."""
        ...

    @abstractmethod
    async def release_owned(self, owner: str) -> int:
        """Return every item leased by ``owner`` to PENDING (startup recovery)."""
        ...

    # ── Inspection / housekeeping ─────────────────────────────

    @abstractmethod
    async def get(self, item_id: str) -> Optional[WorkItem]:
        ...

    @abstractmethod
    async def list_items(
        self,
        conversation_key: Optional[str] = None,
        status: Optional[WorkItemStatus] = None,
    ) -> list[WorkItem]:
        ...

    @abstractmethod
    async def stats(self, tenant: Optional[str] = None) -> dict[str, int]:
        """Item count per status."""
        ...

    @abstractmethod
    async def purge_finished(self, older_than: datetime) -> int:
        """Delete COMPLETED / FAILED / CANCELLED items finished before ``older_than``."""
        ...

    async def close(self):
        for item_id in list(self._waiters):
            self._settle(item_id, error=QueueCancelledError("Queue closed"))

    # ── Waiters (in-process) ──────────────────────────────────

    async def wait_for(self, item_id: str) -> asyncio.Future:
        """
        Future resolved when the item completes, rejected on FAILED or CANCELLED.

        An item that already finished yields a future settled from its stored
        status. Unknown ids are rejected with WorkQueueError.
        """
        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(item_id, []).append(future)
        item = await self.get(item_id)
        if item is None:
            self._settle_one(item_id, future, error=WorkQueueError(f"work item {item_id} not found"))
        elif item.status == WorkItemStatus.COMPLETED:
            self._settle_one(item_id, future, result=item_id)
        elif item.status == WorkItemStatus.FAILED:
            self._settle_one(item_id, future, error=WorkItemFailedError(item_id, item.last_error))
        elif item.status == WorkItemStatus.CANCELLED:
            self._settle_one(item_id, future, error=QueueCancelledError("Work item cancelled"))
        return future

    def _settle_one(self, item_id: str, future: asyncio.Future, result: Any = None,
                    error: Optional[BaseException] = None):
        waiters = self._waiters.get(item_id, [])
        if future in waiters:
            waiters.remove(future)
        if not waiters:
            self._waiters.pop(item_id, None)
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)

    def _settle(self, item_id: str, result: Any = None, error: Optional[BaseException] = None):
        for future in self._waiters.pop(item_id, []):
            if future.done():
                continue
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (dev/testing)
# ──────────────────────────────────────────────────────────────

class InMemoryWorkQueue(WorkQueue):
    """
    Dict-backed queue. Each operation runs without awaiting in between its
    check and its update, which makes it atomic on a single event loop.
    Not durable: use SqlWorkQueue for production.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        super().__init__(clock)
        self._items: dict[str, WorkItem] = {}

    def _leased_keys(self) -> set[str]:
        return {
            i.conversation_key for i in self._items.values()
            if i.status == WorkItemStatus.PROCESSING
        }

    async def enqueue(self, conversation_key, payload, priority=0, max_retries=3, tenant=None):
        item = WorkItem(
            id=new_id(),
            conversation_key=conversation_key,
            tenant=tenant,
            payload=dict(payload),
            priority=priority,
            max_retries=max_retries,
            sequence=next_sequence(),
            created_at=self.clock(),
        )
        self._items[item.id] = item
        logger.debug("work_item_enqueued", item_id=item.id, key=conversation_key,
                     action=item.action, priority=priority)
        return item.id

    async def cancel(self, conversation_key):
        now = self.clock()
        cancelled = []
        for item in self._items.values():
            if item.conversation_key == conversation_key and item.status == WorkItemStatus.PENDING:
                item.status = WorkItemStatus.CANCELLED
                item.finished_at = now
                cancelled.append(item.id)
        for item_id in cancelled:
            self._settle(item_id, error=QueueCancelledError("Queue cleared"))
        if cancelled:
            logger.info("work_items_cancelled", key=conversation_key, count=len(cancelled))
        return len(cancelled)

    async def fetch_candidates(self, limit, excluded_keys=(), tenant=None, excluded_tenants=()):
        blocked = self._leased_keys() | set(excluded_keys)
        skipped_tenants = set(excluded_tenants)
        pending = [
            i for i in self._items.values()
            if i.status == WorkItemStatus.PENDING
            and i.conversation_key not in blocked
            and (tenant is None or i.tenant == tenant)
            and (i.tenant is None or i.tenant not in skipped_tenants)
        ]
        pending.sort(key=lambda i: (-i.priority, i.sequence))
        return [i.model_copy() for i in pending[:limit]]

    async def try_lease(self, item_id, owner, lease_expires_at):
        item = self._items.get(item_id)
        if item is None or item.status != WorkItemStatus.PENDING:
            return None
        if item.conversation_key in self._leased_keys():
            return None
        item.status = WorkItemStatus.PROCESSING
        item.lease_owner = owner
        item.lease_expires_at = lease_expires_at
        item.processing_started_at = self.clock()
        return item.model_copy()

    def _owned(self, item_id: str, owner: Optional[str]) -> Optional[WorkItem]:
        item = self._items.get(item_id)
        if item is None or item.status != WorkItemStatus.PROCESSING:
            return None
        if owner is not None and item.lease_owner != owner:
            return None
        return item

    async def complete(self, item_id, owner=None):
        item = self._owned(item_id, owner)
        if item is None:
            logger.warning("work_item_lease_lost", item_id=item_id, owner=owner, outcome="complete")
            return False
        item.status = WorkItemStatus.COMPLETED
        item.finished_at = self.clock()
        item.lease_owner = None
        item.lease_expires_at = None
        self._settle(item_id, result=item_id)
        return True

    async def fail(self, item_id, error, retryable=True, owner=None):
        item = self._owned(item_id, owner)
        if item is None:
            logger.warning("work_item_lease_lost", item_id=item_id, owner=owner, outcome="fail")
            return None
        item.last_error = truncate_error(error)
        item.lease_owner = None
        item.lease_expires_at = None
        item.processing_started_at = None
        if retryable and item.retry_count < item.max_retries:
            item.retry_count += 1
            item.status = WorkItemStatus.PENDING
            return item.status
        item.status = WorkItemStatus.FAILED
        item.finished_at = self.clock()
        self._settle(item_id, error=WorkItemFailedError(item_id, item.last_error))
        return item.status

    def _requeue(self, item: WorkItem, error: str):
        item.status = WorkItemStatus.PENDING
        item.lease_owner = None
        item.lease_expires_at = None
        item.processing_started_at = None
        item.last_error = error

    async def reclaim_expired_leases(self, now=None):
        now = now or self.clock()
        reclaimed = []
        for item in self._items.values():
            if (item.status == WorkItemStatus.PROCESSING
                    and item.lease_expires_at is not None
                    and item.lease_expires_at < now):
                reclaimed.append(item.model_copy())
                self._requeue(item, LEASE_EXPIRED_ERROR)
        return reclaimed

    async def reset_stuck(self, started_before):
        count = 0
        for item in self._items.values():
            if (item.status == WorkItemStatus.PROCESSING
                    and item.processing_started_at is not None
                    and item.processing_started_at < started_before):
                self._requeue(item, STUCK_RESET_ERROR)
                count += 1
        return count

    async def release_owned(self, owner):
        count = 0
        for item in self._items.values():
            if item.status == WorkItemStatus.PROCESSING and item.lease_owner == owner:
                self._requeue(item, LEASE_EXPIRED_ERROR)
                count += 1
        return count

    async def get(self, item_id):
        item = self._items.get(item_id)
        return item.model_copy() if item else None

    async def list_items(self, conversation_key=None, status=None):
        items = [
            i for i in self._items.values()
            if (conversation_key is None or i.conversation_key == conversation_key)
            and (status is None or i.status == status)
        ]
        items.sort(key=lambda i: i.sequence)
        return [i.model_copy() for i in items]

    async def stats(self, tenant=None):
        counts = {s.value: 0 for s in WorkItemStatus}
        for item in self._items.values():
            if tenant is None or item.tenant == tenant:
                counts[item.status.value] += 1
        return counts

    async def purge_finished(self, older_than):
        doomed = [
            i.id for i in self._items.values()
            if i.status in FINISHED_STATUSES
            and (i.finished_at or i.created_at) < older_than
        ]
        for item_id in doomed:
            del self._items[item_id]
        return len(doomed)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_work_queue(
    backend: str = "memory",
    session_factory=None,
    clock: Callable[[], datetime] = utcnow,
) -> WorkQueue:
    """Create a queue for the configured backend."""
    if backend == "sql":
        from job_queue.sql_queue import SqlWorkQueue
        logger.info("work_queue_backend", backend="sql")
        return SqlWorkQueue(session_factory=session_factory, clock=clock)
    if backend != "memory":
        raise ValueError(f"Unknown work queue backend: {backend!r}")
    logger.info("work_queue_backend", backend="memory")
    return InMemoryWorkQueue(clock=clock)
