"""
Worker Pool — polls the work queue and executes items, one per conversation key.

Each poll cycle:
  1. reclaim expired leases (crash recovery)
  2. fetch up to K × 3 PENDING candidates, ordered by (priority desc, enqueue order)
  3. keep the head item of each distinct key
  4. cap at K minus the keys already executing here
  5. lease and run each one as its own task

A handler exception never reaches the poll loop. It is logged with the key and
attempt number and turned into a retry or a terminal failure; exceptions that
carry ``retryable = False`` (PermanentWorkError, non-retryable ChannelError)
skip the remaining retry budget.

Usage:
    pool = WorkerPool(queue, handler, max_concurrent_keys=10)
    await pool.start(poll_interval_ms=100)
    ...
    await pool.stop()          # in-flight items finish, nothing new starts
"""
from __future__ import annotations

import asyncio
import random
import time
import structlog
from typing import Any, Awaitable, Callable, Iterable, Optional

from job_queue.lease import LeaseManager
from job_queue.work_queue import WorkQueue
from models.schemas import WorkItem, WorkItemStatus

logger = structlog.get_logger()

Handler = Callable[[WorkItem], Awaitable[Any]]


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class WorkerPool:

    def __init__(
        self,
        queue: WorkQueue,
        handler: Handler,
        leases: Optional[LeaseManager] = None,
        max_concurrent_keys: int = 10,
        poll_interval_ms: int = 100,
        jitter_ms: tuple[int, int] = (500, 2000),
        tenant: Optional[str] = None,
        excluded_tenants: Iterable[str] = (),
        name: str = "default",
    ):
        self.queue = queue
        self.handler = handler
        self.leases = leases or LeaseManager(queue)
        self.max_concurrent_keys = max_concurrent_keys
        self.poll_interval = poll_interval_ms / 1000
        self.jitter_ms = jitter_ms
        self.tenant = tenant
        self.excluded_tenants = tuple(excluded_tenants)
        self.name = name

        self._in_flight: dict[str, asyncio.Task] = {}
        self._cooldown_until: dict[str, float] = {}
        self._cycle_lock = asyncio.Lock()
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight_keys(self) -> set[str]:
        return set(self._in_flight)

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self, poll_interval_ms: Optional[int] = None) -> Optional[asyncio.Task]:
        """Begin polling. A second call while running is a no-op."""
        if self._running:
            return self._task
        if poll_interval_ms is not None:
            self.poll_interval = poll_interval_ms / 1000
        self._running = True
        self._stop_event.clear()
        await self.leases.recover_on_startup()
        self._task = asyncio.create_task(self._run())
        logger.info("worker_pool_started",
                    pool=self.name,
                    worker_id=self.leases.owner_id,
                    max_concurrent_keys=self.max_concurrent_keys,
                    poll_interval_ms=int(self.poll_interval * 1000))
        return self._task

    async def stop(self):
        """Halt polling and let in-flight executions finish."""
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        await self.wait_idle()
        logger.info("worker_pool_stopped", pool=self.name, worker_id=self.leases.owner_id)

    async def wait_idle(self):
        """Wait until every execution started so far has finished."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    async def _run(self):
        while self._running:
            try:
                await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("worker_pool_cycle_error", pool=self.name, error=str(e), exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    # ── Scheduling ────────────────────────────────────────────

    def _cooling_keys(self) -> set[str]:
        now = time.monotonic()
        for key in [k for k, until in self._cooldown_until.items() if until <= now]:
            del self._cooldown_until[key]
        return set(self._cooldown_until)

    def _cool_down(self, key: str):
        low, high = self.jitter_ms
        if high <= 0:
            return
        self._cooldown_until[key] = time.monotonic() + random.uniform(low, high) / 1000

    async def run_cycle(self) -> int:
        """Run one scheduling round. Returns the number of items started."""
        if self._cycle_lock.locked():
            return 0
        async with self._cycle_lock:
            await self.leases.reclaim_expired()

            free = self.max_concurrent_keys - len(self._in_flight)
            if free <= 0:
                return 0

            excluded = set(self._in_flight) | self._cooling_keys()
            candidates = await self.queue.fetch_candidates(
                self.max_concurrent_keys * 3,
                excluded,
                tenant=self.tenant,
                excluded_tenants=self.excluded_tenants,
            )

            heads: dict[str, WorkItem] = {}
            for item in candidates:
                heads.setdefault(item.conversation_key, item)

            started = 0
            for item in list(heads.values())[:free]:
                leased = await self.leases.try_acquire(item)
                if leased is None:
                    continue
                self._launch(leased)
                started += 1
            return started

    def _launch(self, item: WorkItem):
        key = item.conversation_key
        task = asyncio.create_task(self._execute(item))
        self._in_flight[key] = task
        task.add_done_callback(lambda _t, key=key: self._in_flight.pop(key, None))

    # ── Execution ─────────────────────────────────────────────

    async def _execute(self, item: WorkItem):
        key = item.conversation_key
        owner = self.leases.owner_id
        try:
            try:
                await self.handler(item)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                retryable = bool(getattr(exc, "retryable", True))
                logger.warning("work_item_handler_failed",
                               item_id=item.id,
                               key=key,
                               action=item.action,
                               attempt=item.attempt,
                               max_retries=item.max_retries,
                               retryable=retryable,
                               error=_describe(exc))
                status = await self.queue.fail(item.id, _describe(exc), retryable=retryable, owner=owner)
                if status == WorkItemStatus.FAILED:
                    logger.error("work_item_failed",
                                 item_id=item.id,
                                 key=key,
                                 action=item.action,
                                 attempts=item.attempt,
                                 error=_describe(exc))
            else:
                await self.queue.complete(item.id, owner=owner)
                logger.debug("work_item_completed", item_id=item.id, key=key, action=item.action)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # storage failure while recording the outcome; the lease will expire
            logger.error("work_item_outcome_error", item_id=item.id, key=key, error=str(e), exc_info=True)
        finally:
            self._cool_down(key)
