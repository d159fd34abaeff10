"""
SQL work queue — SQLAlchemy async backend over the ``work_items`` table.

Claims are a single conditional UPDATE:

    UPDATE work_items SET status='processing', locked_by=?, lease_expires_at=?
     WHERE id=? AND status='pending'
       AND NOT EXISTS (SELECT id FROM work_items
                        WHERE conversation_key=? AND status='processing')

A claim counts only when exactly one row changed. On PostgreSQL and SQLite the
partial unique index ``uq_work_items_processing_key`` turns a concurrent
double claim for the same key into an IntegrityError, which is reported as a
lost race.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from database.models import WorkItemRow
from database.session import get_session_factory, session_scope
from job_queue.work_queue import (
    LEASE_EXPIRED_ERROR, STUCK_RESET_ERROR,
    QueueCancelledError, WorkItemFailedError, WorkQueue,
    next_sequence, truncate_error,
)
from models.schemas import FINISHED_STATUSES, WorkItemStatus, new_id, utcnow

logger = structlog.get_logger()

PENDING = WorkItemStatus.PENDING.value
PROCESSING = WorkItemStatus.PROCESSING.value


class SqlWorkQueue(WorkQueue):
    """Durable queue; safe to share between worker processes."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(clock)
        self._factory = session_factory or get_session_factory()

    def _session(self):
        return session_scope(self._factory)

    # ── Producers ─────────────────────────────────────────────

    async def enqueue(self, conversation_key, payload, priority=0, max_retries=3, tenant=None):
        row = WorkItemRow(
            id=new_id(),
            conversation_key=conversation_key,
            tenant=tenant,
            payload=dict(payload),
            status=PENDING,
            priority=priority,
            retry_count=0,
            max_retries=max_retries,
            sequence=next_sequence(),
            created_at=self.clock(),
        )
        async with self._session() as session:
            session.add(row)
        logger.debug("work_item_enqueued", item_id=row.id, key=conversation_key,
                     action=(payload or {}).get("action"), priority=priority)
        return row.id

    async def cancel(self, conversation_key):
        async with self._session() as session:
            ids = (await session.execute(
                select(WorkItemRow.id).where(
                    WorkItemRow.conversation_key == conversation_key,
                    WorkItemRow.status == PENDING,
                )
            )).scalars().all()
            if not ids:
                return 0
            await session.execute(
                update(WorkItemRow)
                .where(WorkItemRow.id.in_(ids), WorkItemRow.status == PENDING)
                .values(status=WorkItemStatus.CANCELLED.value, processed_at=self.clock())
                .execution_options(synchronize_session=False)
            )
        for item_id in ids:
            self._settle(item_id, error=QueueCancelledError("Queue cleared"))
        logger.info("work_items_cancelled", key=conversation_key, count=len(ids))
        return len(ids)

    # ── Scheduling ────────────────────────────────────────────

    async def fetch_candidates(self, limit, excluded_keys=(), tenant=None, excluded_tenants=()):
        busy = select(WorkItemRow.conversation_key).where(WorkItemRow.status == PROCESSING)
        stmt = select(WorkItemRow).where(
            WorkItemRow.status == PENDING,
            WorkItemRow.conversation_key.not_in(busy),
        )
        excluded_keys = list(excluded_keys)
        if excluded_keys:
            stmt = stmt.where(WorkItemRow.conversation_key.not_in(excluded_keys))
        if tenant is not None:
            stmt = stmt.where(WorkItemRow.tenant == tenant)
        excluded_tenants = list(excluded_tenants)
        if excluded_tenants:
            stmt = stmt.where(or_(
                WorkItemRow.tenant.is_(None),
                WorkItemRow.tenant.not_in(excluded_tenants),
            ))
        stmt = stmt.order_by(WorkItemRow.priority.desc(), WorkItemRow.sequence.asc()).limit(limit)
        async with self._session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [r.to_model() for r in rows]

    async def try_lease(self, item_id, owner, lease_expires_at):
        async with self._factory() as session:
            key = (await session.execute(
                select(WorkItemRow.conversation_key).where(WorkItemRow.id == item_id)
            )).scalar_one_or_none()
            if key is None:
                return None

            # derived table keeps MySQL from rejecting a self-referencing UPDATE
            other = aliased(WorkItemRow)
            busy = (
                select(other.id)
                .where(other.conversation_key == key, other.status == PROCESSING)
                .subquery()
            )
            stmt = (
                update(WorkItemRow)
                .where(
                    WorkItemRow.id == item_id,
                    WorkItemRow.status == PENDING,
                    ~select(busy.c.id).exists(),
                )
                .values(
                    status=PROCESSING,
                    locked_by=owner,
                    lease_expires_at=lease_expires_at,
                    processing_started_at=self.clock(),
                )
                .execution_options(synchronize_session=False)
            )
            try:
                result = await session.execute(stmt)
                if result.rowcount != 1:
                    await session.rollback()
                    return None
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.debug("work_item_claim_race_lost", item_id=item_id, key=key, owner=owner)
                return None

            row = await session.get(WorkItemRow, item_id, populate_existing=True)
            return row.to_model() if row else None

    # ── Outcomes ──────────────────────────────────────────────

    def _owned_clause(self, item_id: str, owner: Optional[str]):
        clauses = [WorkItemRow.id == item_id, WorkItemRow.status == PROCESSING]
        if owner is not None:
            clauses.append(WorkItemRow.locked_by == owner)
        return clauses

    async def complete(self, item_id, owner=None):
        async with self._session() as session:
            result = await session.execute(
                update(WorkItemRow)
                .where(*self._owned_clause(item_id, owner))
                .values(
                    status=WorkItemStatus.COMPLETED.value,
                    processed_at=self.clock(),
                    locked_by=None,
                    lease_expires_at=None,
                )
                .execution_options(synchronize_session=False)
            )
        if result.rowcount != 1:
            logger.warning("work_item_lease_lost", item_id=item_id, owner=owner, outcome="complete")
            return False
        self._settle(item_id, result=item_id)
        return True

    async def fail(self, item_id, error, retryable=True, owner=None):
        message = truncate_error(error)
        async with self._session() as session:
            row = (await session.execute(
                select(WorkItemRow).where(*self._owned_clause(item_id, owner))
            )).scalar_one_or_none()
            if row is None:
                logger.warning("work_item_lease_lost", item_id=item_id, owner=owner, outcome="fail")
                return None

            if retryable and row.retry_count < row.max_retries:
                values = dict(status=PENDING, retry_count=row.retry_count + 1)
            else:
                values = dict(status=WorkItemStatus.FAILED.value, processed_at=self.clock())

            result = await session.execute(
                update(WorkItemRow)
                .where(*self._owned_clause(item_id, owner))
                .values(
                    error=message,
                    locked_by=None,
                    lease_expires_at=None,
                    processing_started_at=None,
                    **values,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None

        status = WorkItemStatus(values["status"])
        if status == WorkItemStatus.FAILED:
            self._settle(item_id, error=WorkItemFailedError(item_id, message))
        return status

    # ── Recovery ──────────────────────────────────────────────

    async def _requeue_where(self, session: AsyncSession, error: str, *clauses) -> list[WorkItemRow]:
        rows = (await session.execute(select(WorkItemRow).where(*clauses))).scalars().all()
        requeued = []
        for row in rows:
            result = await session.execute(
                update(WorkItemRow)
                .where(WorkItemRow.id == row.id, *clauses)
                .values(
                    status=PENDING,
                    locked_by=None,
                    lease_expires_at=None,
                    processing_started_at=None,
                    error=error,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                requeued.append(row)
        return requeued

    async def reclaim_expired_leases(self, now=None):
        now = now or self.clock()
        async with self._session() as session:
            rows = await self._requeue_where(
                session, LEASE_EXPIRED_ERROR,
                WorkItemRow.status == PROCESSING,
                WorkItemRow.lease_expires_at < now,
            )
            return [r.to_model() for r in rows]

    async def reset_stuck(self, started_before):
        async with self._session() as session:
            rows = await self._requeue_where(
                session, STUCK_RESET_ERROR,
                WorkItemRow.status == PROCESSING,
                WorkItemRow.processing_started_at < started_before,
            )
            return len(rows)

    async def release_owned(self, owner):
        async with self._session() as session:
            rows = await self._requeue_where(
                session, LEASE_EXPIRED_ERROR,
                WorkItemRow.status == PROCESSING,
                WorkItemRow.locked_by == owner,
            )
            return len(rows)

    # ── Inspection / housekeeping ─────────────────────────────

    async def get(self, item_id):
        async with self._session() as session:
            row = await session.get(WorkItemRow, item_id)
            return row.to_model() if row else None

    async def list_items(self, conversation_key=None, status=None):
        stmt = select(WorkItemRow)
        if conversation_key is not None:
            stmt = stmt.where(WorkItemRow.conversation_key == conversation_key)
        if status is not None:
            stmt = stmt.where(WorkItemRow.status == WorkItemStatus(status).value)
        stmt = stmt.order_by(WorkItemRow.sequence.asc())
        async with self._session() as session:
            return [r.to_model() for r in (await session.execute(stmt)).scalars().all()]

    async def stats(self, tenant=None):
        stmt = select(WorkItemRow.status, func.count()).group_by(WorkItemRow.status)
        if tenant is not None:
            stmt = stmt.where(WorkItemRow.tenant == tenant)
        counts = {s.value: 0 for s in WorkItemStatus}
        async with self._session() as session:
            for status, count in (await session.execute(stmt)).all():
                counts[status] = count
        return counts

    async def purge_finished(self, older_than):
        finished = [s.value for s in FINISHED_STATUSES]
        async with self._session() as session:
            result = await session.execute(
                delete(WorkItemRow)
                .where(
                    WorkItemRow.status.in_(finished),
                    func.coalesce(WorkItemRow.processed_at, WorkItemRow.created_at) < older_than,
                )
                .execution_options(synchronize_session=False)
            )
        return result.rowcount or 0
