"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB; SQLite serializes it to TEXT.
  - String primary keys (uuid hex) for work items; enqueue order is carried by
    the ``sequence`` column, not by the key.
  - The work item table is the only shared mutable resource between worker
    processes. Every claim/retry/reclaim is a conditional UPDATE against it.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, JSON, String, Text, text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from models.schemas import WorkItem, WorkItemStatus, new_id


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ──────────────────────────────────────────────────────────────
#  Work items
# ──────────────────────────────────────────────────────────────

class WorkItemRow(Base):
    __tablename__ = "work_items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    conversation_key: Mapped[str] = mapped_column(String(256), nullable=False)
    tenant: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(32), default=WorkItemStatus.PENDING.value)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    sequence: Mapped[int] = mapped_column(BigInteger, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    locked_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_work_items_status_priority", "status", "priority", "sequence"),
        Index("ix_work_items_key_status", "conversation_key", "status"),
        Index("ix_work_items_lease", "status", "lease_expires_at"),
        # a second PROCESSING row for the same key violates this index, so a
        # racing claim fails at the database instead of double-leasing
        Index(
            "uq_work_items_processing_key", "conversation_key", unique=True,
            postgresql_where=text("status = 'processing'"),
            sqlite_where=text("status = 'processing'"),
        ).ddl_if(dialect=("postgresql", "sqlite")),
    )

    def to_model(self) -> WorkItem:
        return WorkItem(
            id=self.id,
            conversation_key=self.conversation_key,
            tenant=self.tenant,
            payload=self.payload or {},
            status=WorkItemStatus(self.status),
            priority=self.priority,
            retry_count=self.retry_count,
            max_retries=self.max_retries,
            sequence=self.sequence,
            created_at=_aware(self.created_at),
            processing_started_at=_aware(self.processing_started_at),
            lease_expires_at=_aware(self.lease_expires_at),
            lease_owner=self.locked_by,
            last_error=self.error,
            finished_at=_aware(self.processed_at),
        )


# ──────────────────────────────────────────────────────────────
#  Routing flows (persisted pipeline definitions)
# ──────────────────────────────────────────────────────────────

class RoutingFlowRow(Base):
    __tablename__ = "routing_flows"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant: Mapped[str] = mapped_column(String(128), nullable=False)
    sector_id: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(256), default="")
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    steps: Mapped[list["RoutingStepRow"]] = relationship(
        back_populates="flow", lazy="selectin", order_by="RoutingStepRow.step_number",
    )

    __table_args__ = (
        Index("ix_routing_flows_scope", "tenant", "sector_id", unique=True),
    )


class RoutingStepRow(Base):
    __tablename__ = "routing_steps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    flow_id: Mapped[int] = mapped_column(ForeignKey("routing_flows.id", ondelete="CASCADE"), nullable=False)
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    config: Mapped[Any] = mapped_column(JSON, default=dict)
    next_step_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    fallback_step_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    description: Mapped[str] = mapped_column(String(256), default="")
    enabled: Mapped[bool] = mapped_column(Boolean, default=True)

    flow: Mapped["RoutingFlowRow"] = relationship(back_populates="steps")

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind, "config": self.config or {},
            "next_step_id": self.next_step_id,
            "fallback_step_id": self.fallback_step_id,
            "description": self.description,
        }
