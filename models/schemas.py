"""
Core data models for the support router.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class WorkItemStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


FINISHED_STATUSES = (WorkItemStatus.COMPLETED, WorkItemStatus.FAILED, WorkItemStatus.CANCELLED)


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
    SYSTEM = "system"


class OwnerKind(str, Enum):
    OPERATOR = "operator"
    SUPERVISION = "supervision"


class OperatorLevel(str, Enum):
    ADMIN = "admin"
    USER = "user"


class DialogKind(IntEnum):
    CHOOSE_SECTOR = 1
    SATISFACTION = 2
    CUSTOMER_LINKING = 3
    CHOOSE_OPERATOR = 4


# ──────────────────────────────────────────────────────────────
#  WorkItem: unit of queued work, grouped by conversation key
# ──────────────────────────────────────────────────────────────

class WorkItem(BaseModel):
    id: str = Field(default_factory=new_id)
    conversation_key: str
    tenant: Optional[str] = None
    payload: dict[str, Any] = {}
    status: WorkItemStatus = WorkItemStatus.PENDING
    priority: int = 0
    retry_count: int = 0
    max_retries: int = 3
    sequence: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    processing_started_at: Optional[datetime] = None
    lease_expires_at: Optional[datetime] = None
    lease_owner: Optional[str] = None
    last_error: Optional[str] = None
    finished_at: Optional[datetime] = None

    @property
    def action(self) -> str:
        return str(self.payload.get("action", ""))

    @property
    def attempt(self) -> int:
        return self.retry_count + 1


# ──────────────────────────────────────────────────────────────
#  Contacts, operators, sectors, conversations
# ──────────────────────────────────────────────────────────────

class Contact(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant: str
    address: str                                # phone number / channel handle
    name: str = ""
    is_only_admin: bool = False
    customer_id: Optional[str] = None
    metadata: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)


class OperatorRef(BaseModel):
    id: int
    tenant: str
    name: str = ""
    sector_id: Optional[int] = None
    level: OperatorLevel = OperatorLevel.USER


class Sector(BaseModel):
    id: int
    tenant: str
    name: str
    receive_chats: bool = True
    default_operator_id: Optional[int] = None
    channel_ids: list[str] = []


class OwnerRef(BaseModel):
    """Who owns a conversation: a concrete operator or the supervision sentinel."""
    kind: OwnerKind
    operator_id: Optional[int] = None

    @classmethod
    def operator(cls, operator_id: int) -> "OwnerRef":
        return cls(kind=OwnerKind.OPERATOR, operator_id=operator_id)

    @classmethod
    def supervision(cls) -> "OwnerRef":
        return cls(kind=OwnerKind.SUPERVISION)

    @property
    def is_supervision(self) -> bool:
        return self.kind == OwnerKind.SUPERVISION

    @model_validator(mode="after")
    def _check_operator(self) -> "OwnerRef":
        if self.kind == OwnerKind.OPERATOR and self.operator_id is None:
            raise ValueError("operator owner requires operator_id")
        if self.kind == OwnerKind.SUPERVISION and self.operator_id is not None:
            raise ValueError("supervision owner cannot carry an operator_id")
        return self


class Engagement(BaseModel):
    """A prior (closed or open) engagement between a contact and an operator."""
    contact_id: str
    operator_id: Optional[int] = None
    sector_id: Optional[int] = None
    started_at: datetime = Field(default_factory=utcnow)


class Conversation(BaseModel):
    id: str = Field(default_factory=new_id)
    tenant: str
    contact_id: str
    channel_id: str
    sector_id: Optional[int] = None
    owner: Optional[OwnerRef] = None
    wallet_id: Optional[int] = None
    bot_kind: Optional[DialogKind] = None
    is_open: bool = True
    finish_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return conversation_key(self.tenant, self.id)


def conversation_key(tenant: str, conversation_id: str) -> str:
    return f"{tenant}:chat:{conversation_id}"


class StoredMessage(BaseModel):
    id: str = Field(default_factory=new_id)
    conversation_id: str
    direction: MessageDirection
    body: str
    external_id: Optional[str] = None
    sender: str = ""
    metadata: dict[str, Any] = {}
    sent_at: datetime = Field(default_factory=utcnow)


class InboundMessage(BaseModel):
    """A message as received from a channel webhook."""
    external_id: str = Field(default_factory=new_id)
    sender: str
    sender_name: str = ""
    body: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = {}


class OutboundMessage(BaseModel):
    to: str
    text: str = ""
    template: Optional[str] = None
    template_params: dict[str, Any] = {}
    quoted_id: Optional[str] = None
    forward_of: Optional[str] = None


class SentMessageRef(BaseModel):
    channel_id: str
    external_id: str
    sent_at: datetime = Field(default_factory=utcnow)


# ──────────────────────────────────────────────────────────────
#  Routing: step definitions and assignment verdicts
# ──────────────────────────────────────────────────────────────

class RuleCondition(BaseModel):
    field: str
    operator: str           # eq | neq | gt | gte | lt | lte | in | contains | regex
    value: Any = None


class RoutingStepDef(BaseModel):
    """Persisted (or default) definition of one pipeline node."""
    id: int
    kind: str
    config: dict[str, Any] = {}
    next_step_id: Optional[int] = None
    fallback_step_id: Optional[int] = None
    description: str = ""


class ChatAssignment(BaseModel):
    """Verdict of a routing step: advance to ``next_step`` or finalize to ``owner``."""
    final: bool
    next_step: Optional[int] = None
    owner: Optional[OwnerRef] = None
    sector_id: Optional[int] = None
    wallet_id: Optional[int] = None
    context: dict[str, Any] = {}

    @classmethod
    def advance(cls, next_step: Optional[int], **context: Any) -> "ChatAssignment":
        return cls(final=False, next_step=next_step, context=context)

    @classmethod
    def finalize(cls, owner: OwnerRef, sector_id: Optional[int] = None,
                 wallet_id: Optional[int] = None) -> "ChatAssignment":
        return cls(final=True, owner=owner, sector_id=sector_id, wallet_id=wallet_id)

    @model_validator(mode="after")
    def _exactly_one(self) -> "ChatAssignment":
        if self.final and self.owner is None:
            raise ValueError("final assignment requires an owner")
        if self.final and self.next_step is not None:
            raise ValueError("final assignment cannot name a next step")
        if not self.final and self.owner is not None:
            raise ValueError("non-final assignment cannot name an owner")
        return self


# ──────────────────────────────────────────────────────────────
#  Bot sessions: generic envelope + per-dialog payload
# ──────────────────────────────────────────────────────────────

class ChooseSectorData(BaseModel):
    kind: Literal["choose_sector"] = "choose_sector"
    options: list[int] = []


class SatisfactionData(BaseModel):
    kind: Literal["satisfaction"] = "satisfaction"
    question_index: int = 0
    initial_rating: Optional[int] = None
    answers: list[int] = []
    operator_id: Optional[int] = None


class CustomerLinkingData(BaseModel):
    kind: Literal["customer_linking"] = "customer_linking"
    attempts: int = 0
    document: Optional[str] = None
    customer_id: Optional[str] = None


class ChooseOperatorData(BaseModel):
    kind: Literal["choose_operator"] = "choose_operator"
    options: list[int] = []


SessionData = Annotated[
    Union[ChooseSectorData, SatisfactionData, CustomerLinkingData, ChooseOperatorData],
    Field(discriminator="kind"),
]


class BotSession(BaseModel):
    conversation_key: str
    dialog_kind: DialogKind
    tenant: str
    conversation_id: str
    contact_id: Optional[str] = None
    sector_id: Optional[int] = None
    step: int = 0
    data: SessionData
    timeout_ms: int = 0                 # 0 disables the inactivity timeout
    created_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)

    def is_idle(self, now: datetime) -> bool:
        if self.timeout_ms <= 0:
            return False
        return (now - self.last_activity_at).total_seconds() * 1000 >= self.timeout_ms
