"""
In-memory collaborator stores — dict-backed, for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Atomic per call on a single event loop
  - All data lost on process restart
"""
from __future__ import annotations

import structlog
from collections import defaultdict
from typing import Any, Optional

from database.store_base import (
    ConversationStore, CustomerDirectory, OperatorDirectory, SurveyResultSink,
)
from models.schemas import (
    Contact, Conversation, DialogKind, Engagement, MessageDirection,
    OperatorRef, OwnerKind, OwnerRef, Sector, StoredMessage, utcnow,
)

logger = structlog.get_logger()


class InMemoryConversationStore(ConversationStore):

    def __init__(self):
        self._contacts: dict[str, Contact] = {}
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[StoredMessage]] = defaultdict(list)
        self._address_index: dict[str, str] = {}        # "tenant:address" → contact_id

    # ── Contacts ──────────────────────────────────────────────

    async def get_contact(self, contact_id):
        contact = self._contacts.get(contact_id)
        return contact.model_copy() if contact else None

    async def get_or_create_contact(self, tenant, address, name=""):
        cid = self._address_index.get(f"{tenant}:{address}")
        if cid:
            return self._contacts[cid].model_copy()
        contact = Contact(tenant=tenant, address=address, name=name or address)
        self._contacts[contact.id] = contact
        self._address_index[f"{tenant}:{address}"] = contact.id
        logger.debug("contact_created", tenant=tenant, contact_id=contact.id)
        return contact.model_copy()

    async def update_contact(self, contact):
        self._contacts[contact.id] = contact.model_copy()
        self._address_index[f"{contact.tenant}:{contact.address}"] = contact.id
        return contact

    def add_contact(self, contact: Contact) -> Contact:
        self._contacts[contact.id] = contact
        self._address_index[f"{contact.tenant}:{contact.address}"] = contact.id
        return contact

    # ── Conversations ─────────────────────────────────────────

    async def get_conversation(self, conversation_id):
        conversation = self._conversations.get(conversation_id)
        return conversation.model_copy() if conversation else None

    async def find_open_conversation(self, tenant, contact_id):
        for conversation in self._conversations.values():
            if conversation.tenant == tenant and conversation.contact_id == contact_id and conversation.is_open:
                return conversation.model_copy()
        return None

    async def create_conversation(self, tenant, contact_id, channel_id, owner, sector_id,
                                  wallet_id=None, bot_kind=None):
        conversation = Conversation(
            tenant=tenant,
            contact_id=contact_id,
            channel_id=channel_id,
            owner=owner,
            sector_id=sector_id,
            wallet_id=wallet_id,
            bot_kind=bot_kind,
        )
        self._conversations[conversation.id] = conversation
        return conversation.model_copy()

    async def update_conversation(self, conversation_id, **fields):
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None
        updated = conversation.model_copy(update=fields)
        self._conversations[conversation_id] = updated
        return updated.model_copy()

    async def close_conversation(self, conversation_id, reason):
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None
        if conversation.is_open:
            conversation.is_open = False
            conversation.finish_reason = reason
            conversation.finished_at = utcnow()
            conversation.bot_kind = None
        return conversation.model_copy()

    async def latest_engagement(self, tenant, contact_id):
        engaged = [
            c for c in self._conversations.values()
            if c.tenant == tenant and c.contact_id == contact_id
            and c.owner is not None and c.owner.kind == OwnerKind.OPERATOR
        ]
        if not engaged:
            return None
        latest = max(engaged, key=lambda c: c.created_at)
        return Engagement(
            contact_id=contact_id,
            operator_id=latest.owner.operator_id,
            sector_id=latest.sector_id,
            started_at=latest.created_at,
        )

    def open_conversations_for(self, tenant: str, operator_id: int) -> int:
        return sum(
            1 for c in self._conversations.values()
            if c.tenant == tenant and c.is_open and c.owner is not None
            and c.owner.kind == OwnerKind.OPERATOR and c.owner.operator_id == operator_id
        )

    # ── Messages ──────────────────────────────────────────────

    async def add_message(self, conversation_id, direction, body, sender="",
                          external_id=None, metadata=None):
        message = StoredMessage(
            conversation_id=conversation_id,
            direction=MessageDirection(direction),
            body=body,
            sender=sender,
            external_id=external_id,
            metadata=metadata or {},
        )
        self._messages[conversation_id].append(message)
        return message

    async def list_messages(self, conversation_id):
        return list(self._messages.get(conversation_id, []))


class InMemoryOperatorDirectory(OperatorDirectory):
    """
    Sector/operator registry with presence flags.

    Open-conversation counts come from an explicit override when one was set,
    otherwise from the linked conversation store.
    """

    def __init__(self, conversations: Optional[InMemoryConversationStore] = None):
        self._conversations = conversations
        self._sectors: dict[tuple[str, int], Sector] = {}
        self._operators: dict[tuple[str, int], OperatorRef] = {}
        self._online: set[tuple[str, int]] = set()
        self._open_counts: dict[tuple[str, int], int] = {}

    def add_sector(self, sector: Sector) -> Sector:
        self._sectors[(sector.tenant, sector.id)] = sector
        return sector

    def add_operator(self, operator: OperatorRef, online: bool = False) -> OperatorRef:
        self._operators[(operator.tenant, operator.id)] = operator
        if online:
            self._online.add((operator.tenant, operator.id))
        return operator

    def set_online(self, tenant: str, operator_id: int, online: bool = True):
        if online:
            self._online.add((tenant, operator_id))
        else:
            self._online.discard((tenant, operator_id))

    def set_open_conversations(self, tenant: str, operator_id: int, count: int):
        self._open_counts[(tenant, operator_id)] = count

    async def list_sectors(self, tenant, channel_id=None):
        sectors = [
            s for (t, _), s in self._sectors.items()
            if t == tenant and s.receive_chats
            and (channel_id is None or not s.channel_ids or channel_id in s.channel_ids)
        ]
        return sorted(sectors, key=lambda s: s.id)

    async def get_sector(self, tenant, sector_id):
        return self._sectors.get((tenant, sector_id))

    async def get_operator(self, tenant, operator_id):
        return self._operators.get((tenant, operator_id))

    async def list_operators(self, tenant, sector_id):
        operators = [
            o for (t, _), o in self._operators.items()
            if t == tenant and o.sector_id == sector_id
        ]
        return sorted(operators, key=lambda o: o.id)

    async def list_online_operators(self, tenant, sector_id):
        return [
            o for o in await self.list_operators(tenant, sector_id)
            if (tenant, o.id) in self._online
        ]

    async def count_open_conversations(self, tenant, operator_id):
        override = self._open_counts.get((tenant, operator_id))
        if override is not None:
            return override
        if self._conversations is None:
            return 0
        return self._conversations.open_conversations_for(tenant, operator_id)


class InMemoryCustomerDirectory(CustomerDirectory):

    def __init__(self, customers: Optional[dict[str, str]] = None):
        self._customers: dict[str, str] = dict(customers or {})   # "tenant:document" → customer id

    def add_customer(self, tenant: str, document: str, customer_id: str):
        self._customers[f"{tenant}:{document}"] = customer_id

    async def find_by_document(self, tenant, document):
        return self._customers.get(f"{tenant}:{document}")


class InMemorySurveyResultSink(SurveyResultSink):

    def __init__(self):
        self.answers: list[dict[str, Any]] = []

    async def record_answer(self, tenant, conversation_id, question, rating, operator_id=None):
        self.answers.append({
            "tenant": tenant, "conversation_id": conversation_id,
            "question": question, "rating": rating, "operator_id": operator_id,
        })
