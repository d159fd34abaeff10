"""
Collaborator interfaces the routing core depends on.

The record schema for contacts, conversations and operators belongs to the
surrounding platform; the core only sees these narrow interfaces.

Implementations:
  - InMemoryConversationStore / InMemoryOperatorDirectory /
    InMemoryCustomerDirectory / InMemorySurveyResultSink  (database/store_memory.py)
  - JsonSessionSnapshotStore / InMemorySessionSnapshotStore (database/store_file.py)
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import (
    Contact, Conversation, DialogKind, Engagement, MessageDirection,
    OperatorRef, OwnerRef, Sector, StoredMessage,
)


class ConversationStore(ABC):
    """Contacts, conversations and their message log."""

    # ── Contacts ──────────────────────────────────────────────

    @abstractmethod
    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        ...

    @abstractmethod
    async def get_or_create_contact(self, tenant: str, address: str, name: str = "") -> Contact:
        ...

    @abstractmethod
    async def update_contact(self, contact: Contact) -> Contact:
        ...

    # ── Conversations ─────────────────────────────────────────

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def find_open_conversation(self, tenant: str, contact_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def create_conversation(
        self,
        tenant: str,
        contact_id: str,
        channel_id: str,
        owner: Optional[OwnerRef],
        sector_id: Optional[int],
        wallet_id: Optional[int] = None,
        bot_kind: Optional[DialogKind] = None,
    ) -> Conversation:
        ...

    @abstractmethod
    async def update_conversation(self, conversation_id: str, **fields: Any) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def close_conversation(self, conversation_id: str, reason: str) -> Optional[Conversation]:
        """Mark a conversation finished. Returns None when it does not exist."""
        ...

    @abstractmethod
    async def latest_engagement(self, tenant: str, contact_id: str) -> Optional[Engagement]:
        """Most recent conversation of the contact that had a human owner."""
        ...

    # ── Messages ──────────────────────────────────────────────

    @abstractmethod
    async def add_message(
        self,
        conversation_id: str,
        direction: MessageDirection,
        body: str,
        sender: str = "",
        external_id: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> StoredMessage:
        ...

    @abstractmethod
    async def list_messages(self, conversation_id: str) -> list[StoredMessage]:
        ...


class OperatorDirectory(ABC):
    """Sectors, operators and who is online right now."""

    @abstractmethod
    async def list_sectors(self, tenant: str, channel_id: Optional[str] = None) -> list[Sector]:
        """Sectors of the tenant that receive chats (optionally scoped to a channel)."""
        ...

    @abstractmethod
    async def get_sector(self, tenant: str, sector_id: int) -> Optional[Sector]:
        ...

    @abstractmethod
    async def get_operator(self, tenant: str, operator_id: int) -> Optional[OperatorRef]:
        ...

    @abstractmethod
    async def list_operators(self, tenant: str, sector_id: int) -> list[OperatorRef]:
        ...

    @abstractmethod
    async def list_online_operators(self, tenant: str, sector_id: int) -> list[OperatorRef]:
        ...

    @abstractmethod
    async def count_open_conversations(self, tenant: str, operator_id: int) -> int:
        ...


class CustomerDirectory(ABC):

    @abstractmethod
    async def find_by_document(self, tenant: str, document: str) -> Optional[str]:
        """Customer id for a company document number, if registered."""
        ...


class SurveyResultSink(ABC):

    @abstractmethod
    async def record_answer(
        self, tenant: str, conversation_id: str, question: int, rating: int,
        operator_id: Optional[int] = None,
    ) -> None:
        ...


class SessionSnapshotStore(ABC):
    """Durable snapshot of every bot session, read once and overwritten whole."""

    @abstractmethod
    async def load_all(self) -> list[dict[str, Any]]:
        ...

    @abstractmethod
    async def save_all(self, sessions: list[dict[str, Any]]) -> None:
        ...
