"""
Conversation rooms and the events broadcast into them.

Room names:
    {tenant}:{sector}:monitor       every conversation of the sector
    {tenant}:wallet:{wallet}        conversations of a customer wallet
    {tenant}:{sector}:admin         supervision-owned conversations
    {tenant}:user:{operator}        conversations owned by an operator
    {tenant}:chat:{conversation}    one conversation (open chat windows)

Broadcast failures are logged and swallowed; nothing in the routing core
waits on or retries a notification.
"""
from __future__ import annotations

import structlog
from typing import Any

from models.schemas import Conversation, StoredMessage
from notifications.notifier import Notifier

logger = structlog.get_logger()


def chat_room(conversation: Conversation) -> str:
    return f"{conversation.tenant}:chat:{conversation.id}"


def conversation_rooms(conversation: Conversation) -> list[str]:
    """Audience rooms for a conversation, excluding its own chat room."""
    tenant = conversation.tenant
    rooms = []
    if conversation.sector_id is not None:
        rooms.append(f"{tenant}:{conversation.sector_id}:monitor")
    if conversation.wallet_id is not None:
        rooms.append(f"{tenant}:wallet:{conversation.wallet_id}")
    owner = conversation.owner
    if owner is not None:
        if owner.is_supervision:
            if conversation.sector_id is not None:
                rooms.append(f"{tenant}:{conversation.sector_id}:admin")
        else:
            rooms.append(f"{tenant}:user:{owner.operator_id}")
    return rooms


def _summary(conversation: Conversation) -> dict[str, Any]:
    return {
        "conversation_id": conversation.id,
        "contact_id": conversation.contact_id,
        "channel_id": conversation.channel_id,
        "sector_id": conversation.sector_id,
        "owner": conversation.owner.model_dump(mode="json") if conversation.owner else None,
        "wallet_id": conversation.wallet_id,
        "is_open": conversation.is_open,
        "bot_kind": int(conversation.bot_kind) if conversation.bot_kind is not None else None,
    }


class ConversationNotifier:
    """Maps conversation events onto rooms."""

    def __init__(self, notifier: Notifier):
        self.notifier = notifier

    async def chat_started(self, conversation: Conversation) -> None:
        await self._broadcast(conversation, "chat_started", {"conversation": _summary(conversation)})

    async def chat_updated(self, conversation: Conversation, reason: str = "") -> None:
        await self._broadcast(conversation, "chat_updated",
                              {"conversation": _summary(conversation), "reason": reason})

    async def chat_finished(self, conversation: Conversation) -> None:
        await self._broadcast(conversation, "chat_finished", {
            "conversation": _summary(conversation),
            "reason": conversation.finish_reason,
        })

    async def message(self, conversation: Conversation, message: StoredMessage) -> None:
        payload = {
            "conversation_id": conversation.id,
            "message": message.model_dump(mode="json"),
        }
        await self._broadcast(conversation, "message", payload)

    async def event(self, conversation: Conversation, event: str, data: dict[str, Any]) -> None:
        await self._broadcast(conversation, event, dict(data, conversation_id=conversation.id))

    async def _broadcast(self, conversation: Conversation, event: str, data: dict[str, Any]) -> None:
        for room in [chat_room(conversation), *conversation_rooms(conversation)]:
            await self.notify(room, {"event": event, **data})

    async def notify(self, room: str, payload: dict[str, Any]) -> None:
        try:
            await self.notifier.notify(room, payload)
        except Exception as e:
            logger.warning("notify_failed", room=room, event=payload.get("event"), error=str(e))
