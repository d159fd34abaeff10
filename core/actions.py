"""
Work item actions — what the worker pool executes for each queued item.

    record_message    store an inbound message, notify its rooms
    send_message      send through the conversation's channel, store OUTBOUND
    system_message    store a SYSTEM line, notify
    notify            broadcast a conversation event
    process_inbound   run distribution for a message queued by the webhook
    bot_action        finish / hand off / transfer a conversation a dialog released

Payloads carry ids, not objects: every handler reloads what it needs, so a
retried item sees the current state. A handler raises PermanentWorkError when
the item can never succeed (the conversation or the channel is gone).
"""
from __future__ import annotations

import structlog
from typing import Any, Awaitable, Callable

from channels.base import ChannelRegistry
from core.coordinator import DistributionError
from database.store_base import ConversationStore
from job_queue.work_queue import PermanentWorkError
from models.schemas import (
    Conversation, InboundMessage, MessageDirection, OutboundMessage, WorkItem,
)
from notifications.rooms import ConversationNotifier

logger = structlog.get_logger()

ActionHandler = Callable[[dict[str, Any], WorkItem], Awaitable[Any]]

CHAT_STARTED_BY_CONTACT = "Atendimento iniciado pelo cliente!"


class ActionDispatcher:
    """Maps ``payload["action"]`` to a handler; callable as a worker pool handler."""

    def __init__(
        self,
        conversations: ConversationStore,
        channels: ChannelRegistry,
        notifier: ConversationNotifier,
        coordinator=None,
    ):
        self.conversations = conversations
        self.channels = channels
        self.notifier = notifier
        self.coordinator = coordinator
        self._handlers: dict[str, ActionHandler] = {
            "record_message": self._record_message,
            "send_message": self._send_message,
            "system_message": self._system_message,
            "notify": self._notify,
            "process_inbound": self._process_inbound,
            "bot_action": self._bot_action,
        }

    def register(self, action: str, handler: ActionHandler):
        self._handlers[action] = handler

    @property
    def actions(self) -> list[str]:
        return sorted(self._handlers)

    async def __call__(self, item: WorkItem) -> Any:
        return await self.dispatch(item)

    async def dispatch(self, item: WorkItem) -> Any:
        handler = self._handlers.get(item.action)
        if handler is None:
            raise PermanentWorkError(f"Unknown work item action: {item.action!r}")
        logger.debug("work_item_dispatch", item_id=item.id, key=item.conversation_key,
                     action=item.action, attempt=item.attempt)
        return await handler(item.payload, item)

    async def _conversation(self, payload: dict[str, Any]) -> Conversation:
        conversation_id = payload.get("conversation_id")
        if not conversation_id:
            raise PermanentWorkError("payload has no conversation_id")
        conversation = await self.conversations.get_conversation(conversation_id)
        if conversation is None:
            raise PermanentWorkError(f"conversation {conversation_id} not found")
        return conversation

    # ── Handlers ──────────────────────────────────────────────

    async def _record_message(self, payload: dict[str, Any], item: WorkItem):
        conversation = await self._conversation(payload)
        message = InboundMessage.model_validate(payload["message"])

        # A retried item may already have stored the message.
        stored = await self.conversations.list_messages(conversation.id)
        if any(m.external_id == message.external_id and m.direction == MessageDirection.INBOUND
               for m in stored):
            logger.info("inbound_already_recorded", conversation_id=conversation.id,
                        external_id=message.external_id)
            return None

        if payload.get("is_new"):
            await self.conversations.add_message(
                conversation.id, MessageDirection.SYSTEM, CHAT_STARTED_BY_CONTACT, sender="system",
            )
            await self.notifier.chat_started(conversation)

        record = await self.conversations.add_message(
            conversation.id,
            MessageDirection.INBOUND,
            message.body,
            sender=message.sender,
            external_id=message.external_id,
            metadata=message.metadata,
        )
        await self.notifier.message(conversation, record)
        return record

    async def _send_message(self, payload: dict[str, Any], item: WorkItem):
        conversation = await self._conversation(payload)
        contact = await self.conversations.get_contact(conversation.contact_id)
        if contact is None:
            raise PermanentWorkError(f"contact {conversation.contact_id} not found")
        adapter = self.channels.get(conversation.channel_id)
        if adapter is None:
            raise PermanentWorkError(f"channel {conversation.channel_id} is not registered")

        outbound = OutboundMessage(
            to=contact.address,
            text=payload.get("text", ""),
            template=payload.get("template"),
            template_params=payload.get("template_params") or {},
            quoted_id=payload.get("quoted_id"),
            forward_of=payload.get("forward_of"),
        )
        if outbound.forward_of:
            ref = await adapter.forward(conversation.key, outbound)
        else:
            ref = await adapter.send(conversation.key, outbound)

        record = await self.conversations.add_message(
            conversation.id,
            MessageDirection.OUTBOUND,
            outbound.text or outbound.template or "",
            sender=payload.get("sender", ""),
            external_id=ref.external_id,
            metadata={"channel_id": ref.channel_id},
        )
        await self.notifier.message(conversation, record)
        return ref

    async def _system_message(self, payload: dict[str, Any], item: WorkItem):
        conversation = await self._conversation(payload)
        record = await self.conversations.add_message(
            conversation.id, MessageDirection.SYSTEM, payload.get("text", ""), sender="system",
        )
        if payload.get("notify", True):
            await self.notifier.message(conversation, record)
        return record

    async def _notify(self, payload: dict[str, Any], item: WorkItem):
        if payload.get("room"):
            await self.notifier.notify(payload["room"], payload.get("data") or {})
            return None

        conversation = await self._conversation(payload)
        event = payload.get("event", "chat_updated")
        data = payload.get("data") or {}
        if event == "chat_started":
            await self.notifier.chat_started(conversation)
        elif event == "chat_finished":
            await self.notifier.chat_finished(conversation)
        elif event == "chat_updated":
            await self.notifier.chat_updated(conversation, reason=data.get("reason", ""))
        else:
            await self.notifier.event(conversation, event, data)
        return None

    async def _process_inbound(self, payload: dict[str, Any], item: WorkItem):
        if self.coordinator is None:
            raise PermanentWorkError("no coordinator attached for inbound processing")
        result = await self.coordinator.handle_process_inbound(payload, item)
        return result.status.value

    async def _bot_action(self, payload: dict[str, Any], item: WorkItem):
        if self.coordinator is None:
            raise PermanentWorkError("no coordinator attached for bot actions")
        conversation = await self._conversation(payload)
        kind = payload.get("kind")
        try:
            if kind == "finish":
                await self.coordinator.finish_conversation(conversation.id, payload.get("reason", ""))
            elif kind == "hand_off":
                await self.coordinator.hand_off_to_human(conversation.id, payload.get("reason", ""))
            elif kind == "transfer_sector":
                await self.coordinator.transfer_to_sector(conversation.id, payload["sector_id"])
            elif kind == "transfer_operator":
                await self.coordinator.transfer_to_operator(conversation.id, payload["operator_id"])
            else:
                raise PermanentWorkError(f"unknown bot action: {kind!r}")
        except DistributionError as e:
            raise PermanentWorkError(str(e)) from e
        return kind

