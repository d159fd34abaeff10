"""
Distribution Coordinator — decides where an inbound message goes.

on_inbound_message(tenant, channel_id, message):
  1. resolve or create the contact
  2. open conversation exists  → enqueue record_message on its key; when a
                                 bot owns it, feed the text to the bot engine
  3. no open conversation      → sector choice menu, an entry dialog, or the
                                 routing pipeline; create the conversation and
                                 enqueue record_message marked as new

Everything with provider I/O (sending, broadcasting) is enqueued as a work
item on the conversation key; nothing here waits on a provider.

``submit_inbound`` is the webhook-facing entry: it only enqueues a
``process_inbound`` item keyed by contact, so routing for one contact is
serialized by the queue.

The coordinator also owns the terminal side effects dialogs trigger
(finish, hand off, transfers). The bot engine reaches them through
QueuedBotActions, which turns each one into a ``bot_action`` work item.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from bots.base import BotDependencies
from bots.engine import BotSessionEngine
from channels.base import MessageDeduplicator
from config.settings import Settings
from database.store_base import ConversationStore, OperatorDirectory
from job_queue.work_queue import WorkQueue
from models.schemas import (
    ChatAssignment, Contact, Conversation, DialogKind, InboundMessage, OwnerRef,
    SatisfactionData, Sector, WorkItem,
)
from routing.factory import PipelineCache
from routing.pipeline import PipelineConfigurationError

logger = structlog.get_logger()

SURVEY_STARTED = "Iniciando pesquisa de satisfação."
HANDED_OFF = "Direcionado para atendimento humano."


class DistributionError(Exception):
    """A distribution request references something that does not exist."""


class DistributionStatus(str, Enum):
    EXISTING = "existing"           # appended to an open conversation
    CREATED = "created"             # new conversation, routed to an owner
    BOT = "bot"                     # new conversation, owned by a dialog
    UNASSIGNED = "unassigned"       # new conversation, routing failed


@dataclass
class DistributionResult:
    status: DistributionStatus
    contact: Contact
    conversation: Conversation
    assignment: Optional[ChatAssignment] = None
    bot_kind: Optional[DialogKind] = None
    error: str = ""


def contact_key(tenant: str, address: str) -> str:
    return f"{tenant}:contact:{address}"


class QueuedBotActions:
    """
    BotActions handed to the bot engine.

    Replies go straight to the queue. Terminal actions (finish, hand off,
    transfers) are enqueued as ``bot_action`` items on the conversation key
    behind the replies, so a failing hand-off is retried by the worker pool
    after the session is already gone.
    """

    def __init__(self, coordinator: "DistributionCoordinator"):
        self.coordinator = coordinator

    async def send_text(self, conversation_id, text, priority=0):
        await self.coordinator.send_text(conversation_id, text, priority=priority)

    async def add_system_message(self, conversation_id, text):
        await self.coordinator.add_system_message(conversation_id, text)

    async def conversation_is_open(self, conversation_id):
        return await self.coordinator.conversation_is_open(conversation_id)

    async def finish_conversation(self, conversation_id, reason):
        await self._queue(conversation_id, "finish", reason=reason)

    async def hand_off_to_human(self, conversation_id, reason):
        await self._queue(conversation_id, "hand_off", reason=reason)

    async def transfer_to_sector(self, conversation_id, sector_id):
        await self._queue(conversation_id, "transfer_sector", sector_id=sector_id)

    async def transfer_to_operator(self, conversation_id, operator_id):
        await self._queue(conversation_id, "transfer_operator", operator_id=operator_id)

    async def _queue(self, conversation_id: str, kind: str, **args: Any):
        conversation = await self.coordinator._require(conversation_id)
        await self.coordinator._enqueue(
            conversation.key, conversation.tenant, "bot_action",
            conversation_id=conversation.id, kind=kind, **args,
        )


class DistributionCoordinator:

    def __init__(
        self,
        queue: WorkQueue,
        conversations: ConversationStore,
        directory: OperatorDirectory,
        pipelines: PipelineCache,
        bots: BotSessionEngine,
        settings: Optional[Settings] = None,
        deduplicator: Optional[MessageDeduplicator] = None,
    ):
        self.queue = queue
        self.conversations = conversations
        self.directory = directory
        self.pipelines = pipelines
        self.bots = bots
        self.settings = settings or Settings()
        self.deduplicator = deduplicator or MessageDeduplicator()
        bots.attach(QueuedBotActions(self))

    @property
    def bot_deps(self) -> BotDependencies:
        return self.bots.deps

    # ──────────────────────────────────────────────────────────
    #  Inbound
    # ──────────────────────────────────────────────────────────

    async def submit_inbound(self, tenant: str, channel_id: str, message: InboundMessage) -> Optional[str]:
        """Queue an inbound message for processing. Returns the item id, None for redeliveries."""
        if self.deduplicator.is_duplicate(f"{tenant}:{channel_id}:{message.external_id}"):
            logger.info("inbound_duplicate_dropped", tenant=tenant, channel=channel_id,
                        external_id=message.external_id)
            return None
        return await self._enqueue(
            contact_key(tenant, message.sender), tenant, "process_inbound",
            channel_id=channel_id, message=message.model_dump(mode="json"),
        )

    async def handle_process_inbound(self, payload: dict[str, Any], item: WorkItem) -> DistributionResult:
        message = InboundMessage.model_validate(payload["message"])
        return await self.on_inbound_message(item.tenant or payload["tenant"], payload["channel_id"], message)

    async def on_inbound_message(self, tenant: str, channel_id: str, message: InboundMessage) -> DistributionResult:
        contact = await self.conversations.get_or_create_contact(tenant, message.sender, message.sender_name)
        log = logger.bind(tenant=tenant, channel=channel_id, contact_id=contact.id,
                          external_id=message.external_id)

        current = await self.conversations.find_open_conversation(tenant, contact.id)
        if current is not None:
            await self._record(current, message, is_new=False)
            if current.bot_kind is not None:
                await self.bots.advance(
                    current.key, message.body,
                    kind=current.bot_kind, tenant=tenant, conversation_id=current.id,
                    contact_id=contact.id, sector_id=current.sector_id,
                )
            log.debug("inbound_existing_conversation", conversation_id=current.id,
                      bot=current.bot_kind.name if current.bot_kind is not None else None)
            return DistributionResult(DistributionStatus.EXISTING, contact, current, bot_kind=current.bot_kind)

        sectors = await self.directory.list_sectors(tenant, channel_id)
        if not sectors:
            conversation = await self.conversations.create_conversation(
                tenant, contact.id, channel_id, owner=None, sector_id=None,
            )
            await self._record(conversation, message, is_new=True)
            log.error("distribution_no_sector", conversation_id=conversation.id)
            return DistributionResult(DistributionStatus.UNASSIGNED, contact, conversation,
                                      error="no sector receives chats on this channel")

        bot_kind = await self._entry_dialog(tenant, contact, sectors)
        if bot_kind is not None:
            conversation = await self.conversations.create_conversation(
                tenant, contact.id, channel_id, owner=None, sector_id=sectors[0].id, bot_kind=bot_kind,
            )
            await self._record(conversation, message, is_new=True)
            await self.bots.start(
                conversation.key, bot_kind, tenant=tenant, conversation_id=conversation.id,
                contact_id=contact.id, sector_id=conversation.sector_id,
            )
            log.info("distribution_bot_started", conversation_id=conversation.id, bot=bot_kind.name)
            return DistributionResult(DistributionStatus.BOT, contact, conversation, bot_kind=bot_kind)

        sector = sectors[0]
        try:
            assignment = await self.pipelines.run(tenant, sector.id, contact)
        except PipelineConfigurationError as e:
            conversation = await self.conversations.create_conversation(
                tenant, contact.id, channel_id, owner=None, sector_id=sector.id,
            )
            await self._record(conversation, message, is_new=True)
            log.error("distribution_routing_failed", conversation_id=conversation.id,
                      sector_id=sector.id, error=str(e))
            return DistributionResult(DistributionStatus.UNASSIGNED, contact, conversation, error=str(e))

        conversation = await self.conversations.create_conversation(
            tenant, contact.id, channel_id,
            owner=assignment.owner,
            sector_id=assignment.sector_id,
            wallet_id=assignment.wallet_id,
        )
        await self._record(conversation, message, is_new=True)
        log.info("distribution_conversation_created", conversation_id=conversation.id,
                 sector_id=conversation.sector_id, owner=assignment.owner.kind.value,
                 operator_id=assignment.owner.operator_id)
        return DistributionResult(DistributionStatus.CREATED, contact, conversation, assignment=assignment)

    async def _entry_dialog(self, tenant: str, contact: Contact, sectors: list[Sector]) -> Optional[DialogKind]:
        if len(sectors) > 1 and self.settings.sector_choice_for(tenant) == "ask_first":
            return DialogKind.CHOOSE_SECTOR

        for name in self.settings.entry_dialogs_for(tenant):
            try:
                kind = DialogKind[name.upper()]
            except KeyError:
                logger.warning("entry_dialog_unknown", tenant=tenant, dialog=name)
                continue
            dialog = self.bots.registry.get(kind)
            if dialog is not None and await dialog.should_activate(tenant, contact, self.bot_deps):
                return kind
        return None

    async def _record(self, conversation: Conversation, message: InboundMessage, is_new: bool):
        await self._enqueue(
            conversation.key, conversation.tenant, "record_message",
            conversation_id=conversation.id, message=message.model_dump(mode="json"), is_new=is_new,
        )

    # ──────────────────────────────────────────────────────────
    #  Outbound helpers
    # ──────────────────────────────────────────────────────────

    async def _enqueue(self, key: str, tenant: str, action: str, priority: int = 0, **payload: Any) -> str:
        return await self.queue.enqueue(
            key,
            {"action": action, "tenant": tenant, **payload},
            priority=priority,
            max_retries=self.settings.queue_for(tenant).max_retries,
            tenant=tenant,
        )

    async def _require(self, conversation_id: str) -> Conversation:
        conversation = await self.conversations.get_conversation(conversation_id)
        if conversation is None:
            raise DistributionError(f"conversation {conversation_id} not found")
        return conversation

    async def send_text(self, conversation_id: str, text: str, priority: int = 0,
                        sender: str = "bot", quoted_id: Optional[str] = None) -> str:
        conversation = await self._require(conversation_id)
        return await self._enqueue(
            conversation.key, conversation.tenant, "send_message", priority=priority,
            conversation_id=conversation.id, text=text, sender=sender, quoted_id=quoted_id,
        )

    async def add_system_message(self, conversation_id: str, text: str, notify: bool = True) -> str:
        conversation = await self._require(conversation_id)
        return await self._enqueue(
            conversation.key, conversation.tenant, "system_message",
            conversation_id=conversation.id, text=text, notify=notify,
        )

    async def _notify(self, conversation: Conversation, event: str, **data: Any) -> str:
        return await self._enqueue(
            conversation.key, conversation.tenant, "notify",
            conversation_id=conversation.id, event=event, data=data,
        )

    async def conversation_is_open(self, conversation_id: str) -> bool:
        conversation = await self.conversations.get_conversation(conversation_id)
        return conversation is not None and conversation.is_open

    # ──────────────────────────────────────────────────────────
    #  Terminal actions
    # ──────────────────────────────────────────────────────────

    async def finish_conversation(self, conversation_id: str, reason: str) -> Optional[Conversation]:
        conversation = await self.conversations.close_conversation(conversation_id, reason)
        if conversation is None:
            logger.warning("finish_unknown_conversation", conversation_id=conversation_id)
            return None
        await self.bots.discard(conversation.key, "conversation_finished")
        await self._notify(conversation, "chat_finished")
        logger.info("conversation_finished", tenant=conversation.tenant,
                    conversation_id=conversation.id, reason=reason)
        return conversation

    async def hand_off_to_human(self, conversation_id: str, reason: str) -> Conversation:
        """Route a bot-owned conversation through the pipeline of its sector."""
        conversation = await self._require(conversation_id)
        sector_id = conversation.sector_id
        if sector_id is None:
            sectors = await self.directory.list_sectors(conversation.tenant, conversation.channel_id)
            sector_id = sectors[0].id if sectors else None
        if sector_id is None:
            updated = await self.conversations.update_conversation(conversation.id, bot_kind=None)
            logger.error("hand_off_no_sector", conversation_id=conversation.id)
            return updated
        return await self._reassign(conversation, sector_id, HANDED_OFF, reason)

    async def transfer_to_sector(self, conversation_id: str, sector_id: int) -> Conversation:
        conversation = await self._require(conversation_id)
        sector = await self.directory.get_sector(conversation.tenant, sector_id)
        if sector is None:
            raise DistributionError(f"sector {sector_id} not found for tenant {conversation.tenant}")
        return await self._reassign(
            conversation, sector.id, f"Transferido para o setor {sector.name}!", "sector_transfer",
        )

    async def transfer_to_operator(self, conversation_id: str, operator_id: int) -> Conversation:
        conversation = await self._require(conversation_id)
        operator = await self.directory.get_operator(conversation.tenant, operator_id)
        if operator is None:
            raise DistributionError(f"operator {operator_id} not found for tenant {conversation.tenant}")
        updated = await self.conversations.update_conversation(
            conversation.id,
            owner=OwnerRef.operator(operator.id),
            sector_id=operator.sector_id if operator.sector_id is not None else conversation.sector_id,
            bot_kind=None,
        )
        await self.bots.discard(conversation.key, "transferred")
        await self.add_system_message(conversation.id, f"Transferido para {operator.name}!")
        await self._notify(updated, "chat_started")
        logger.info("conversation_transferred", tenant=conversation.tenant,
                    conversation_id=conversation.id, operator_id=operator.id)
        return updated

    async def _reassign(self, conversation: Conversation, sector_id: int, system_text: str,
                        reason: str) -> Conversation:
        contact = await self.conversations.get_contact(conversation.contact_id)
        if contact is None:
            raise DistributionError(f"contact {conversation.contact_id} not found")

        fields: dict[str, Any] = {"sector_id": sector_id, "bot_kind": None, "owner": None}
        try:
            assignment = await self.pipelines.run(conversation.tenant, sector_id, contact)
            fields.update(owner=assignment.owner, sector_id=assignment.sector_id,
                          wallet_id=assignment.wallet_id)
        except PipelineConfigurationError as e:
            logger.error("reassign_routing_failed", conversation_id=conversation.id,
                         sector_id=sector_id, error=str(e))

        updated = await self.conversations.update_conversation(conversation.id, **fields)
        await self.bots.discard(conversation.key, "reassigned")
        await self.add_system_message(conversation.id, system_text)
        await self._notify(updated, "chat_started")
        logger.info("conversation_reassigned", tenant=conversation.tenant, conversation_id=conversation.id,
                    sector_id=updated.sector_id, reason=reason,
                    owner=updated.owner.kind.value if updated.owner else None)
        return updated

    # ──────────────────────────────────────────────────────────
    #  Operator-initiated
    # ──────────────────────────────────────────────────────────

    async def start_satisfaction_survey(self, conversation_id: str, operator_id: Optional[int] = None,
                                        ask_initial_rating: bool = True) -> Conversation:
        """Hand a finished human conversation to the satisfaction survey."""
        conversation = await self._require(conversation_id)
        if not conversation.is_open:
            raise DistributionError(f"conversation {conversation_id} is closed")
        if operator_id is None and conversation.owner is not None:
            operator_id = conversation.owner.operator_id

        updated = await self.conversations.update_conversation(conversation.id, bot_kind=DialogKind.SATISFACTION)
        await self.add_system_message(conversation.id, SURVEY_STARTED, notify=False)
        await self.bots.start(
            conversation.key, DialogKind.SATISFACTION,
            tenant=conversation.tenant, conversation_id=conversation.id,
            contact_id=conversation.contact_id, sector_id=conversation.sector_id,
            data=SatisfactionData(operator_id=operator_id),
            step=None if ask_initial_rating else 1,
        )
        return updated

    async def cancel_pending(self, conversation_key: str) -> int:
        return await self.queue.cancel(conversation_key)
