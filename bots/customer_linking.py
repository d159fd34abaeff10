"""
Customer-linking dialog.

    0 AWAITING_DOCUMENT ─▶ 2 DONE (hand off to human routing)

Asks for the contact's 14-digit company document (CNPJ), looks the customer
up and links it to the contact when found. The conversation goes to human
routing whether or not the customer was found.
"""
from __future__ import annotations

import re
import structlog
from typing import Optional

from bots.base import DialogOutcome, TerminalAction
from config.settings import BotConfig
from models.schemas import CustomerLinkingData, DialogKind

logger = structlog.get_logger()

AWAITING_DOCUMENT, DONE = 0, 2

ASK_DOCUMENT_MSG = "Bem-vindo(a)!\nDigite seu CNPJ para iniciarmos seu atendimento"
INVALID_DOCUMENT_MSG = (
    "CNPJ inválido. Por favor, digite um CNPJ válido "
    "(apenas números ou com formatação XX.XXX.XXX/XXXX-XX)."
)
CUSTOMER_FOUND_MSG = "Cliente encontrado! Vinculando seu cadastro..."
CUSTOMER_LINKED_MSG = "Cadastro vinculado com sucesso! Você será direcionado para atendimento humano."
CUSTOMER_NOT_FOUND_MSG = (
    "Cliente não encontrado em nossa base de dados. Você será direcionado para atendimento humano."
)
TIMEOUT_MSG = "Tempo esgotado por inatividade. Você será direcionado para atendimento humano."
HAND_OFF_SYSTEM_MSG = "Cliente não vinculado. Direcionando para atendimento humano."

_REPEATED_DIGIT = re.compile(r"^(\d)\1{13}$")


def normalize_document(text: str) -> Optional[str]:
    """14 digits, punctuation ignored; a single repeated digit is rejected."""
    digits = re.sub(r"\D", "", text or "")
    if len(digits) != 14 or _REPEATED_DIGIT.match(digits):
        return None
    return digits


class CustomerLinkingDialog:

    kind = DialogKind.CUSTOMER_LINKING
    initial_step = AWAITING_DOCUMENT
    terminal_step = DONE

    def new_data(self) -> CustomerLinkingData:
        return CustomerLinkingData()

    def timeout_ms(self, config: BotConfig) -> int:
        return config.customer_linking_timeout_ms

    async def start(self, session, deps):
        return DialogOutcome(session, replies=[ASK_DOCUMENT_MSG])

    async def advance(self, session, text, deps):
        document = normalize_document(text)
        if document is None:
            return DialogOutcome.reprompt(session, INVALID_DOCUMENT_MSG)

        data = session.data.model_copy(update={"document": document, "attempts": session.data.attempts + 1})
        customer_id = await self._lookup(session.tenant, document, deps)

        if customer_id is None:
            return DialogOutcome(
                session.model_copy(update={"step": DONE, "data": data}),
                replies=[CUSTOMER_NOT_FOUND_MSG],
                action=TerminalAction.hand_off("Cliente não encontrado", system_message=HAND_OFF_SYSTEM_MSG),
            )

        contact = await deps.conversations.get_contact(session.contact_id) if session.contact_id else None
        if contact is not None:
            await deps.conversations.update_contact(contact.model_copy(update={"customer_id": customer_id}))
            logger.info("bot_customer_linked", key=session.conversation_key,
                        contact_id=contact.id, customer_id=customer_id)

        return DialogOutcome(
            session.model_copy(update={
                "step": DONE,
                "data": data.model_copy(update={"customer_id": customer_id}),
            }),
            replies=[CUSTOMER_FOUND_MSG, CUSTOMER_LINKED_MSG],
            action=TerminalAction.hand_off("Cliente vinculado"),
        )

    async def _lookup(self, tenant: str, document: str, deps) -> Optional[str]:
        if deps.customers is None:
            return None
        try:
            return await deps.customers.find_by_document(tenant, document)
        except Exception as e:
            logger.warning("bot_customer_lookup_failed", tenant=tenant, error=str(e))
            return None

    async def should_activate(self, tenant, contact, deps):
        if not deps.config(tenant).customer_linking_enabled:
            return False
        return contact.customer_id is None

    async def on_timeout(self, session, deps):
        return DialogOutcome(
            session.model_copy(update={"step": DONE}),
            replies=[TIMEOUT_MSG],
            action=TerminalAction.hand_off("Inatividade na vinculação", system_message=HAND_OFF_SYSTEM_MSG),
        )
