"""
Choose-sector dialog.

    0 NEW ─▶ 1 AWAITING_CHOICE ─▶ 2 DONE (transfer to the chosen sector)

Only sectors that receive chats on the conversation's channel are offered.
They are numbered from 1 in id order and frozen into the session when the
menu is sent, so a sector added mid-dialog cannot shift the numbering.
"""
from __future__ import annotations

import structlog

from bots.base import BotDependencies, DialogOutcome, TerminalAction, parse_option
from config.settings import BotConfig
from models.schemas import BotSession, ChooseSectorData, DialogKind

logger = structlog.get_logger()

NEW, AWAITING_CHOICE, DONE = 0, 1, 2

MENU_HEADER = "Olá, tudo bem? Escolha um setor para continuar:"
MENU_FOOTER = "Digite o número do setor desejado!"
INVALID_OPTION_MSG = "Opção inválida! Tente novamente."
REDIRECT_MSG = "Estamos te redirecionando para o setor {name}.\nVocê será atendido em breve!"
TIMEOUT_REASON = "Sem escolha de setor por inatividade"


class ChooseSectorDialog:

    kind = DialogKind.CHOOSE_SECTOR
    initial_step = NEW
    terminal_step = DONE

    def new_data(self) -> ChooseSectorData:
        return ChooseSectorData()

    def timeout_ms(self, config: BotConfig) -> int:
        return config.choose_sector_timeout_ms

    async def _menu(self, session: BotSession, deps: BotDependencies) -> tuple[list[int], str]:
        conversation = await deps.conversations.get_conversation(session.conversation_id)
        channel_id = conversation.channel_id if conversation is not None else None
        sectors = {s.id: s for s in await deps.directory.list_sectors(session.tenant, channel_id)}
        options = [sid for sid in session.data.options if sid in sectors] or sorted(sectors)
        lines = [f"{i} - {sectors[sid].name}" for i, sid in enumerate(options, start=1)]
        return options, "\n".join([MENU_HEADER, *lines, MENU_FOOTER])

    async def start(self, session, deps):
        options, menu = await self._menu(session, deps)
        updated = session.model_copy(update={
            "step": AWAITING_CHOICE,
            "data": session.data.model_copy(update={"options": options}),
        })
        return DialogOutcome(updated, replies=[menu])

    async def advance(self, session, text, deps):
        if session.step == NEW:
            return await self.start(session, deps)

        options = session.data.options
        choice = parse_option(text, len(options))
        if choice is None:
            return DialogOutcome.reprompt(session, INVALID_OPTION_MSG)

        sector_id = options[choice - 1]
        sector = await deps.directory.get_sector(session.tenant, sector_id)
        if sector is None or not sector.receive_chats:
            logger.info("bot_sector_option_gone", key=session.conversation_key, sector_id=sector_id)
            return DialogOutcome.reprompt(session, INVALID_OPTION_MSG)

        return DialogOutcome(
            session.model_copy(update={"step": DONE}),
            replies=[REDIRECT_MSG.format(name=sector.name)],
            action=TerminalAction.to_sector(sector.id, reason=f"Setor escolhido: {sector.name}"),
        )

    async def should_activate(self, tenant, contact, deps):
        return len(await deps.directory.list_sectors(tenant)) > 1

    async def on_timeout(self, session, deps):
        return DialogOutcome(
            session.model_copy(update={"step": DONE}),
            action=TerminalAction.hand_off(TIMEOUT_REASON),
        )
