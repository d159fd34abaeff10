"""
Choose-operator dialog.

    0 NEW ─▶ 1 AWAITING_CHOICE ─▶ 2 DONE

The contact picks one of the sector's operators by number or by name, or
asks for whoever is available next ("nova vendedora" / the last option),
which hands the conversation to the routing pipeline.
"""
from __future__ import annotations

import unicodedata

from bots.base import DialogOutcome, TerminalAction, parse_option
from config.settings import BotConfig
from models.schemas import ChooseOperatorData, DialogKind

NEW, AWAITING_CHOICE, DONE = 0, 1, 2

NEXT_AVAILABLE_OPTION = "nova vendedora"
MENU_HEADER = "Olá! 😊\n\nCom qual das nossas vendedoras você gostaria de falar?"
MENU_FOOTER = (
    "Caso ainda não tenha sido atendido(a) por nenhuma delas, é só responder com: "
    "\"Nova vendedora\" que vamos te direcionar para o próximo atendimento disponível."
)
INVALID_OPTION_MSG = "Por gentileza, escolha uma das opções abaixo:\n{options}"
CHOSEN_MSG = "Você escolheu falar com {name}."
NEXT_AVAILABLE_MSG = "Perfeito! Vamos direcionar você para o próximo atendimento disponível."


def _fold(text: str) -> str:
    text = unicodedata.normalize("NFKD", text or "")
    return "".join(c for c in text if not unicodedata.combining(c)).strip().lower()


class ChooseOperatorDialog:

    kind = DialogKind.CHOOSE_OPERATOR
    initial_step = NEW
    terminal_step = DONE

    def new_data(self) -> ChooseOperatorData:
        return ChooseOperatorData()

    def timeout_ms(self, config: BotConfig) -> int:
        return config.choose_operator_timeout_ms

    async def _operators(self, session, deps):
        if session.sector_id is None:
            return []
        operators = {o.id: o for o in await deps.directory.list_operators(session.tenant, session.sector_id)}
        ids = [oid for oid in session.data.options if oid in operators] or sorted(operators)
        return [operators[oid] for oid in ids]

    @staticmethod
    def _option_lines(operators) -> str:
        lines = [f"{i} - {o.name}" for i, o in enumerate(operators, start=1)]
        lines.append(f"{len(operators) + 1} - Nova vendedora")
        return "\n".join(lines)

    async def start(self, session, deps):
        operators = await self._operators(session, deps)
        updated = session.model_copy(update={
            "step": AWAITING_CHOICE,
            "data": session.data.model_copy(update={"options": [o.id for o in operators]}),
        })
        menu = "\n\n".join([MENU_HEADER, self._option_lines(operators), MENU_FOOTER])
        return DialogOutcome(updated, replies=[menu])

    async def advance(self, session, text, deps):
        if session.step == NEW:
            return await self.start(session, deps)

        operators = await self._operators(session, deps)
        answer = _fold(text)

        choice = parse_option(text, len(operators) + 1)
        if answer == NEXT_AVAILABLE_OPTION or choice == len(operators) + 1:
            return DialogOutcome(
                session.model_copy(update={"step": DONE}),
                replies=[NEXT_AVAILABLE_MSG],
                action=TerminalAction.hand_off("Próximo atendimento disponível"),
            )

        chosen = operators[choice - 1] if choice is not None else None
        if chosen is None and answer:
            chosen = next((o for o in operators if _fold(o.name) and _fold(o.name) in answer), None)
        if chosen is None:
            return DialogOutcome.reprompt(
                session, INVALID_OPTION_MSG.format(options=self._option_lines(operators)),
            )

        return DialogOutcome(
            session.model_copy(update={"step": DONE}),
            replies=[CHOSEN_MSG.format(name=chosen.name)],
            action=TerminalAction.to_operator(chosen.id, reason=f"Vendedora escolhida: {chosen.name}"),
        )

    async def should_activate(self, tenant, contact, deps):
        # Enabled per tenant through routing.entry_dialogs.
        return True

    async def on_timeout(self, session, deps):
        return DialogOutcome(
            session.model_copy(update={"step": DONE}),
            action=TerminalAction.hand_off("Sem escolha de vendedora por inatividade"),
        )
