"""
Satisfaction survey dialog.

    0 AWAITING_INITIAL_RATING ─▶ 1 AWAITING_QUESTION[i] (i = 0..N-1) ─▶ 2 FINISHED

Every answer must contain a 1..10 rating; the second question also accepts
99 ("never used it"). Answers go to the SurveyResultSink best-effort: a sink
failure is logged and the survey carries on. Finishing (or the inactivity
timeout) closes the conversation.

Sink question numbering: 0 is the initial rating, questions start at 1.
"""
from __future__ import annotations

import re
import structlog
from typing import Optional

from bots.base import BotDependencies, DialogOutcome, TerminalAction, parse_rating
from config.settings import BotConfig
from models.schemas import BotSession, DialogKind, SatisfactionData

logger = structlog.get_logger()

AWAITING_INITIAL_RATING, AWAITING_QUESTION, FINISHED = 0, 1, 2

NOT_APPLICABLE = 99
NOT_APPLICABLE_QUESTION = 1

INITIAL_QUESTION = (
    "Como foi sua experiência? Por favor, avalie nosso atendimento de 1 a 10.\n\n"
    "Para avaliar, basta responder com a sua nota."
)
INVALID_RATING_MSG = "Resposta inválida, por favor digite uma opção válida (um número de 1 a 10)."
INVALID_RATING_NA_MSG = (
    "Resposta inválida. Para esta pergunta, responda com um número de 1 a 10 "
    "ou 99 caso não se aplique."
)
THANKS_MSG = "Obrigado pela sua avaliação! Se precisar de algo mais, estou à disposição."
FINISH_MSG = "Atendimento finalizado, pesquisa respondida."
TIMEOUT_MSG = "Atendimento finalizado por inatividade na pesquisa."

_NOT_APPLICABLE = re.compile(r"(?:^|\D)(99)(?:\D|$)")


class SatisfactionDialog:

    kind = DialogKind.SATISFACTION
    initial_step = AWAITING_INITIAL_RATING
    terminal_step = FINISHED

    def new_data(self) -> SatisfactionData:
        return SatisfactionData()

    def timeout_ms(self, config: BotConfig) -> int:
        return config.satisfaction_timeout_ms

    @staticmethod
    def parse_answer(text: str, question_index: int) -> Optional[int]:
        if question_index == NOT_APPLICABLE_QUESTION and _NOT_APPLICABLE.search(text or ""):
            return NOT_APPLICABLE
        return parse_rating(text)

    async def start(self, session, deps):
        if session.step == AWAITING_INITIAL_RATING:
            return DialogOutcome(session, replies=[INITIAL_QUESTION])
        questions = deps.config(session.tenant).satisfaction_questions
        return DialogOutcome(session, replies=[questions[session.data.question_index]])

    async def advance(self, session, text, deps):
        questions = deps.config(session.tenant).satisfaction_questions
        data: SatisfactionData = session.data

        if session.step == AWAITING_INITIAL_RATING:
            rating = parse_rating(text)
            if rating is None:
                return DialogOutcome.reprompt(session, INVALID_RATING_MSG)
            await self._record(session, deps, 0, rating)
            updated = session.model_copy(update={
                "step": AWAITING_QUESTION,
                "data": data.model_copy(update={"initial_rating": rating, "question_index": 0}),
            })
            if not questions:
                return self._finished(updated)
            return DialogOutcome(updated, replies=[questions[0]])

        index = data.question_index
        rating = self.parse_answer(text, index)
        if rating is None:
            invalid = INVALID_RATING_NA_MSG if index == NOT_APPLICABLE_QUESTION else INVALID_RATING_MSG
            return DialogOutcome.reprompt(session, invalid)

        await self._record(session, deps, index + 1, rating)
        data = data.model_copy(update={"question_index": index + 1, "answers": [*data.answers, rating]})
        updated = session.model_copy(update={"data": data})

        if data.question_index >= len(questions):
            return self._finished(updated)
        return DialogOutcome(updated, replies=[questions[data.question_index]])

    def _finished(self, session: BotSession) -> DialogOutcome:
        return DialogOutcome(
            session.model_copy(update={"step": FINISHED}),
            replies=[THANKS_MSG],
            action=TerminalAction.finish(FINISH_MSG, system_message=FINISH_MSG),
        )

    async def _record(self, session: BotSession, deps: BotDependencies, question: int, rating: int):
        if deps.surveys is None:
            return
        try:
            await deps.surveys.record_answer(
                session.tenant, session.conversation_id, question, rating,
                operator_id=session.data.operator_id,
            )
        except Exception as e:
            logger.warning("survey_answer_not_recorded",
                           key=session.conversation_key, question=question, error=str(e))

    async def should_activate(self, tenant, contact, deps):
        # Started explicitly when an operator finishes a conversation.
        return False

    async def on_timeout(self, session, deps):
        return DialogOutcome(
            session.model_copy(update={"step": FINISHED}),
            replies=[TIMEOUT_MSG],
            action=TerminalAction.finish(TIMEOUT_MSG, system_message=TIMEOUT_MSG),
        )
