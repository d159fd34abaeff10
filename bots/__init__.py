"""Automated dialogs (bots) and the session engine that runs them."""
from bots.base import (
    ActionKind, BotDependencies, BotSessionError, Dialog, DialogOutcome,
    DialogRegistry, TerminalAction, parse_option, parse_rating,
)
from bots.cache import WriteBehindSessionCache
from bots.choose_operator import ChooseOperatorDialog
from bots.choose_sector import ChooseSectorDialog
from bots.customer_linking import CustomerLinkingDialog
from bots.engine import BotActions, BotSessionEngine
from bots.satisfaction import SatisfactionDialog


def default_registry() -> DialogRegistry:
    return DialogRegistry([
        ChooseSectorDialog(),
        SatisfactionDialog(),
        CustomerLinkingDialog(),
        ChooseOperatorDialog(),
    ])


__all__ = [
    "ActionKind", "BotDependencies", "BotSessionError", "Dialog", "DialogOutcome",
    "DialogRegistry", "TerminalAction", "parse_option", "parse_rating",
    "WriteBehindSessionCache", "BotActions", "BotSessionEngine",
    "ChooseSectorDialog", "SatisfactionDialog", "CustomerLinkingDialog", "ChooseOperatorDialog",
    "default_registry",
]
