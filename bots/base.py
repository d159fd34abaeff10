"""
Bot dialogs — shared contract.

A dialog is a stateless variant selected by its DialogKind tag. It reads a
BotSession and returns a DialogOutcome describing:

  - the updated session (never mutated in place)
  - replies to send to the contact, in order
  - an optional terminal action for the coordinator to carry out
  - whether the input was accepted

The engine (bots/engine.py) owns persistence, tombstones and the watchdog;
dialogs never touch the cache or the queue.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from config.settings import BotConfig
from database.store_base import (
    ConversationStore, CustomerDirectory, OperatorDirectory, SurveyResultSink,
)
from models.schemas import BotSession, Contact, DialogKind, SessionData


class BotSessionError(Exception):
    """A dialog produced an impossible transition."""


class ActionKind(str, Enum):
    FINISH = "finish"
    HAND_OFF = "hand_off"
    TRANSFER_SECTOR = "transfer_sector"
    TRANSFER_OPERATOR = "transfer_operator"


@dataclass
class TerminalAction:
    kind: ActionKind
    reason: str = ""
    sector_id: Optional[int] = None
    operator_id: Optional[int] = None
    system_message: str = ""

    @classmethod
    def finish(cls, reason: str, system_message: str = "") -> "TerminalAction":
        return cls(ActionKind.FINISH, reason=reason, system_message=system_message)

    @classmethod
    def hand_off(cls, reason: str, system_message: str = "") -> "TerminalAction":
        return cls(ActionKind.HAND_OFF, reason=reason, system_message=system_message)

    @classmethod
    def to_sector(cls, sector_id: int, reason: str = "") -> "TerminalAction":
        return cls(ActionKind.TRANSFER_SECTOR, reason=reason, sector_id=sector_id)

    @classmethod
    def to_operator(cls, operator_id: int, reason: str = "") -> "TerminalAction":
        return cls(ActionKind.TRANSFER_OPERATOR, reason=reason, operator_id=operator_id)


@dataclass
class DialogOutcome:
    session: BotSession
    replies: list[str] = field(default_factory=list)
    action: Optional[TerminalAction] = None
    valid: bool = True

    @property
    def terminal(self) -> bool:
        return self.action is not None

    @classmethod
    def reprompt(cls, session: BotSession, text: str) -> "DialogOutcome":
        return cls(session=session, replies=[text], valid=False)


@dataclass
class BotDependencies:
    """Collaborators dialogs may read from or report to."""
    conversations: ConversationStore
    directory: OperatorDirectory
    customers: Optional[CustomerDirectory] = None
    surveys: Optional[SurveyResultSink] = None
    config_for: Optional[Callable[[str], BotConfig]] = None

    def config(self, tenant: str) -> BotConfig:
        return self.config_for(tenant) if self.config_for else BotConfig()


@runtime_checkable
class Dialog(Protocol):
    kind: DialogKind
    initial_step: int
    terminal_step: int

    def new_data(self) -> SessionData:
        ...

    def timeout_ms(self, config: BotConfig) -> int:
        ...

    async def start(self, session: BotSession, deps: BotDependencies) -> DialogOutcome:
        """Prompt for the session's current step (data may be filled in here)."""
        ...

    async def advance(self, session: BotSession, text: str, deps: BotDependencies) -> DialogOutcome:
        ...

    async def should_activate(self, tenant: str, contact: Contact, deps: BotDependencies) -> bool:
        ...

    async def on_timeout(self, session: BotSession, deps: BotDependencies) -> DialogOutcome:
        ...


class DialogRegistry:
    """DialogKind → dialog."""

    def __init__(self, dialogs: Optional[list[Dialog]] = None):
        self._dialogs: dict[DialogKind, Dialog] = {}
        for dialog in dialogs or []:
            self.register(dialog)

    def register(self, dialog: Dialog) -> Dialog:
        self._dialogs[DialogKind(dialog.kind)] = dialog
        return dialog

    def get(self, kind: int) -> Optional[Dialog]:
        try:
            return self._dialogs.get(DialogKind(kind))
        except ValueError:
            return None

    def require(self, kind: int) -> Dialog:
        dialog = self.get(kind)
        if dialog is None:
            raise BotSessionError(f"no dialog registered for kind {kind!r}")
        return dialog

    def kinds(self) -> list[DialogKind]:
        return sorted(self._dialogs)

    def snapshot(self) -> dict[str, Any]:
        return {kind.name.lower(): type(dialog).__name__ for kind, dialog in sorted(self._dialogs.items())}


# ──────────────────────────────────────────────────────────────
#  Input parsing shared by dialogs
# ──────────────────────────────────────────────────────────────

_RATING = re.compile(r"(?:^|\D)(10|[1-9])(?:\D|$)")


def parse_rating(text: str) -> Optional[int]:
    """First 1..10 rating found in free text, e.g. "nota 8!" → 8."""
    match = _RATING.search(text or "")
    return int(match.group(1)) if match else None


def parse_option(text: str, count: int) -> Optional[int]:
    """1-based menu choice from the digits in the text."""
    digits = re.sub(r"\D", "", text or "")
    if not digits:
        return None
    choice = int(digits)
    return choice if 1 <= choice <= count else None
