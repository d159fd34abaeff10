"""
Bot Session Engine — runs automated dialogs for conversations.

Per conversation key there is at most one session. The engine:

  - start(key, kind, ...)     creates/overwrites a session at its first step
                              and emits the first prompt
  - advance(key, text)        feeds one inbound message to the dialog
  - reset(key)                puts the session back at its first step
  - tick(now)                 watchdog sweep over idle sessions

Terminal outcomes delete the session and leave a tombstone for the key
*before* any side effect runs, so a duplicate or late message (or a second
watchdog pass) finds nothing to act on. ``start`` clears the tombstone.

Side effects (replies, closing, transfers) go through a BotActions
implementation. In production that is QueuedBotActions, which enqueues the
terminal action as a ``bot_action`` work item, so a failing hand-off is
retried by the queue even though the session is already gone.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from bots.base import (
    ActionKind, BotDependencies, BotSessionError, Dialog, DialogOutcome,
    DialogRegistry, TerminalAction,
)
from bots.cache import WriteBehindSessionCache
from models.schemas import BotSession, DialogKind, SessionData, utcnow

logger = structlog.get_logger()

ESCALATION_PRIORITY = 10
TOMBSTONE_TTL = timedelta(hours=24)


class BotActions(Protocol):
    """Side effects a dialog may trigger."""

    async def send_text(self, conversation_id: str, text: str, priority: int = 0) -> None:
        ...

    async def add_system_message(self, conversation_id: str, text: str) -> None:
        ...

    async def finish_conversation(self, conversation_id: str, reason: str) -> None:
        ...

    async def hand_off_to_human(self, conversation_id: str, reason: str) -> None:
        ...

    async def transfer_to_sector(self, conversation_id: str, sector_id: int) -> None:
        ...

    async def transfer_to_operator(self, conversation_id: str, operator_id: int) -> None:
        ...

    async def conversation_is_open(self, conversation_id: str) -> bool:
        ...


class BotSessionEngine:

    def __init__(
        self,
        registry: DialogRegistry,
        cache: WriteBehindSessionCache,
        deps: BotDependencies,
        actions: Optional[BotActions] = None,
        clock: Callable[[], datetime] = utcnow,
        watchdog_interval_s: float = 60.0,
    ):
        self.registry = registry
        self.cache = cache
        self.deps = deps
        self.actions = actions
        self.clock = clock
        self.watchdog_interval = watchdog_interval_s
        self._tombstones: dict[str, datetime] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False

    def attach(self, actions: BotActions) -> None:
        self.actions = actions

    def _lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def get(self, key: str) -> Optional[BotSession]:
        return self.cache.get(key)

    def is_tombstoned(self, key: str) -> bool:
        return key in self._tombstones

    # ── Start ─────────────────────────────────────────────────

    async def start(
        self,
        key: str,
        kind: DialogKind,
        *,
        tenant: str,
        conversation_id: str,
        contact_id: Optional[str] = None,
        sector_id: Optional[int] = None,
        data: Optional[SessionData] = None,
        step: Optional[int] = None,
        emit: bool = True,
    ) -> DialogOutcome:
        await self.cache.load()
        dialog = self.registry.require(kind)
        async with self._lock(key):
            self._tombstones.pop(key, None)
            session = self._new_session(
                dialog, key, tenant, conversation_id, contact_id, sector_id, data, step,
            )
            if not emit:
                self.cache.put(session)
                return DialogOutcome(session)

            outcome = await dialog.start(session, self.deps)
            logger.info("bot_session_started", key=key, dialog=dialog.kind.name, step=outcome.session.step)
            await self._apply(session, outcome, dialog)
            return outcome

    def _new_session(self, dialog: Dialog, key, tenant, conversation_id, contact_id,
                     sector_id, data, step) -> BotSession:
        now = self.clock()
        return BotSession(
            conversation_key=key,
            dialog_kind=dialog.kind,
            tenant=tenant,
            conversation_id=conversation_id,
            contact_id=contact_id,
            sector_id=sector_id,
            step=dialog.initial_step if step is None else step,
            data=data if data is not None else dialog.new_data(),
            timeout_ms=dialog.timeout_ms(self.deps.config(tenant)),
            created_at=now,
            last_activity_at=now,
        )

    # ── Advance ───────────────────────────────────────────────

    async def advance(
        self,
        key: str,
        text: str,
        *,
        kind: Optional[DialogKind] = None,
        tenant: Optional[str] = None,
        conversation_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        sector_id: Optional[int] = None,
    ) -> Optional[DialogOutcome]:
        """
        Feed one message to the session of ``key``.

        When no session exists and ``kind`` is given, one is created at the
        dialog's initial step first. Returns None when the message was ignored.
        """
        await self.cache.load()
        async with self._lock(key):
            if key in self._tombstones:
                logger.info("bot_message_after_finish", key=key)
                return None

            session = self.cache.get(key)
            if session is None:
                if kind is None or tenant is None or conversation_id is None:
                    return None
                dialog = self.registry.require(kind)
                session = self._new_session(
                    dialog, key, tenant, conversation_id, contact_id, sector_id, None, None,
                )
                logger.info("bot_session_created_lazily", key=key, dialog=dialog.kind.name)

            dialog = self.registry.require(session.dialog_kind)
            if session.step >= dialog.terminal_step:
                return None

            if not await self._conversation_open(session):
                self._drop(key, "conversation_closed")
                return None

            outcome = await dialog.advance(session, text, self.deps)
            if outcome.valid and outcome.session.step < session.step:
                raise BotSessionError(
                    f"{dialog.kind.name} moved {key} backwards ({session.step} → {outcome.session.step})"
                )
            await self._apply(session, outcome, dialog)
            return outcome

    async def _apply(self, before: BotSession, outcome: DialogOutcome, dialog: Dialog,
                     priority: int = 0) -> None:
        key = before.conversation_key
        now = self.clock()

        if outcome.terminal:
            self._drop(key, "terminal")
        elif outcome.valid:
            self.cache.put(outcome.session.model_copy(update={"last_activity_at": now}))
        else:
            # Rejected input only refreshes the activity timestamp.
            self.cache.put(before.model_copy(update={"last_activity_at": now}))
            logger.debug("bot_input_rejected", key=key, dialog=dialog.kind.name, step=before.step)

        for text in outcome.replies:
            await self._send(before.conversation_id, text, priority)

        if outcome.action is not None:
            logger.info("bot_session_finished", key=key, dialog=dialog.kind.name,
                        action=outcome.action.kind.value, reason=outcome.action.reason)
            await self._run_action(before.conversation_id, outcome.action)

    # ── Reset ─────────────────────────────────────────────────

    async def reset(self, key: str) -> Optional[BotSession]:
        await self.cache.load()
        async with self._lock(key):
            session = self.cache.get(key)
            if session is None:
                return None
            dialog = self.registry.require(session.dialog_kind)
            reset = session.model_copy(update={
                "step": dialog.initial_step,
                "data": dialog.new_data(),
                "last_activity_at": self.clock(),
            })
            self._tombstones.pop(key, None)
            self.cache.put(reset)
            logger.info("bot_session_reset", key=key, dialog=dialog.kind.name)
            return reset

    async def discard(self, key: str, reason: str = "discarded") -> bool:
        """Remove a session without side effects (e.g. an operator took over)."""
        await self.cache.load()
        return self._drop(key, reason)

    def _drop(self, key: str, reason: str) -> bool:
        self._tombstones[key] = self.clock()
        removed = self.cache.delete(key) is not None
        if removed and reason != "terminal":
            logger.info("bot_session_dropped", key=key, reason=reason)
        return removed

    # ── Watchdog ──────────────────────────────────────────────

    async def tick(self, now: Optional[datetime] = None) -> int:
        """Escalate idle sessions. Returns the number escalated."""
        await self.cache.load()
        now = now or self.clock()
        escalated = 0

        for session in self.cache.values():
            key = session.conversation_key
            dialog = self.registry.get(session.dialog_kind)
            if dialog is None:
                self._drop(key, "unknown_dialog")
                continue
            if session.step >= dialog.terminal_step:
                self._drop(key, "stale_terminal")
                continue
            if not session.is_idle(now):
                continue

            async with self._lock(key):
                current = self.cache.get(key)
                if current is None or not current.is_idle(now):
                    continue
                self._drop(key, "terminal")
                try:
                    if not await self._conversation_open(current):
                        logger.info("bot_session_desync", key=key, dialog=dialog.kind.name)
                        continue
                    outcome = await dialog.on_timeout(current, self.deps)
                    logger.info("bot_session_timeout", key=key, dialog=dialog.kind.name,
                                idle_ms=int((now - current.last_activity_at).total_seconds() * 1000))
                    await self._apply(current, outcome, dialog, priority=ESCALATION_PRIORITY)
                    escalated += 1
                except Exception as e:
                    logger.error("bot_watchdog_escalation_failed", key=key, error=str(e))

        cutoff = now - TOMBSTONE_TTL
        for key in [k for k, t in self._tombstones.items() if t < cutoff]:
            del self._tombstones[key]
        for key in [k for k, lock in self._locks.items() if not lock.locked() and k not in self.cache]:
            del self._locks[key]
        return escalated

    async def start_watchdog(self) -> asyncio.Task:
        await self.cache.load()
        self._running = True
        self._task = asyncio.create_task(self._watchdog())
        return self._task

    async def _watchdog(self):
        logger.info("bot_watchdog_started", interval=self.watchdog_interval)
        while self._running:
            try:
                await asyncio.sleep(self.watchdog_interval)
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("bot_watchdog_error", error=str(e))

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.cache.close()

    # ── Side effects ──────────────────────────────────────────

    async def _conversation_open(self, session: BotSession) -> bool:
        if self.actions is None:
            return True
        return await self.actions.conversation_is_open(session.conversation_id)

    async def _send(self, conversation_id: str, text: str, priority: int = 0):
        if self.actions is None:
            logger.warning("bot_actions_not_attached", conversation_id=conversation_id)
            return
        await self.actions.send_text(conversation_id, text, priority=priority)

    async def _run_action(self, conversation_id: str, action: TerminalAction):
        if self.actions is None:
            logger.warning("bot_actions_not_attached", conversation_id=conversation_id,
                           action=action.kind.value)
            return
        try:
            if action.system_message:
                await self.actions.add_system_message(conversation_id, action.system_message)
            if action.kind == ActionKind.FINISH:
                await self.actions.finish_conversation(conversation_id, action.reason)
            elif action.kind == ActionKind.HAND_OFF:
                await self.actions.hand_off_to_human(conversation_id, action.reason)
            elif action.kind == ActionKind.TRANSFER_SECTOR:
                await self.actions.transfer_to_sector(conversation_id, action.sector_id)
            elif action.kind == ActionKind.TRANSFER_OPERATOR:
                await self.actions.transfer_to_operator(conversation_id, action.operator_id)
        except Exception as e:
            logger.error("bot_terminal_action_failed", conversation_id=conversation_id,
                         action=action.kind.value, error=str(e))
            raise
