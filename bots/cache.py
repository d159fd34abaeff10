"""
Write-behind cache for bot sessions.

Reads are served from memory. Every mutation marks the cache dirty and
schedules one deferred flush; mutations landing inside the debounce window
ride along with it. A crash loses at most the last window, which only makes
a dialog re-ask its latest question.

``load()`` reads the full snapshot once; callers must await it before the
first get/put.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from pydantic import ValidationError

from database.store_base import SessionSnapshotStore
from models.schemas import BotSession

logger = structlog.get_logger()


class WriteBehindSessionCache:

    def __init__(self, store: SessionSnapshotStore, debounce_ms: int = 250):
        self._store = store
        self._debounce = max(debounce_ms, 0) / 1000
        self._sessions: dict[str, BotSession] = {}
        self._loaded = False
        self._load_lock = asyncio.Lock()
        self._dirty = False
        self._flush_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def load(self) -> int:
        async with self._load_lock:
            if self._loaded:
                return len(self._sessions)
            skipped = 0
            for raw in await self._store.load_all():
                try:
                    session = BotSession.model_validate(raw)
                except ValidationError as e:
                    skipped += 1
                    logger.warning("bot_session_snapshot_invalid", error=str(e).splitlines()[0])
                    continue
                self._sessions[session.conversation_key] = session
            self._loaded = True
            logger.info("bot_sessions_loaded", count=len(self._sessions), skipped=skipped)
            return len(self._sessions)

    # ── Reads ─────────────────────────────────────────────────

    def get(self, key: str) -> Optional[BotSession]:
        return self._sessions.get(key)

    def values(self) -> list[BotSession]:
        return list(self._sessions.values())

    def __contains__(self, key: str) -> bool:
        return key in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    # ── Writes ────────────────────────────────────────────────

    def put(self, session: BotSession) -> None:
        self._sessions[session.conversation_key] = session
        self._mark_dirty()

    def delete(self, key: str) -> Optional[BotSession]:
        session = self._sessions.pop(key, None)
        if session is not None:
            self._mark_dirty()
        return session

    def _mark_dirty(self):
        self._dirty = True
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(self._deferred_flush())

    async def _deferred_flush(self):
        # Loops while mutations keep arriving during the write itself.
        while self._dirty:
            await asyncio.sleep(self._debounce)
            try:
                await self.flush()
            except Exception as e:
                # Still dirty; the next mutation or close() retries.
                logger.error("bot_session_flush_failed", error=str(e))
                return

    async def flush(self) -> bool:
        async with self._write_lock:
            if not self._dirty:
                return False
            self._dirty = False
            snapshot = [s.model_dump(mode="json") for s in self._sessions.values()]
            try:
                await self._store.save_all(snapshot)
            except Exception:
                self._dirty = True
                raise
            logger.debug("bot_sessions_flushed", count=len(snapshot))
            return True

    async def close(self):
        task = self._flush_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.flush()
