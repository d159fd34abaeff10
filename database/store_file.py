"""
Session snapshot stores — where the bot session cache writes behind to.

File layout:
  {"sessions": [ {...BotSession...}, ... ]}

The file is rewritten whole on every flush through a temp file and a rename,
so a crash mid-write leaves the previous snapshot intact. Single-process only.
"""
from __future__ import annotations

import json
import structlog
from pathlib import Path
from typing import Any

from database.store_base import SessionSnapshotStore

logger = structlog.get_logger()


class JsonSessionSnapshotStore(SessionSnapshotStore):

    def __init__(self, path: str):
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    async def load_all(self) -> list[dict[str, Any]]:
        if not self._path.exists():
            return []
        try:
            with open(self._path, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("session_snapshot_load_error", path=str(self._path), error=str(e))
            return []
        sessions = data.get("sessions") if isinstance(data, dict) else None
        if not isinstance(sessions, list):
            logger.warning("session_snapshot_malformed", path=str(self._path))
            return []
        return sessions

    async def save_all(self, sessions: list[dict[str, Any]]) -> None:
        tmp_path = self._path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump({"sessions": sessions}, f, indent=2, default=str)
        tmp_path.replace(self._path)  # atomic on POSIX


class InMemorySessionSnapshotStore(SessionSnapshotStore):

    def __init__(self, sessions: list[dict[str, Any]] = None):
        self.sessions: list[dict[str, Any]] = list(sessions or [])
        self.saves = 0

    async def load_all(self):
        return [dict(s) for s in self.sessions]

    async def save_all(self, sessions):
        self.sessions = [dict(s) for s in sessions]
        self.saves += 1
