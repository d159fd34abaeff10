"""
Store Factory — pick the bot session snapshot backend from configuration.

Configuration in settings.yaml:
    bots:
      # JSON snapshot file; empty keeps sessions in memory only
      session_file: "./data/bot_sessions.json"

Usage:
    from database.store_factory import create_session_store
    store = create_session_store(settings.bots.session_file)
"""
from __future__ import annotations

import structlog

from database.store_base import SessionSnapshotStore

logger = structlog.get_logger()


def create_session_store(session_file: str = "") -> SessionSnapshotStore:
    """Factory: JSON file store when a path is configured, memory otherwise."""
    if session_file:
        from database.store_file import JsonSessionSnapshotStore
        logger.info("session_store_created", backend="file", path=session_file)
        return JsonSessionSnapshotStore(session_file)

    from database.store_file import InMemorySessionSnapshotStore
    logger.info("session_store_created", backend="memory")
    return InMemorySessionSnapshotStore()
