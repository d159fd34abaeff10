"""
Notifier — fire-and-forget room broadcast.

Backends:
  memory  events kept in a list (dev, tests)
  redis   JSON published on ``{prefix}:{room}`` via Redis pub/sub, consumed
          by whatever pushes to operator dashboards
"""
from __future__ import annotations

import json
import structlog
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from config.settings import NotificationConfig

logger = structlog.get_logger()


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json")
    return str(value)


class Notifier(ABC):

    async def connect(self) -> None:
        pass

    @abstractmethod
    async def notify(self, room: str, payload: dict[str, Any]) -> None:
        ...

    async def close(self) -> None:
        pass


class InMemoryNotifier(Notifier):

    def __init__(self):
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def notify(self, room, payload):
        self.events.append((room, payload))

    def rooms(self) -> list[str]:
        return [room for room, _ in self.events]

    def events_for(self, room: str) -> list[dict[str, Any]]:
        return [payload for r, payload in self.events if r == room]


class RedisNotifier(Notifier):

    def __init__(self, redis_url: str = "redis://localhost:6379", prefix: str = "rooms"):
        self._redis_url = redis_url
        self._prefix = prefix
        self._redis = None

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=20,
        )
        await self._redis.ping()
        logger.info("redis_notifier_connected", url=self._redis_url)

    async def notify(self, room, payload):
        if self._redis is None:
            await self.connect()
        await self._redis.publish(f"{self._prefix}:{room}", json.dumps(payload, default=_json_default))

    async def close(self):
        if self._redis:
            await self._redis.close()


def create_notifier(config: Optional[NotificationConfig] = None) -> Notifier:
    config = config or NotificationConfig()
    if config.backend == "redis":
        return RedisNotifier(config.redis_url, config.channel_prefix)
    if config.backend != "memory":
        raise ValueError(f"Unknown notification backend: {config.backend!r}")
    return InMemoryNotifier()
