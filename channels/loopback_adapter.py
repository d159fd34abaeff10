"""
Loopback adapter — records outbound traffic in memory.

Used in development and tests. Failures can be injected per call with
``fail_next`` to exercise the worker pool's retry handling.
"""
from __future__ import annotations

import itertools
from typing import Any, Optional

from channels.base import ChannelError, SendAdapter
from config.settings import ChannelConfig
from models.schemas import OutboundMessage


class LoopbackAdapter(SendAdapter):

    provider = "loopback"

    def __init__(self, channel_id: str, config: Optional[ChannelConfig] = None):
        config = config or ChannelConfig()
        super().__init__(
            channel_id,
            rate_limit=0,
            failure_threshold=config.failure_threshold,
            recovery_timeout=config.recovery_timeout,
        )
        self.sent: list[dict[str, Any]] = []
        self._failures: list[ChannelError] = []
        self._ids = itertools.count(1)

    def fail_next(self, times: int = 1, retryable: bool = True, message: str = "injected failure"):
        for _ in range(times):
            self._failures.append(ChannelError(message, self.channel_id, retryable=retryable))

    def _record(self, operation: str, message: OutboundMessage) -> str:
        if self._failures:
            raise self._failures.pop(0)
        external_id = f"loop-{self.channel_id}-{next(self._ids)}"
        self.sent.append({"operation": operation, "external_id": external_id, **message.model_dump()})
        return external_id

    async def _do_send(self, message: OutboundMessage) -> str:
        return self._record("send", message)

    async def _do_send_template(self, message: OutboundMessage) -> str:
        return self._record("send_template", message)

    async def _do_forward(self, message: OutboundMessage) -> str:
        return self._record("forward", message)

    def texts_to(self, address: str) -> list[str]:
        return [m["text"] for m in self.sent if m["to"] == address]
