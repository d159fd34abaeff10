"""
Channel Adapters — provider-neutral send capability and resilience infrastructure.

Provides:
- ChannelError: structured error hierarchy with a ``retryable`` flag the worker
  pool reads to decide between retry and terminal failure
- TokenBucketRateLimiter: async token bucket with configurable burst
- CircuitBreaker: failure-counting breaker with half-open probe
- ChannelMetrics: per-channel send/fail/latency tracking
- MessageDeduplicator: TTL seen-set for webhook redeliveries
- SendAdapter: abstract send/template/forward capability; every call passes
  through the rate limiter and the breaker
- ChannelRegistry: adapter lookup by channel id, health checks
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from typing import Any, Awaitable, Callable, Optional

from models.schemas import InboundMessage, OutboundMessage, SentMessageRef

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class RateLimitedError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Rate limit exceeded for {channel}", channel, retryable=True)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


# ══════════════════════════════════════════════════════════════
#  TOKEN BUCKET RATE LIMITER
# ══════════════════════════════════════════════════════════════

class TokenBucketRateLimiter:
    """
    Async token bucket rate limiter.
    Tokens refill at `rate` per second up to `burst` capacity.
    """

    def __init__(self, rate: float = 10.0, burst: int = 10):
        self.rate = rate
        self.burst = burst
        self._tokens: float = float(burst)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self, timeout: float = 5.0) -> bool:
        deadline = time.monotonic() + timeout
        while True:
            async with self._lock:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            wait = min(1.0 / max(self.rate, 0.001), remaining)
            await asyncio.sleep(wait)

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(self.burst, self._tokens + elapsed * self.rate)
        self._last_refill = now


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Failure-counting circuit breaker.

    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0, name: str = ""):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.name = name
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0
        self._total_failures = 0
        self._total_successes = 0

    @property
    def state(self) -> str:
        if self._state == "open":
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._total_failures += 1
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._open()

    def record_success(self):
        self._total_successes += 1
        if self.state == "half_open":
            self._close()
        else:
            self._failure_count = 0

    def _open(self):
        self._state = "open"
        self._opened_at = time.monotonic()
        logger.warning("circuit_opened", channel=self.name, failures=self._failure_count)

    def _close(self):
        self._state = "closed"
        self._failure_count = 0

    def reset(self):
        self._close()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "failure_count": self._failure_count,
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
        }


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks per-channel send, failure and latency metrics."""

    def __init__(self, channel_id: str):
        self.channel_id = channel_id
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-500]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-50]

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel_id,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  MESSAGE DEDUPLICATOR
# ══════════════════════════════════════════════════════════════

class MessageDeduplicator:
    """TTL-based seen-set for dropping webhook redeliveries."""

    def __init__(self, ttl_seconds: float = 300.0, max_size: int = 5000):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._seen: dict[str, float] = {}

    def is_duplicate(self, key: str) -> bool:
        self._prune()
        if key in self._seen:
            return True
        self._seen[key] = time.monotonic()
        return False

    def _prune(self):
        cutoff = time.monotonic() - self.ttl
        expired = [k for k, t in self._seen.items() if t < cutoff]
        for k in expired:
            del self._seen[k]
        while len(self._seen) > self.max_size:
            self._seen.pop(next(iter(self._seen)))


# ══════════════════════════════════════════════════════════════
#  SEND ADAPTER (abstract capability)
# ══════════════════════════════════════════════════════════════

class SendAdapter(abc.ABC):
    """
    Base class for every provider integration.

    Subclasses implement ``_do_send`` (and optionally ``_do_send_template`` /
    ``_do_forward``) returning the provider's message id. Callers only ever
    see SentMessageRef or ChannelError.
    """

    provider: str = ""

    def __init__(
        self,
        channel_id: str,
        rate_limit: float = 20.0,
        rate_burst: int = 40,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
    ):
        self.channel_id = channel_id
        self._initialized = False
        self._breaker = CircuitBreaker(failure_threshold, recovery_timeout, name=channel_id)
        self._rate_limiter: Optional[TokenBucketRateLimiter] = (
            TokenBucketRateLimiter(rate_limit, rate_burst) if rate_limit > 0 else None
        )
        self._metrics = ChannelMetrics(channel_id)

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send(self, message: OutboundMessage) -> str:
        ...

    async def _do_send_template(self, message: OutboundMessage) -> str:
        raise ChannelError(f"{self.provider} does not support templates", self.channel_id)

    async def _do_forward(self, message: OutboundMessage) -> str:
        raise ChannelError(f"{self.provider} does not support forwarding", self.channel_id)

    async def initialize(self) -> None:
        self._initialized = True

    async def shutdown(self) -> None:
        pass

    # ── Public capability ─────────────────────────────────────

    async def send(self, conversation_key: str, message: OutboundMessage) -> SentMessageRef:
        hook = self._do_send_template if message.template else self._do_send
        return await self._guarded("send", conversation_key, message, hook)

    async def send_template(self, conversation_key: str, message: OutboundMessage) -> SentMessageRef:
        return await self._guarded("send_template", conversation_key, message, self._do_send_template)

    async def forward(self, conversation_key: str, message: OutboundMessage) -> SentMessageRef:
        return await self._guarded("forward", conversation_key, message, self._do_forward)

    async def _guarded(
        self,
        operation: str,
        conversation_key: str,
        message: OutboundMessage,
        hook: Callable[[OutboundMessage], Awaitable[str]],
    ) -> SentMessageRef:
        if self._rate_limiter and not await self._rate_limiter.acquire(timeout=10.0):
            self._metrics.record_failure("rate_limited")
            raise RateLimitedError(self.channel_id)
        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open")
            raise CircuitOpenError(self.channel_id)

        start = time.monotonic()
        try:
            external_id = await hook(message)
        except ChannelError as e:
            e.channel = e.channel or self.channel_id
            if e.retryable:
                self._breaker.record_failure()
            self._metrics.record_failure(str(e))
            raise
        except Exception as e:
            self._breaker.record_failure()
            self._metrics.record_failure(str(e))
            raise ChannelError(str(e) or type(e).__name__, self.channel_id, retryable=True) from e

        latency = (time.monotonic() - start) * 1000
        self._breaker.record_success()
        self._metrics.record_send(latency)
        logger.info("channel_message_sent",
                    channel=self.channel_id, provider=self.provider, operation=operation,
                    key=conversation_key, external_id=external_id, latency_ms=round(latency, 1))
        return SentMessageRef(channel_id=self.channel_id, external_id=external_id)

    # ── Inbound ───────────────────────────────────────────────

    def parse_inbound(self, raw_payload: dict[str, Any]) -> list[InboundMessage]:
        """Generic webhook body: ``{"messages": [{sender, body, ...}]}`` or one message dict."""
        raw_messages = raw_payload.get("messages", [raw_payload])
        return [InboundMessage.model_validate(m) for m in raw_messages if m.get("sender")]

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel_id,
            "provider": self.provider,
            "initialized": self._initialized,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }


# ══════════════════════════════════════════════════════════════
#  CHANNEL REGISTRY
# ══════════════════════════════════════════════════════════════

class ChannelRegistry:

    def __init__(self):
        self._adapters: dict[str, SendAdapter] = {}

    def register(self, adapter: SendAdapter):
        self._adapters[adapter.channel_id] = adapter

    def get(self, channel_id: str) -> Optional[SendAdapter]:
        return self._adapters.get(channel_id)

    def get_available(self) -> list[str]:
        return list(self._adapters.keys())

    def get_healthy_channels(self) -> list[str]:
        return [ch for ch, a in self._adapters.items() if not a._breaker.is_open]

    async def health_check_all(self) -> dict[str, Any]:
        return {ch: await a.health_check() for ch, a in self._adapters.items()}

    async def initialize_all(self):
        for ch, adapter in self._adapters.items():
            try:
                await adapter.initialize()
            except Exception as e:
                logger.error("channel_init_failed", channel=ch, error=str(e))

    async def shutdown_all(self):
        for a in self._adapters.values():
            await a.shutdown()
