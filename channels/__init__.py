"""Channel adapters: the provider-neutral send capability and its providers."""
from channels.base import (
    SendAdapter,
    ChannelRegistry,
    ChannelError,
    RateLimitedError,
    CircuitOpenError,
    TokenBucketRateLimiter,
    CircuitBreaker,
    ChannelMetrics,
    MessageDeduplicator,
)
from channels.cloud_api_adapter import CloudApiAdapter
from channels.loopback_adapter import LoopbackAdapter
from channels.factory import build_channel_registry, create_send_adapter

__all__ = [
    "SendAdapter", "ChannelRegistry", "ChannelError", "RateLimitedError", "CircuitOpenError",
    "TokenBucketRateLimiter", "CircuitBreaker", "ChannelMetrics", "MessageDeduplicator",
    "CloudApiAdapter", "LoopbackAdapter",
    "build_channel_registry", "create_send_adapter",
]
