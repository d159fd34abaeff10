"""
Channel factory — builds the adapter registry from the ``channels`` settings.

    channels:
      wa-main:
        provider: cloud_api
        api_url: https://graph.facebook.com/v18.0/<phone_number_id>
        token: ${WA_TOKEN}
      dev:
        provider: loopback
"""
from __future__ import annotations

import structlog

from channels.base import ChannelRegistry, SendAdapter
from channels.cloud_api_adapter import CloudApiAdapter
from channels.loopback_adapter import LoopbackAdapter
from config.settings import ChannelConfig

logger = structlog.get_logger()

PROVIDERS: dict[str, type[SendAdapter]] = {
    "cloud_api": CloudApiAdapter,
    "loopback": LoopbackAdapter,
}


def create_send_adapter(channel_id: str, config: ChannelConfig) -> SendAdapter:
    adapter_cls = PROVIDERS.get(config.provider)
    if adapter_cls is None:
        raise ValueError(
            f"Unknown channel provider: {config.provider!r}. Supported: {', '.join(sorted(PROVIDERS))}"
        )
    return adapter_cls(channel_id, config)


def build_channel_registry(channels: dict[str, ChannelConfig]) -> ChannelRegistry:
    registry = ChannelRegistry()
    for channel_id, config in channels.items():
        if not config.enabled:
            logger.info("channel_disabled", channel=channel_id)
            continue
        registry.register(create_send_adapter(channel_id, config))
        logger.info("channel_registered", channel=channel_id, provider=config.provider)
    return registry
