"""
Cloud API Adapter — WhatsApp Cloud API style HTTP provider.

Outbound:
  POST {api_url}/messages  (bearer token)
  text:     {"messaging_product": "whatsapp", "to": ..., "type": "text", "text": {"body": ...}}
  template: {"messaging_product": "whatsapp", "to": ..., "type": "template", "template": {...}}

Status mapping:
  2xx        → SentMessageRef (id from ``messages[0].id``)
  429, 5xx   → retryable ChannelError
  other 4xx  → permanent ChannelError (bad number, rejected template...)
  transport  → retried in place, then retryable ChannelError

Inbound webhook payloads are parsed into InboundMessage objects; status
callbacks (delivered/read) yield nothing.
"""
from __future__ import annotations

import re
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.base import ChannelError, SendAdapter
from config.settings import ChannelConfig
from models.schemas import InboundMessage, OutboundMessage

logger = structlog.get_logger()


class CloudApiAdapter(SendAdapter):

    provider = "cloud_api"

    def __init__(self, channel_id: str, config: Optional[ChannelConfig] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or ChannelConfig(provider="cloud_api")
        super().__init__(
            channel_id,
            rate_limit=self.config.rate_limit,
            rate_burst=self.config.rate_burst,
            failure_threshold=self.config.failure_threshold,
            recovery_timeout=self.config.recovery_timeout,
        )
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.api_url,
                headers={"Authorization": f"Bearer {self.config.token}"},
                timeout=self.config.timeout,
                transport=self._transport,
            )
        return self.client

    async def initialize(self) -> None:
        if not self.config.api_url:
            raise ChannelError("api_url is not configured", self.channel_id)
        await self._get_client()
        await super().initialize()

    async def shutdown(self) -> None:
        if self.client:
            await self.client.aclose()

    @staticmethod
    def _normalize_phone(phone: str) -> str:
        return re.sub(r"\D", "", phone)

    # ── Send ──────────────────────────────────────────────────

    async def _do_send(self, message: OutboundMessage) -> str:
        payload: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "to": self._normalize_phone(message.to),
            "type": "text",
            "text": {"body": message.text},
        }
        if message.quoted_id:
            payload["context"] = {"message_id": message.quoted_id}
        return await self._post_message(payload)

    async def _do_send_template(self, message: OutboundMessage) -> str:
        if not message.template:
            raise ChannelError("template name is required", self.channel_id)
        params = [
            {"type": "text", "text": str(v)}
            for k, v in message.template_params.items() if k != "language"
        ]
        template: dict[str, Any] = {
            "name": message.template,
            "language": {"code": message.template_params.get("language", "pt_BR")},
        }
        if params:
            template["components"] = [{"type": "body", "parameters": params}]
        return await self._post_message({
            "messaging_product": "whatsapp",
            "to": self._normalize_phone(message.to),
            "type": "template",
            "template": template,
        })

    async def _do_forward(self, message: OutboundMessage) -> str:
        if not message.forward_of:
            raise ChannelError("forward_of is required", self.channel_id)
        # The Cloud API has no native forward; resend the body quoting the original.
        return await self._post_message({
            "messaging_product": "whatsapp",
            "to": self._normalize_phone(message.to),
            "type": "text",
            "text": {"body": message.text},
            "context": {"message_id": message.forward_of},
        })

    async def _post_message(self, payload: dict[str, Any]) -> str:
        try:
            response = await self._request("POST", "/messages", json=payload)
        except httpx.TransportError as e:
            raise ChannelError(f"transport error: {e}", self.channel_id, retryable=True) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise ChannelError(
                f"provider returned {response.status_code}", self.channel_id, retryable=True,
            )
        if response.status_code >= 400:
            raise ChannelError(
                f"provider rejected message ({response.status_code}): {response.text[:200]}",
                self.channel_id, retryable=False,
            )

        body = response.json()
        messages = body.get("messages") or []
        if not messages or not messages[0].get("id"):
            raise ChannelError("provider response has no message id", self.channel_id, retryable=True)
        return messages[0]["id"]

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        client = await self._get_client()
        return await client.request(method, url, **kwargs)

    # ── Inbound parsing ───────────────────────────────────────

    def parse_inbound(self, raw_payload: dict[str, Any]) -> list[InboundMessage]:
        """Parse a Cloud API webhook payload. Status-only callbacks yield nothing."""
        parsed = []
        for entry in raw_payload.get("entry", []):
            for change in entry.get("changes", []):
                value = change.get("value", {})
                names = {
                    c.get("wa_id", ""): c.get("profile", {}).get("name", "")
                    for c in value.get("contacts", [])
                }
                for msg in value.get("messages", []):
                    inbound = self._parse_message(msg, names)
                    if inbound is not None:
                        parsed.append(inbound)
        return parsed

    def _parse_message(self, msg: dict[str, Any], names: dict[str, str]) -> Optional[InboundMessage]:
        sender = msg.get("from", "")
        if not sender:
            return None

        msg_type = msg.get("type", "text")
        metadata: dict[str, Any] = {"message_type": msg_type, "channel": self.channel_id}

        if msg_type == "text":
            body = msg.get("text", {}).get("body", "")
        elif msg_type == "interactive":
            interactive = msg.get("interactive", {})
            reply = interactive.get(interactive.get("type", ""), {})
            body = reply.get("title", "")
            metadata["reply_id"] = reply.get("id", "")
        elif msg_type == "button":
            body = msg.get("button", {}).get("text", "")
        elif msg_type in ("image", "video", "document"):
            media = msg.get(msg_type, {})
            body = media.get("caption", "") or media.get("filename", "") or f"[{msg_type}]"
            metadata["media_id"] = media.get("id", "")
        else:
            body = f"[{msg_type}]"

        if "context" in msg:
            metadata["quoted_id"] = msg["context"].get("id", "")

        timestamp = datetime.now(timezone.utc)
        if str(msg.get("timestamp", "")).isdigit():
            timestamp = datetime.fromtimestamp(int(msg["timestamp"]), tz=timezone.utc)

        return InboundMessage(
            external_id=msg.get("id") or f"{sender}:{timestamp.timestamp()}",
            sender=sender,
            sender_name=names.get(sender, ""),
            body=body,
            timestamp=timestamp,
            metadata=metadata,
        )

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """Echo the hub challenge when the verify token matches."""
        if params.get("hub.mode") == "subscribe" and params.get("hub.verify_token") == self.config.token:
            return params.get("hub.challenge")
        return None
