"""
FastAPI Application — webhooks and operational endpoints.

Provides:
- Inbound webhooks per (tenant, channel), queued for distribution
- Webhook verification handshake for Cloud API channels
- Queue inspection and per-conversation cancel
- Bot session reset and operator-initiated satisfaction survey
- Health and channel diagnostics
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from channels.cloud_api_adapter import CloudApiAdapter
from core.container import ServiceContainer, build_container
from core.coordinator import DistributionError
from models.schemas import utcnow

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request Models
# ──────────────────────────────────────────────────────────────

class SurveyRequest(BaseModel):
    operator_id: Optional[int] = None
    ask_initial_rating: bool = True


class SendTextRequest(BaseModel):
    text: str
    sender: str = ""
    quoted_id: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    services = container or build_container()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.start()
        logger.info("support_router_started", app=services.settings.app_name,
                    queue_backend=services.settings.queue.backend)
        yield
        await services.stop()
        logger.info("support_router_stopped")

    app = FastAPI(
        title="SupportRouter API",
        description="Conversation distribution, work queue and bot sessions",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    # ══════════════════════════════════════════════════════════
    #  HEALTH & DIAGNOSTICS
    # ══════════════════════════════════════════════════════════

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "channels": services.channels.get_available(),
            "healthy_channels": services.channels.get_healthy_channels(),
            "pools": {p.name: p.running for p in services.pools},
            "bot_sessions": len(services.bots.cache),
        }

    @app.get("/channels/health")
    async def channel_health():
        return await services.channels.health_check_all()

    # ══════════════════════════════════════════════════════════
    #  WEBHOOKS
    # ══════════════════════════════════════════════════════════

    @app.get("/webhooks/{tenant}/{channel_id}")
    async def verify_webhook(tenant: str, channel_id: str, request: Request):
        adapter = services.channels.get(channel_id)
        if not isinstance(adapter, CloudApiAdapter):
            raise HTTPException(404, "Channel does not support verification")
        challenge = adapter.verify_webhook(dict(request.query_params))
        if challenge is None:
            raise HTTPException(403, "Verification failed")
        return PlainTextResponse(challenge)

    @app.post("/webhooks/{tenant}/{channel_id}")
    async def inbound_webhook(tenant: str, channel_id: str, request: Request):
        adapter = services.channels.get(channel_id)
        if adapter is None:
            raise HTTPException(404, f"Unknown channel: {channel_id}")
        body: dict[str, Any] = await request.json()
        messages = adapter.parse_inbound(body)

        queued = []
        for message in messages:
            item_id = await services.coordinator.submit_inbound(tenant, channel_id, message)
            if item_id is not None:
                queued.append(item_id)
        logger.info("webhook_received", tenant=tenant, channel=channel_id,
                    messages=len(messages), queued=len(queued))
        return {"status": "ok", "received": len(messages), "queued": queued}

    # ══════════════════════════════════════════════════════════
    #  QUEUE
    # ══════════════════════════════════════════════════════════

    @app.get("/queue/stats")
    async def queue_stats(tenant: Optional[str] = None):
        return {
            "items": await services.queue.stats(tenant),
            "pools": [
                {"name": p.name, "running": p.running, "in_flight": sorted(p.in_flight_keys)}
                for p in services.pools
            ],
        }

    @app.get("/queue/{conversation_key}")
    async def queue_items(conversation_key: str):
        items = await services.queue.list_items(conversation_key=conversation_key)
        return [i.model_dump(mode="json") for i in items]

    @app.delete("/queue/{conversation_key}")
    async def cancel_queue(conversation_key: str):
        cancelled = await services.queue.cancel(conversation_key)
        return {"conversation_key": conversation_key, "cancelled": cancelled}

    # ══════════════════════════════════════════════════════════
    #  BOTS
    # ══════════════════════════════════════════════════════════

    @app.get("/bots/{conversation_key}")
    async def get_bot_session(conversation_key: str):
        session = services.bots.get(conversation_key)
        if session is None:
            raise HTTPException(404, "No bot session for this conversation")
        return session.model_dump(mode="json")

    @app.post("/bots/{conversation_key}/reset")
    async def reset_bot_session(conversation_key: str):
        session = await services.bots.reset(conversation_key)
        if session is None:
            raise HTTPException(404, "No bot session for this conversation")
        return session.model_dump(mode="json")

    # ══════════════════════════════════════════════════════════
    #  CONVERSATIONS
    # ══════════════════════════════════════════════════════════

    @app.post("/conversations/{conversation_id}/messages")
    async def send_text(conversation_id: str, req: SendTextRequest):
        try:
            item_id = await services.coordinator.send_text(
                conversation_id, req.text, sender=req.sender, quoted_id=req.quoted_id,
            )
        except DistributionError as e:
            raise HTTPException(404, str(e))
        return {"status": "enqueued", "item_id": item_id}

    @app.post("/conversations/{conversation_id}/survey")
    async def start_survey(conversation_id: str, req: SurveyRequest):
        try:
            conversation = await services.coordinator.start_satisfaction_survey(
                conversation_id, operator_id=req.operator_id,
                ask_initial_rating=req.ask_initial_rating,
            )
        except DistributionError as e:
            raise HTTPException(409, str(e))
        return {"status": "started", "conversation_id": conversation.id}

    @app.post("/conversations/{conversation_id}/finish")
    async def finish_conversation(conversation_id: str, reason: str = "Finalizado pelo atendente"):
        conversation = await services.coordinator.finish_conversation(conversation_id, reason)
        if conversation is None:
            raise HTTPException(404, "Conversation not found")
        return {"status": "finished", "conversation_id": conversation.id}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
