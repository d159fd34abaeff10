"""
HTTP surface tests. The app is built around the test container and driven
in-process through httpx's ASGI transport.
"""
import httpx
import pytest
import pytest_asyncio

from api.main import create_app
from channels import CloudApiAdapter
from config.settings import ChannelConfig
from models.schemas import Contact, OwnerRef


@pytest_asyncio.fixture
async def client(container):
    app = create_app(container)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest_asyncio.fixture
async def open_conversation(conversations, sales_sector):
    contact = conversations.add_contact(Contact(tenant="acme", address="5511999990000", name="Carla"))
    return await conversations.create_conversation("acme", contact.id, "main", OwnerRef.operator(10), 1)


WEBHOOK_BODY = {"messages": [{"sender": "5511999990000", "sender_name": "Carla", "body": "Oi",
                              "external_id": "wamid.1"}]}


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["channels"] == ["main"]
        assert data["pools"] == {"default": False}

    @pytest.mark.asyncio
    async def test_channel_health(self, client):
        resp = await client.get("/channels/health")
        assert resp.json()["main"]["provider"] == "loopback"


class TestWebhooks:

    @pytest.mark.asyncio
    async def test_inbound_is_queued_per_contact(self, client, container):
        resp = await client.post("/webhooks/acme/main", json=WEBHOOK_BODY)
        assert resp.status_code == 200
        body = resp.json()
        assert body["received"] == 1
        assert len(body["queued"]) == 1

        items = await container.queue.list_items(conversation_key="acme:contact:5511999990000")
        assert [i.id for i in items] == body["queued"]

    @pytest.mark.asyncio
    async def test_redelivery_is_not_queued_twice(self, client):
        await client.post("/webhooks/acme/main", json=WEBHOOK_BODY)
        resp = await client.post("/webhooks/acme/main", json=WEBHOOK_BODY)
        assert resp.json()["queued"] == []

    @pytest.mark.asyncio
    async def test_unknown_channel(self, client):
        resp = await client.post("/webhooks/acme/nope", json=WEBHOOK_BODY)
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_verification_requires_cloud_channel(self, client):
        resp = await client.get("/webhooks/acme/main", params={"hub.mode": "subscribe"})
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_verification_handshake(self, client, container):
        container.channels.register(CloudApiAdapter("wa", ChannelConfig(provider="cloud_api", token="tok")))
        params = {"hub.mode": "subscribe", "hub.verify_token": "tok", "hub.challenge": "123"}

        ok = await client.get("/webhooks/acme/wa", params=params)
        assert ok.status_code == 200
        assert ok.text == "123"

        denied = await client.get("/webhooks/acme/wa", params=dict(params, **{"hub.verify_token": "x"}))
        assert denied.status_code == 403


class TestQueueEndpoints:

    @pytest.mark.asyncio
    async def test_stats_and_cancel(self, client):
        await client.post("/webhooks/acme/main", json=WEBHOOK_BODY)

        stats = (await client.get("/queue/stats", params={"tenant": "acme"})).json()
        assert stats["items"]["pending"] == 1
        assert stats["pools"][0]["name"] == "default"

        resp = await client.delete("/queue/acme:contact:5511999990000")
        assert resp.json()["cancelled"] == 1
        stats = (await client.get("/queue/stats")).json()
        assert stats["items"]["cancelled"] == 1
        assert stats["items"]["pending"] == 0


class TestConversationEndpoints:

    @pytest.mark.asyncio
    async def test_send_text_enqueues(self, client, container, open_conversation):
        resp = await client.post(f"/conversations/{open_conversation.id}/messages", json={"text": "Olá"})
        assert resp.status_code == 200
        item = await container.queue.get(resp.json()["item_id"])
        assert item.conversation_key == open_conversation.key

    @pytest.mark.asyncio
    async def test_send_text_unknown_conversation(self, client):
        resp = await client.post("/conversations/missing/messages", json={"text": "Olá"})
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_survey_starts_bot_session(self, client, open_conversation):
        resp = await client.post(f"/conversations/{open_conversation.id}/survey", json={})
        assert resp.status_code == 200

        session = (await client.get(f"/bots/{open_conversation.key}")).json()
        assert session["dialog_kind"] == 2
        assert session["data"]["operator_id"] == 10

    @pytest.mark.asyncio
    async def test_survey_on_closed_conversation_conflicts(self, client, conversations, open_conversation):
        await conversations.close_conversation(open_conversation.id, "done")
        resp = await client.post(f"/conversations/{open_conversation.id}/survey", json={})
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_finish(self, client, open_conversation):
        resp = await client.post(f"/conversations/{open_conversation.id}/finish")
        assert resp.json()["status"] == "finished"
        assert (await client.post("/conversations/missing/finish")).status_code == 404

    @pytest.mark.asyncio
    async def test_bot_endpoints_without_session(self, client):
        assert (await client.get("/bots/acme:chat:none")).status_code == 404
        assert (await client.post("/bots/acme:chat:none/reset")).status_code == 404
