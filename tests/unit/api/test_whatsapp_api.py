from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from wacore.adapters.provider import MediaPayload
from wacore.main import create_app

from tests.fakes import provider_message


@pytest.fixture
def app(core):
    return create_app(core=core)


async def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver")


@pytest.mark.asyncio
async def test_connect_returns_qr_envelope(app, core, make_client, provider):
    await make_client("c1")
    provider.options["c1"] = {"auto_authenticate": False}
    async with await _client(app) as client:
        res = await client.post("/clients/c1/whatsapp/connect")
    await core.registry.drain()
    assert res.status_code == 200
    assert res.json() == {
        "success": True,
        "message": "QR code generated. Please scan to connect.",
        "data": {"qr": "QR-DATA"},
    }


@pytest.mark.asyncio
async def test_connect_twice_is_conflict(app, make_client, connect_client):
    await make_client("c1")
    await connect_client("c1")
    async with await _client(app) as client:
        res = await client.post("/clients/c1/whatsapp/connect")
    assert res.status_code == 409
    assert res.json()["success"] is False


@pytest.mark.asyncio
async def test_send_and_credit_views(app, make_client, connect_client):
    await make_client("c1", credits=2)
    await connect_client("c1")
    async with await _client(app) as client:
        sent = await client.post(
            "/clients/c1/whatsapp/send", json={"phone_number": "01711111111", "message": "Hello"}
        )
        balance = await client.get("/clients/c1/whatsapp/credits")
        history = await client.get("/clients/c1/whatsapp/credits/history", params={"limit": 10})

    assert sent.status_code == 200
    assert sent.json()["data"]["credits_used"] == 1
    assert balance.json()["data"]["credits"] == 1
    logs = history.json()["data"]["logs"]
    assert [(log["amount"], log["type"]) for log in logs] == [(-1, "DECREMENT")]


@pytest.mark.asyncio
async def test_send_with_no_credits_is_400(app, make_client, connect_client):
    await make_client("c1", credits=0)
    await connect_client("c1")
    async with await _client(app) as client:
        res = await client.post(
            "/clients/c1/whatsapp/send", json={"phone_number": "01711111111", "message": "Hello"}
        )
    assert res.status_code == 400
    assert res.json()["message"].startswith("Insufficient credits.")


@pytest.mark.asyncio
async def test_request_validation(app, make_client):
    await make_client("c1")
    async with await _client(app) as client:
        empty_body = await client.post("/clients/c1/whatsapp/send", json={"phone_number": "017", "message": ""})
        no_numbers = await client.post("/clients/c1/whatsapp/send-bulk", json={"phone_numbers": [], "message": "x"})
    assert empty_body.status_code == 422
    assert no_numbers.status_code == 422


@pytest.mark.asyncio
async def test_unknown_client_credits_is_404(app):
    async with await _client(app) as client:
        res = await client.get("/clients/ghost/whatsapp/credits")
    assert res.status_code == 404
    assert res.json() == {"success": False, "message": "Client not found", "data": None}


@pytest.mark.asyncio
async def test_read_views(app, core, make_client):
    await make_client("c1")
    await core.store.persist_synced("c1", provider_message("A1", sender="A@c.us", timestamp=1_700_000_000))
    async with await _client(app) as client:
        convs = await client.get("/clients/c1/whatsapp/conversations")
        thread = await client.get("/clients/c1/whatsapp/conversations/A@c.us")
        inbox = await client.get("/clients/c1/whatsapp/inbox")
        stats = await client.get("/clients/c1/whatsapp/stats")
        messages = await client.get("/clients/c1/whatsapp/messages", params={"limit": 5})
        status = await client.get("/clients/c1/whatsapp/status")
        qr = await client.get("/clients/c1/whatsapp/qr")
        sync = await client.post("/clients/c1/whatsapp/sync")

    assert convs.json()["data"][0]["phone_number"] == "A@c.us"
    assert thread.json()["data"]["messages"][0]["provider_message_id"] == "A1"
    assert inbox.json()["data"]["summary"]["total_messages"] == 1
    assert stats.json()["data"]["inbound_messages"] == 1
    assert messages.json()["data"]["pagination"]["total"] == 1
    assert status.json()["data"]["status"] == "disconnected"
    assert qr.status_code == 404
    assert sync.status_code == 400
    assert sync.json()["message"] == "WhatsApp client not connected"


@pytest.mark.asyncio
async def test_disconnect_and_admin_routes(app, core, make_client, connect_client):
    await make_client("c1")
    await connect_client("c1")
    async with await _client(app) as client:
        sessions = await client.get("/whatsapp/sessions")
        cleanup = await client.post("/whatsapp/cleanup")
        gone = await client.post("/clients/c1/whatsapp/disconnect")

    assert sessions.json()["data"]["total_active_sessions"] == 1
    assert cleanup.json()["data"]["total_deleted"] == 0
    assert gone.status_code == 200
    assert "c1" not in core.registry


@pytest.mark.asyncio
async def test_stored_media_is_served_at_its_url(app, core, make_client, connect_client):
    await make_client("c1")
    conn = await connect_client("c1")
    conn.media["IMG1"] = MediaPayload(data=b"\xff\xd8jpeg", mime_type="image/jpeg")
    await conn.feed("message", {"id": "IMG1", "from": "A@c.us", "to": conn.me, "body": "pic", "type": "image"})

    event = core.fanout.of_type("message_received")[-1]
    assert event["file_url"].startswith("/files/attachments/")
    async with await _client(app) as client:
        res = await client.get(event["file_url"])
        missing = await client.get("/files/attachments/nope.jpg")

    assert res.status_code == 200
    assert res.content == b"\xff\xd8jpeg"
    assert missing.status_code == 404
