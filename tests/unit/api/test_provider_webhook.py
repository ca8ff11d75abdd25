from __future__ import annotations

import json

import pytest
from httpx import ASGITransport, AsyncClient

from wacore.api.webhooks.provider import SIGNATURE_HEADER, compute_signature
from wacore.main import create_app
from wacore.utils.config import Settings, get_settings

from tests.fakes import ME

SECRET = "s3cret"


@pytest.fixture
def app(core):
    app = create_app(core=core)
    app.dependency_overrides[get_settings] = lambda: Settings(webhook_secret=SECRET)
    return app


def _envelope(session: str = "c1", event: str = "message", **payload) -> bytes:
    return json.dumps({"event": event, "session": session, "payload": payload}).encode()


async def _post(app, body: bytes, signature: str | None):
    headers = {"Content-Type": "application/json"}
    if signature is not None:
        headers[SIGNATURE_HEADER] = signature
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        return await client.post("/webhook/provider", content=body, headers=headers)


@pytest.mark.asyncio
async def test_valid_signature_routes_message(app, core, make_client, connect_client):
    await make_client("c1")
    await connect_client("c1")
    body = _envelope(id="W1", **{"from": "A@c.us", "to": ME, "body": "hello"})

    res = await _post(app, body, compute_signature(body, SECRET))

    assert res.status_code == 200
    assert res.json() == {"ok": True, "routed": True}
    assert await core.store.exists("c1", "W1")


@pytest.mark.asyncio
async def test_bad_or_missing_signature_is_forbidden(app, core, make_client, connect_client):
    await make_client("c1")
    await connect_client("c1")
    body = _envelope(id="W1", **{"from": "A@c.us", "to": ME, "body": "hello"})

    assert (await _post(app, body, "deadbeef")).status_code == 403
    assert (await _post(app, body, None)).status_code == 403
    assert not await core.store.exists("c1", "W1")


@pytest.mark.asyncio
async def test_invalid_payloads(app):
    bad_json = b"{not json"
    assert (await _post(app, bad_json, compute_signature(bad_json, SECRET))).status_code == 400

    no_session = json.dumps({"event": "message"}).encode()
    assert (await _post(app, no_session, compute_signature(no_session, SECRET))).status_code == 400


@pytest.mark.asyncio
async def test_unknown_session_is_acknowledged_but_not_routed(app):
    body = _envelope(session="ghost", id="W1")
    res = await _post(app, body, compute_signature(body, SECRET))
    assert res.status_code == 200
    assert res.json()["routed"] is False


@pytest.mark.asyncio
async def test_signature_skipped_without_secret(core, make_client, connect_client):
    await make_client("c1")
    await connect_client("c1")
    app = create_app(core=core)
    app.dependency_overrides[get_settings] = lambda: Settings(webhook_secret="")

    res = await _post(app, _envelope(event="message.ack", id="unknown", ack=2), None)

    assert res.status_code == 200
    assert res.json()["routed"] is True
