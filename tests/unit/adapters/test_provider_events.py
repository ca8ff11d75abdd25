import pytest

from wacore.adapters.provider import (
    ErrorCategory,
    MessageAck,
    ProviderError,
    ProviderEvent,
    ProviderMessage,
    classify_error_message,
)

from tests.fakes import FakeConnection


def test_classify_error_message():
    assert classify_error_message("Cannot read properties of undefined (reading 'getChat')") is ErrorCategory.CHAT_ACCESS
    assert classify_error_message("not-authorized") is ErrorCategory.SESSION_EXPIRED
    assert classify_error_message("wid error: not-found") is ErrorCategory.RECIPIENT_NOT_FOUND
    assert classify_error_message(None) is ErrorCategory.GENERIC


def test_user_messages():
    assert ProviderError("not-authorized").user_message == "WhatsApp session expired. Please scan QR code again."
    assert ProviderError("weird").user_message == "Send failed: weird"
    assert not ProviderError("weird").retryable
    assert ProviderError("weird", transient=True).retryable


def test_message_from_payload():
    msg = ProviderMessage.from_payload(
        {"id": {"_serialized": "X1"}, "from": "A@c.us", "to": "B@c.us", "body": "hi", "fromMe": True, "timestamp": "5"}
    )
    assert msg.id == "X1" and msg.from_me and msg.timestamp == 5
    with pytest.raises(ValueError):
        ProviderMessage.from_payload({"from": "A@c.us"})


@pytest.mark.asyncio
async def test_feed_translates_events():
    conn = FakeConnection("c1")
    seen: list = []

    async def record(payload):
        seen.append(payload)

    for event in ProviderEvent:
        conn.on(event, record)

    await conn.feed("authenticated", {"me": {"_serialized": "ME@c.us"}})
    assert conn.is_ready and conn.me_address == "ME@c.us"

    await conn.feed("message.ack", {"id": "M1", "ack": 2})
    await conn.feed("message.ack", {"id": "M1"})
    await conn.feed("message", {"body": "no id"})
    await conn.feed("presence.update", {})
    await conn.feed("disconnected", {"reason": "LOGOUT"})

    assert seen == ["ME@c.us", MessageAck("M1", 2), "LOGOUT"]
    assert not conn.is_ready


@pytest.mark.asyncio
async def test_handler_errors_do_not_propagate():
    conn = FakeConnection("c1")
    calls: list[str] = []

    async def broken(_):
        raise RuntimeError("boom")

    async def healthy(payload):
        calls.append(payload)

    conn.on(ProviderEvent.QR, broken)
    conn.on(ProviderEvent.QR, healthy)
    await conn.feed("qr", {"qr": "QR"})
    assert calls == ["QR"]


@pytest.mark.asyncio
async def test_malformed_ack_is_dropped():
    conn = FakeConnection("c1")
    seen: list = []

    async def record(payload):
        seen.append(payload)

    conn.on(ProviderEvent.ACK, record)

    await conn.feed("message.ack", {"id": "M1", "ack": "read"})
    await conn.feed("message.ack", {"id": "M1", "ack": {"code": 3}})
    await conn.feed("message.ack", {"id": "M1", "ack": "3"})

    assert seen == [MessageAck("M1", 3)]
