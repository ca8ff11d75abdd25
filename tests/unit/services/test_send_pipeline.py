from __future__ import annotations

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from wacore.adapters.metrics import Metrics
from wacore.adapters.provider import ProviderError
from wacore.db.models import AuditLog, Client, CreditLog, Message, Template
from wacore.repositories.sessions import SessionRepository
from wacore.services.errors import InsufficientCredits


async def _credits(session_maker, client_id: str = "c1") -> int:
    async with session_maker() as session:
        return (await session.execute(select(Client.credits).where(Client.id == client_id))).scalar_one()


async def _ledger(session_maker, client_id: str = "c1") -> list[tuple[int, str]]:
    async with session_maker() as session:
        rows = (
            await session.execute(
                select(CreditLog).where(CreditLog.client_id == client_id).order_by(CreditLog.id)
            )
        ).scalars().all()
    return [(r.amount, r.kind) for r in rows]


async def _outbound(session_maker) -> list[Message]:
    async with session_maker() as session:
        return list(
            (await session.execute(select(Message).where(Message.direction == "OUTBOUND"))).scalars().all()
        )


async def _audit_types(session_maker) -> list[str]:
    async with session_maker() as session:
        return list((await session.execute(select(AuditLog.type).order_by(AuditLog.id))).scalars().all())


@pytest.mark.asyncio
async def test_send_debits_one_credit_and_records_message(core, make_client, connect_client, session_maker):
    await make_client("c1", credits=1)
    conn = await connect_client("c1")

    result = await core.pipeline.send_one("c1", "01711111111", "Hello")

    assert result.success, result.message
    assert result.data["to"] == "8801711111111@c.us"
    assert result.data["credits_used"] == 1
    assert result.data["remaining_credits"] == 0
    assert result.data["retry_count"] == 0
    assert conn.sent == [("8801711111111@c.us", "Hello")]
    assert await _credits(session_maker) == 0
    assert await _ledger(session_maker) == [(-1, "DECREMENT")]

    rows = await _outbound(session_maker)
    assert len(rows) == 1
    assert rows[0].status == "SENT"
    assert rows[0].provider_message_id == result.data["id"]
    assert rows[0].from_address == conn.me

    sent_events = core.fanout.of_type("message_sent")
    assert sent_events and sent_events[0]["saved_message_id"] == rows[0].id
    assert Metrics.get("whatsapp_message_sent") == 1


@pytest.mark.asyncio
async def test_send_with_zero_balance_is_rejected(core, make_client, connect_client, session_maker):
    await make_client("c1", credits=0)
    conn = await connect_client("c1")

    result = await core.pipeline.send_one("c1", "01711111111", "Hello")

    assert not result.success
    assert result.message == (
        "Insufficient credits. You have 0 credits, but 1 credit is required to send a message."
    )
    assert conn.sent == []
    assert await _outbound(session_maker) == []
    assert await _ledger(session_maker) == []


@pytest.mark.asyncio
async def test_send_without_connection_fails(core, make_client, provider, session_maker):
    await make_client("c1", credits=5)
    provider.options["c1"] = {"fail_init": RuntimeError("gateway down")}

    result = await core.pipeline.send_one("c1", "01711111111", "Hello")

    assert not result.success
    assert result.message == "Failed to connect WhatsApp client"
    assert await _credits(session_maker) == 5


@pytest.mark.asyncio
async def test_send_rejects_unparseable_number(core, make_client, connect_client):
    await make_client("c1", credits=1)
    await connect_client("c1")

    result = await core.pipeline.send_one("c1", "not a number", "Hello")

    assert not result.success
    assert result.message == "Invalid phone number format"


@pytest.mark.asyncio
async def test_chat_access_error_is_retried(core, make_client, connect_client, session_maker):
    await make_client("c1", credits=1)
    conn = await connect_client("c1")
    conn.send_failures = [ProviderError("Evaluation failed: TypeError: Cannot read getChat")]

    result = await core.pipeline.send_one("c1", "01711111111", "Hello")

    assert result.success
    assert result.data["retry_count"] == 1
    assert len(conn.sent) == 2
    assert await _ledger(session_maker) == [(-1, "DECREMENT")]


@pytest.mark.asyncio
async def test_retries_exhausted_returns_chat_access_message(core, make_client, connect_client, session_maker, test_settings):
    await make_client("c1", credits=1)
    conn = await connect_client("c1")
    conn.send_failures = [ProviderError("getChat failed") for _ in range(test_settings.send_max_attempts)]

    result = await core.pipeline.send_one("c1", "01711111111", "Hello")

    assert not result.success
    assert result.message == "Failed to access chat. Please try reconnecting WhatsApp."
    assert len(conn.sent) == test_settings.send_max_attempts
    assert await _credits(session_maker) == 1
    assert "message_error" in await _audit_types(session_maker)


@pytest.mark.asyncio
async def test_permanent_error_is_not_retried(core, make_client, connect_client, session_maker):
    await make_client("c1", credits=1)
    conn = await connect_client("c1")
    conn.send_failures = [ProviderError("wid error: not-found")]

    result = await core.pipeline.send_one("c1", "01711111111", "Hello")

    assert not result.success
    assert result.message == "Phone number not found on WhatsApp."
    assert len(conn.sent) == 1
    assert await _credits(session_maker) == 1
    assert await _outbound(session_maker) == []


@pytest.mark.asyncio
async def test_debit_race_after_send_still_reports_success(core, make_client, connect_client, session_maker, monkeypatch):
    await make_client("c1", credits=1)
    await connect_client("c1")

    async def drained(client_id, amount, description=None):  # type: ignore[no-untyped-def]
        raise InsufficientCredits(required=amount, available=0)

    monkeypatch.setattr(core.ledger, "decrement", drained)

    result = await core.pipeline.send_one("c1", "01711111111", "Hello")

    assert result.success
    assert result.data["credits_used"] == 0
    assert result.data["remaining_credits"] == 0
    assert len(await _outbound(session_maker)) == 1
    assert "credit_debit_skipped" in await _audit_types(session_maker)


@pytest.mark.asyncio
async def test_bulk_unaffordable_sends_nothing(core, make_client, connect_client, session_maker):
    await make_client("c1", credits=1)
    conn = await connect_client("c1")

    result = await core.pipeline.send_bulk("c1", ["01711111111", "01822222222"], "Hi all")

    assert not result.success
    assert result.message == (
        "Insufficient credits. You have 1 credits, but 2 credits are required to send 2 messages."
    )
    assert conn.sent == []
    assert await _ledger(session_maker) == []


@pytest.mark.asyncio
async def test_bulk_partial_failure_debits_successes_once(core, make_client, connect_client, session_maker):
    await make_client("c1", credits=5)
    conn = await connect_client("c1")
    conn.send_failures = [ProviderError("not-found")]

    result = await core.pipeline.send_bulk("c1", ["01711111111", "01822222222", "01933333333"], "Hi all")

    assert result.success
    summary = result.data["summary"]
    assert summary["total"] == 3
    assert summary["successful"] == 2
    assert summary["failed"] == 1
    assert summary["credits_used"] == 2
    assert summary["credits_remaining"] == 3
    assert round(summary["success_rate"], 2) == 66.67

    per_recipient = result.data["results"]
    assert [r["success"] for r in per_recipient] == [False, True, True]
    assert per_recipient[0]["message"] == "Phone number not found on WhatsApp."
    assert per_recipient[1]["data"]["remaining_credits"] == 3

    assert await _ledger(session_maker) == [(-2, "DECREMENT")]
    assert len(await _outbound(session_maker)) == 2


@pytest.mark.asyncio
async def test_bulk_requires_recipients(core, make_client):
    await make_client("c1", credits=5)
    result = await core.pipeline.send_bulk("c1", [], "Hi")
    assert not result.success
    assert result.message == "At least one phone number is required"


async def _template(session_maker, content: str = "Hi {{name}}, your code is {{code}}") -> str:
    async with session_maker() as session:
        tpl = Template(client_id="c1", name="otp", content=content, category="auth")
        session.add(tpl)
        await session.commit()
        return tpl.id


@pytest.mark.asyncio
async def test_send_template_renders_and_sends(core, make_client, connect_client, session_maker):
    await make_client("c1", credits=2)
    conn = await connect_client("c1")
    template_id = await _template(session_maker)

    result = await core.pipeline.send_template("c1", ["01711111111"], template_id, {"name": "Ana", "code": "42"})

    assert result.success
    assert result.data["processed_content"] == "Hi Ana, your code is 42"
    assert result.data["template"]["name"] == "otp"
    assert conn.sent == [("8801711111111@c.us", "Hi Ana, your code is 42")]
    assert "template_message_sent" in await _audit_types(session_maker)


@pytest.mark.asyncio
async def test_send_template_to_many_uses_bulk(core, make_client, connect_client, session_maker):
    await make_client("c1", credits=2)
    await connect_client("c1")
    template_id = await _template(session_maker, "Hello {{name}}")

    result = await core.pipeline.send_template("c1", ["01711111111", "01822222222"], template_id, {"name": "all"})

    assert result.success
    assert result.data["summary"]["successful"] == 2
    assert result.data["processed_content"] == "Hello all"


@pytest.mark.asyncio
async def test_send_template_validation(core, make_client, session_maker):
    await make_client("c1", credits=2)
    template_id = await _template(session_maker)

    missing = await core.pipeline.send_template("c1", ["01711111111"], template_id, {"name": "Ana"})
    assert not missing.success
    assert missing.message == "Missing required variables: code"

    unknown = await core.pipeline.send_template("c1", ["01711111111"], "nope", {})
    assert not unknown.success
    assert unknown.reason == "not_found"
    assert unknown.message == "Template not found"


@pytest.mark.asyncio
async def test_preview_template(core, make_client, session_maker):
    await make_client("c1")
    template_id = await _template(session_maker)

    preview = await core.pipeline.preview_template("c1", template_id, {"name": "Ana"})

    assert preview.success
    assert preview.data["processed_content"] == "Hi Ana, your code is {{code}}"
    assert preview.data["validation"] == {"is_valid": False, "missing_variables": ["code"]}


@pytest.mark.asyncio
async def test_template_send_is_audited_only_when_something_went_out(core, make_client, connect_client, session_maker):
    await make_client("c1", credits=0)
    await connect_client("c1")
    template_id = await _template(session_maker, "Hello {{name}}")

    refused = await core.pipeline.send_template("c1", ["01711111111"], template_id, {"name": "Ana"})
    empty = await core.pipeline.send_template("c1", [], template_id, {"name": "Ana"})

    assert not refused.success
    assert not empty.success
    assert "template_message_sent" not in await _audit_types(session_maker)


@pytest.mark.asyncio
async def test_send_survives_own_address_lookup_failure(core, make_client, connect_client, session_maker, monkeypatch):
    await make_client("c1", credits=1)
    conn = await connect_client("c1")

    async def _broken(self, client_id):
        raise OperationalError("SELECT", {}, Exception("database is locked"))

    monkeypatch.setattr(SessionRepository, "me_number", _broken)

    result = await core.pipeline.send_one("c1", "01711111111", "Hello")

    assert result.success, result.message
    assert result.data["from"] == conn.me
    rows = await _outbound(session_maker)
    assert len(rows) == 1
    assert rows[0].from_address == conn.me
