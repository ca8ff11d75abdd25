from __future__ import annotations

import pytest

from wacore.repositories.audit_logs import AuditLogRepository
from wacore.repositories.sessions import SessionRepository


@pytest.mark.asyncio
async def test_upsert_creates_then_updates_single_row(session_maker, make_client):
    await make_client("c1")
    async with session_maker() as session:
        repo = SessionRepository(session)
        await repo.upsert_status("c1", "pending", {"qr": "QR"})
        row = await repo.upsert_status("c1", "active", {"me_number": "880@c.us"})
        assert row.status == "active"
        assert row.session_data == {"me_number": "880@c.us"}
        assert await repo.list_active_client_ids() == ["c1"]
        assert await repo.me_number("c1") == "880@c.us"

        # status only; blob untouched
        await repo.upsert_status("c1", "disconnected")
        latest = await repo.get_latest("c1")
        assert latest.session_data == {"me_number": "880@c.us"}
        assert await repo.get_active("c1") is None
        assert await repo.me_number("c1") is None

        assert await repo.delete_for_client("c1") == 1
        assert await repo.get_latest("c1") is None


@pytest.mark.asyncio
async def test_audit_latest_of_type(session_maker):
    async with session_maker() as session:
        repo = AuditLogRepository(session)
        await repo.append("c1", "message_sync", {"n": 1})
        await repo.append("c1", "other", None)
        await repo.append("c1", "message_sync", {"n": 2})
        latest = await repo.latest_of_type("c1", "message_sync")
        assert latest.data == {"n": 2}
        assert [r.type for r in await repo.list_for_client("c1")] == ["message_sync", "other", "message_sync"]
        assert await repo.latest_of_type("c2", "message_sync") is None
