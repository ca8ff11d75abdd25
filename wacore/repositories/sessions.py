from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from wacore.db.models import WhatsAppSession


class SessionRepository:
    """Repository for whatsapp_sessions; one logical row per client."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_latest(self, client_id: str) -> Optional[WhatsAppSession]:
        stmt = (
            select(WhatsAppSession)
            .where(WhatsAppSession.client_id == client_id)
            .order_by(WhatsAppSession.created_at.desc(), WhatsAppSession.updated_at.desc())
            .limit(1)
        )
        res = await self.session.execute(stmt)
        return res.scalar_one_or_none()

    async def get_active(self, client_id: str) -> Optional[WhatsAppSession]:
        stmt = (
            select(WhatsAppSession)
            .where(WhatsAppSession.client_id == client_id, WhatsAppSession.status == "active")
            .limit(1)
        )
        res = await self.session.execute(stmt)
        return res.scalar_one_or_none()

    async def upsert_status(
        self, client_id: str, status: str, session_data: dict[str, Any] | None = None
    ) -> WhatsAppSession:
        """Set status on the client's session row, creating it on first use.

        When session_data is given it replaces the stored blob.
        """
        try:
            existing = await self.get_latest(client_id)
            if existing is None:
                existing = WhatsAppSession(client_id=client_id, status=status, session_data=session_data)
                self.session.add(existing)
            else:
                existing.status = status
                if session_data is not None:
                    existing.session_data = dict(session_data)
            await self.session.commit()
            await self.session.refresh(existing)
            return existing
        except SQLAlchemyError:
            await self.session.rollback()
            raise

    async def list_active_client_ids(self) -> list[str]:
        stmt = (
            select(WhatsAppSession.client_id)
            .where(WhatsAppSession.status == "active")
            .distinct()
        )
        res = await self.session.execute(stmt)
        return [str(v) for v in res.scalars().all()]

    async def list_active(self) -> list[WhatsAppSession]:
        stmt = select(WhatsAppSession).where(WhatsAppSession.status == "active")
        res = await self.session.execute(stmt)
        return list(res.scalars().all())

    async def delete_for_client(self, client_id: str) -> int:
        res = await self.session.execute(
            delete(WhatsAppSession).where(WhatsAppSession.client_id == client_id)
        )
        await self.session.commit()
        return int(res.rowcount or 0)

    async def me_number(self, client_id: str) -> str | None:
        """Return the tenant's own provider address from the active session blob."""
        active = await self.get_active(client_id)
        if active is None or not isinstance(active.session_data, dict):
            return None
        value = active.session_data.get("me_number")
        return str(value) if value else None
