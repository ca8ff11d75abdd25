from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from wacore.db.models import AuditLog


class AuditLogRepository:
    """Append-only business audit trail."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(self, client_id: str, type: str, data: Mapping[str, Any] | None = None) -> AuditLog:
        entity = AuditLog(client_id=client_id, type=type, data=dict(data) if data is not None else None)
        self.session.add(entity)
        try:
            await self.session.commit()
            await self.session.refresh(entity)
            return entity
        except SQLAlchemyError:
            await self.session.rollback()
            raise

    async def latest_of_type(self, client_id: str, type: str) -> Optional[AuditLog]:
        stmt = (
            select(AuditLog)
            .where(AuditLog.client_id == client_id, AuditLog.type == type)
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .limit(1)
        )
        res = await self.session.execute(stmt)
        return res.scalar_one_or_none()

    async def list_for_client(
        self, client_id: str, *, type: str | None = None, since: datetime | None = None
    ) -> list[AuditLog]:
        stmt = select(AuditLog).where(AuditLog.client_id == client_id)
        if type is not None:
            stmt = stmt.where(AuditLog.type == type)
        if since is not None:
            stmt = stmt.where(AuditLog.created_at >= since)
        stmt = stmt.order_by(AuditLog.id.asc())
        res = await self.session.execute(stmt)
        return list(res.scalars().all())
