from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from wacore.db.models import Client


class ClientRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, id: str) -> Optional[Client]:
        stmt = select(Client).where(Client.id == id)
        res = await self.session.execute(stmt)
        return res.scalar_one_or_none()

    async def list_ids(self) -> list[str]:
        res = await self.session.execute(select(Client.id).order_by(Client.created_at))
        return [str(v) for v in res.scalars().all()]
