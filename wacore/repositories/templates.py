from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from wacore.db.models import Template


class TemplateRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_for_client(self, template_id: str, client_id: str) -> Optional[Template]:
        stmt = select(Template).where(Template.id == template_id, Template.client_id == client_id)
        res = await self.session.execute(stmt)
        return res.scalar_one_or_none()
