from __future__ import annotations

from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from wacore.db.models import Client, CreditLog


class CreditRepository:
    """Balance counter and append-only ledger, always written together."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _current(self, client_id: str) -> Optional[int]:
        res = await self.session.execute(select(Client.credits).where(Client.id == client_id))
        value = res.scalar_one_or_none()
        return None if value is None else int(value)

    async def increment(self, client_id: str, amount: int, description: str | None) -> Optional[int]:
        """Add credits and an INCREMENT entry. Returns new balance or None if client missing."""
        try:
            res = await self.session.execute(
                update(Client)
                .where(Client.id == client_id)
                .values(credits=Client.credits + amount)
            )
            if res.rowcount != 1:
                await self.session.rollback()
                return None
            self.session.add(
                CreditLog(client_id=client_id, amount=amount, kind="INCREMENT", description=description)
            )
            await self.session.flush()
            balance = await self._current(client_id)
            await self.session.commit()
            return balance
        except SQLAlchemyError:
            await self.session.rollback()
            raise

    async def conditional_decrement(
        self, client_id: str, amount: int, description: str | None
    ) -> tuple[bool, Optional[int]]:
        """Atomically subtract credits only when the balance covers the amount.

        Issues ``UPDATE ... SET credits = credits - :n WHERE credits >= :n`` and
        checks rows affected, so concurrent decrements cannot overdraw.
        Returns (applied, balance); balance is None when the client is missing.
        """
        try:
            res = await self.session.execute(
                update(Client)
                .where(Client.id == client_id, Client.credits >= amount)
                .values(credits=Client.credits - amount)
            )
            if res.rowcount != 1:
                await self.session.rollback()
                return False, await self._current(client_id)
            self.session.add(
                CreditLog(client_id=client_id, amount=-amount, kind="DECREMENT", description=description)
            )
            await self.session.flush()
            balance = await self._current(client_id)
            await self.session.commit()
            return True, balance
        except SQLAlchemyError:
            await self.session.rollback()
            raise

    async def history(
        self, client_id: str, *, limit: int = 50, offset: int = 0
    ) -> tuple[list[CreditLog], int]:
        items_stmt = (
            select(CreditLog)
            .where(CreditLog.client_id == client_id)
            .order_by(CreditLog.created_at.desc(), CreditLog.id.desc())
            .limit(limit)
            .offset(offset)
        )
        total_stmt = select(func.count(CreditLog.id)).where(CreditLog.client_id == client_id)
        items = list((await self.session.execute(items_stmt)).scalars().all())
        total = int((await self.session.execute(total_stmt)).scalar() or 0)
        return items, total

    async def ledger_sum(self, client_id: str) -> int:
        stmt = select(func.coalesce(func.sum(CreditLog.amount), 0)).where(CreditLog.client_id == client_id)
        return int((await self.session.execute(stmt)).scalar() or 0)
