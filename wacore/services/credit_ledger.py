from __future__ import annotations

from typing import Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wacore.adapters.metrics import Metrics
from wacore.repositories.clients import ClientRepository
from wacore.repositories.credits import CreditRepository
from wacore.services.errors import ClientNotFound, InsufficientCredits
from wacore.services.results import NOT_FOUND, OperationResult


logger = structlog.get_logger(__name__)


class CreditLedger:
    """Tenant credit balance plus its append-only ledger.

    Every mutation writes the counter and a CreditLog row in one transaction,
    so the balance always equals the sum of the tenant's ledger amounts.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def increment(self, client_id: str, amount: int, description: str | None = None) -> int:
        if amount <= 0:
            raise ValueError("amount must be positive")
        async with self.session_maker() as session:
            balance = await CreditRepository(session).increment(client_id, amount, description)
        if balance is None:
            raise ClientNotFound(client_id)
        logger.info("credits_incremented", client_id=client_id, amount=amount, balance=balance)
        return balance

    async def decrement(self, client_id: str, amount: int, description: str | None = None) -> int:
        """Debit ``amount`` or raise InsufficientCredits; never drives the balance negative."""
        if amount <= 0:
            raise ValueError("amount must be positive")
        async with self.session_maker() as session:
            applied, balance = await CreditRepository(session).conditional_decrement(
                client_id, amount, description
            )
        if balance is None:
            raise ClientNotFound(client_id)
        if not applied:
            logger.info(
                "credits_insufficient", client_id=client_id, required=amount, available=balance
            )
            raise InsufficientCredits(required=amount, available=balance)
        Metrics.inc("credits_debited", value=amount)
        logger.info("credits_decremented", client_id=client_id, amount=amount, balance=balance)
        return balance

    async def current(self, client_id: str) -> Optional[int]:
        async with self.session_maker() as session:
            client = await ClientRepository(session).get_by_id(client_id)
        return None if client is None else int(client.credits or 0)

    async def balance(self, client_id: str) -> OperationResult:
        try:
            async with self.session_maker() as session:
                client = await ClientRepository(session).get_by_id(client_id)
        except SQLAlchemyError as exc:
            logger.exception("credits_balance_failed", client_id=client_id)
            return OperationResult.fail(str(exc))
        if client is None:
            return OperationResult.fail("Client not found", reason=NOT_FOUND)
        return OperationResult.ok(
            {
                "client_id": client.id,
                "name": client.name,
                "email": client.email,
                "credits": int(client.credits or 0),
            }
        )

    async def history(self, client_id: str, limit: int = 50, offset: int = 0) -> OperationResult:
        try:
            async with self.session_maker() as session:
                items, total = await CreditRepository(session).history(
                    client_id, limit=limit, offset=offset
                )
        except SQLAlchemyError as exc:
            logger.exception("credits_history_failed", client_id=client_id)
            return OperationResult.fail(str(exc))
        logs = [
            {
                "id": log.id,
                "amount": log.amount,
                "type": log.kind,
                "description": log.description,
                "created_at": log.created_at.isoformat() if log.created_at else None,
            }
            for log in items
        ]
        return OperationResult.ok(
            {
                "logs": logs,
                "pagination": {
                    "total": total,
                    "limit": limit,
                    "offset": offset,
                    "has_more": offset + limit < total,
                },
            }
        )
