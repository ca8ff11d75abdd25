from __future__ import annotations

from typing import Any, Mapping

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wacore.repositories.audit_logs import AuditLogRepository


logger = structlog.get_logger(__name__)


async def record_audit(
    session_maker: async_sessionmaker[AsyncSession],
    client_id: str,
    type: str,
    data: Mapping[str, Any] | None = None,
) -> None:
    """Append an audit row; failures are logged and swallowed."""
    try:
        async with session_maker() as session:
            await AuditLogRepository(session).append(client_id, type, data)
    except Exception:
        logger.exception("audit_log_failed", client_id=client_id, audit_type=type)
