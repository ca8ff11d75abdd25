from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wacore.repositories.messages import MessageRepository
from wacore.repositories.sessions import SessionRepository
from wacore.services.message_store import INBOUND, OUTBOUND, MessageStore
from wacore.services.message_types import MEDIA_MIME_TYPES
from wacore.services.reconciler import Reconciler
from wacore.services.results import PRECONDITION, OperationResult
from wacore.utils.config import Settings, get_settings
from wacore.utils.phone import to_chat_id


logger = structlog.get_logger(__name__)

INBOX_RECENT_LIMIT = 10


class ConversationReadModels:
    """Conversation list, thread and inbox views derived from stored messages.

    Each view runs a cooldown-guarded sync first so reads reflect provider state
    when a live handle exists; a failed sync never fails the read.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        store: MessageStore,
        reconciler: Reconciler | None = None,
        settings: Settings | None = None,
    ):
        self.session_maker = session_maker
        self.store = store
        self.reconciler = reconciler
        self.settings = settings or get_settings()

    async def _refresh(self, client_id: str) -> None:
        if self.reconciler is not None:
            await self.reconciler.auto_sync(client_id)

    async def conversations(self, client_id: str) -> OperationResult:
        await self._refresh(client_id)
        try:
            async with self.session_maker() as session:
                me = await SessionRepository(session).me_number(client_id)
                repo = MessageRepository(session)
                summaries = await repo.conversation_summaries(client_id, exclude_address=me)
                items: list[dict[str, Any]] = []
                for address, count, last_activity in summaries:
                    latest = await repo.latest_for_counterpart(client_id, address)
                    items.append(
                        {
                            "phone_number": address,
                            "message_count": count,
                            "last_message": self.store.serialize(latest) if latest is not None else None,
                            "last_activity": last_activity,
                        }
                    )
        except SQLAlchemyError as exc:
            logger.exception("conversations_failed", client_id=client_id)
            return OperationResult.fail(str(exc))

        # Most recent first; conversations without activity go last
        items.sort(key=lambda c: c["last_activity"] or datetime.min, reverse=True)
        items.sort(key=lambda c: c["last_activity"] is None)
        for item in items:
            if item["last_activity"] is not None:
                item["last_activity"] = item["last_activity"].isoformat()
        return OperationResult.ok(items)

    async def conversation_thread(
        self, client_id: str, address: str, limit: int = 50, offset: int = 0
    ) -> OperationResult:
        """One conversation, paginated newest-first but returned oldest-first."""
        if not address:
            return OperationResult.fail("Phone number is required", reason=PRECONDITION)
        await self._refresh(client_id)
        chat_id = to_chat_id(address)
        try:
            async with self.session_maker() as session:
                me = await SessionRepository(session).me_number(client_id)
                rows, total = await MessageRepository(session).thread_page(
                    client_id, chat_id, limit=limit, offset=offset
                )
                messages = [self.store.serialize(row) for row in reversed(rows)]
        except SQLAlchemyError as exc:
            logger.exception("conversation_thread_failed", client_id=client_id, chat_id=chat_id)
            return OperationResult.fail(str(exc))
        return OperationResult.ok(
            {
                "messages": messages,
                "client_number": me,
                "pagination": {
                    "total": total,
                    "limit": limit,
                    "offset": offset,
                    "has_more": offset + limit < total,
                },
            }
        )

    async def inbox_summary(self, client_id: str) -> OperationResult:
        await self._refresh(client_id)
        try:
            async with self.session_maker() as session:
                repo = MessageRepository(session)
                total = await repo.count(client_id)
                conversations = await repo.count_counterparts(client_id)
                recent, _ = await repo.list_paginated_with_total(client_id, limit=INBOX_RECENT_LIMIT)
                recent_messages = [self.store.serialize(row) for row in recent]
        except SQLAlchemyError as exc:
            logger.exception("inbox_failed", client_id=client_id)
            return OperationResult.fail(str(exc))
        return OperationResult.ok(
            {
                "summary": {"total_messages": total, "total_conversations": conversations},
                "recent_messages": recent_messages,
            }
        )

    async def all_messages(self, client_id: str, limit: int = 100, offset: int = 0) -> OperationResult:
        try:
            async with self.session_maker() as session:
                rows, total = await MessageRepository(session).list_paginated_with_total(
                    client_id, limit=limit, offset=offset
                )
                messages = [self.store.serialize(row) for row in rows]
        except SQLAlchemyError as exc:
            logger.exception("all_messages_failed", client_id=client_id)
            return OperationResult.fail(str(exc))
        return OperationResult.ok(
            {
                "messages": messages,
                "pagination": {
                    "total": total,
                    "limit": limit,
                    "offset": offset,
                    "has_more": offset + limit < total,
                },
            }
        )

    async def message_stats(self, client_id: str) -> OperationResult:
        try:
            async with self.session_maker() as session:
                repo = MessageRepository(session)
                total = await repo.count(client_id)
                inbound = await repo.count(client_id, direction=INBOUND)
                outbound = await repo.count(client_id, direction=OUTBOUND)
                media = await repo.count_media(client_id, list(MEDIA_MIME_TYPES))
                newest: Optional[datetime] = None
                oldest: Optional[datetime] = None
                recent, _ = await repo.list_paginated_with_total(
                    client_id, limit=self.settings.message_retention_limit
                )
                if recent:
                    newest, oldest = recent[0].timestamp, recent[-1].timestamp
        except SQLAlchemyError as exc:
            logger.exception("message_stats_failed", client_id=client_id)
            return OperationResult.fail(str(exc))
        return OperationResult.ok(
            {
                "total_messages": total,
                "inbound_messages": inbound,
                "outbound_messages": outbound,
                "media_messages": media,
                "text_messages": total - media,
                "message_limit": self.settings.message_retention_limit,
                "oldest_message_in_memory": oldest.isoformat() if oldest else None,
                "newest_message_in_memory": newest.isoformat() if newest else None,
            }
        )
