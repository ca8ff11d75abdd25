from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from wacore.db.models import Attachment, Message


# Address of the other party: recipient for outbound rows, sender otherwise
counterpart = case(
    (Message.direction == "OUTBOUND", Message.to_address),
    else_=Message.from_address,
)


class MessageRepository:
    """Repository for messages with idempotency guard on (client_id, provider_message_id)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_provider_id(self, client_id: str, provider_message_id: str) -> Optional[Message]:
        stmt = select(Message).where(
            Message.client_id == client_id,
            Message.provider_message_id == provider_message_id,
        )
        res = await self.session.execute(stmt)
        return res.scalar_one_or_none()

    async def insert(
        self,
        *,
        client_id: str,
        provider_message_id: str,
        direction: str,
        from_address: str | None,
        to_address: str | None,
        body: str | None,
        type: str,
        timestamp: datetime,
        status: str,
        attachment: Attachment | None = None,
    ) -> tuple[Message | None, bool]:
        """Insert a message (and its attachment) in one transaction.

        Returns: (entity, created)
        created=False indicates the unique key already existed; nothing is written.
        """
        entity = Message(
            client_id=client_id,
            provider_message_id=provider_message_id,
            direction=direction,
            from_address=from_address,
            to_address=to_address,
            body=body,
            type=type,
            timestamp=timestamp,
            status=status,
        )
        if attachment is not None:
            self.session.add(attachment)
            await self._flush_or_rollback()
            entity.attachment_id = attachment.id
        self.session.add(entity)
        try:
            await self.session.commit()
            await self.session.refresh(entity)
            return entity, True
        except IntegrityError:
            # Unique constraint violation -> treat as duplicate; rollback transaction
            await self.session.rollback()
            return None, False
        except SQLAlchemyError:
            await self.session.rollback()
            raise

    async def _flush_or_rollback(self) -> None:
        try:
            await self.session.flush()
        except SQLAlchemyError:
            await self.session.rollback()
            raise

    async def update_status(
        self,
        client_id: str,
        provider_message_id: str,
        new_status: str,
        *,
        allowed_from: Iterable[str],
    ) -> bool:
        """Set status only when the current status is one of allowed_from."""
        stmt = (
            update(Message)
            .where(
                Message.client_id == client_id,
                Message.provider_message_id == provider_message_id,
                Message.status.in_(list(allowed_from)),
            )
            .values(status=new_status)
        )
        res = await self.session.execute(stmt)
        await self.session.commit()
        return bool(res.rowcount)

    async def trim_to_recent(self, client_id: str, keep: int) -> tuple[int, list[str]]:
        """Delete everything older than the `keep` most recent messages (by timestamp, then id).

        Returns (deleted_count, storage keys of the attachments removed with them).
        """
        cutoff_stmt = (
            select(Message.timestamp)
            .where(Message.client_id == client_id)
            .order_by(Message.timestamp.desc(), Message.id.desc())
            .offset(max(keep - 1, 0))
            .limit(1)
        )
        cutoff = (await self.session.execute(cutoff_stmt)).scalar_one_or_none()
        if cutoff is None:
            return 0, []
        keep_stmt = (
            select(Message.id)
            .where(Message.client_id == client_id)
            .order_by(Message.timestamp.desc(), Message.id.desc())
            .limit(keep)
        )
        keep_ids = list((await self.session.execute(keep_stmt)).scalars().all())
        return await self._delete_with_attachments(
            Message.client_id == client_id, Message.id.notin_(keep_ids)
        )

    async def delete_for_client(self, client_id: str) -> tuple[int, list[str]]:
        return await self._delete_with_attachments(Message.client_id == client_id)

    async def _delete_with_attachments(self, *conditions) -> tuple[int, list[str]]:
        """Delete matching messages and the attachment rows they own in one transaction."""
        owned = (
            await self.session.execute(
                select(Attachment.id, Attachment.storage_key)
                .join(Message, Message.attachment_id == Attachment.id)
                .where(*conditions)
            )
        ).all()
        try:
            res = await self.session.execute(delete(Message).where(*conditions))
            if owned:
                await self.session.execute(
                    delete(Attachment).where(Attachment.id.in_([att_id for att_id, _ in owned]))
                )
            await self.session.commit()
        except SQLAlchemyError:
            await self.session.rollback()
            raise
        return int(res.rowcount or 0), [key for _, key in owned]

    # Read helpers
    async def count(self, client_id: str, **filters: str) -> int:
        stmt = select(func.count(Message.id)).where(Message.client_id == client_id)
        for column, value in filters.items():
            stmt = stmt.where(getattr(Message, column) == value)
        return int((await self.session.execute(stmt)).scalar() or 0)

    async def count_media(self, client_id: str, media_types: Sequence[str]) -> int:
        stmt = select(func.count(Message.id)).where(
            Message.client_id == client_id, Message.type.in_(list(media_types))
        )
        return int((await self.session.execute(stmt)).scalar() or 0)

    async def conversation_summaries(
        self, client_id: str, *, exclude_address: str | None = None
    ) -> list[tuple[str, int, datetime | None]]:
        """Return (address, message_count, last_activity) per counterpart."""
        stmt = (
            select(counterpart.label("address"), func.count(Message.id), func.max(Message.timestamp))
            .where(Message.client_id == client_id, counterpart.is_not(None))
            .group_by(counterpart)
        )
        if exclude_address:
            stmt = stmt.where(counterpart != exclude_address)
        rows = (await self.session.execute(stmt)).all()
        return [(str(addr), int(cnt), last) for addr, cnt, last in rows]

    async def latest_for_counterpart(self, client_id: str, address: str) -> Optional[Message]:
        stmt = (
            select(Message)
            .where(Message.client_id == client_id, counterpart == address)
            .order_by(Message.timestamp.desc(), Message.id.desc())
            .limit(1)
        )
        res = await self.session.execute(stmt)
        return res.scalar_one_or_none()

    async def thread_page(
        self, client_id: str, address: str, *, limit: int = 50, offset: int = 0
    ) -> tuple[list[Message], int]:
        """Return (items newest-first, total) for one counterpart address."""
        cond = (Message.client_id == client_id) & (counterpart == address)
        items_stmt = (
            select(Message)
            .where(cond)
            .order_by(Message.timestamp.desc(), Message.id.desc())
            .limit(limit)
            .offset(offset)
        )
        total_stmt = select(func.count(Message.id)).where(cond)
        items = list((await self.session.execute(items_stmt)).scalars().all())
        total = int((await self.session.execute(total_stmt)).scalar() or 0)
        return items, total

    async def list_paginated_with_total(
        self, client_id: str, *, limit: int = 100, offset: int = 0
    ) -> tuple[list[Message], int]:
        items_stmt = (
            select(Message)
            .where(Message.client_id == client_id)
            .order_by(Message.timestamp.desc(), Message.id.desc())
            .limit(limit)
            .offset(offset)
        )
        items = list((await self.session.execute(items_stmt)).scalars().all())
        return items, await self.count(client_id)

    async def count_counterparts(self, client_id: str) -> int:
        stmt = select(func.count(func.distinct(counterpart))).where(
            Message.client_id == client_id, counterpart.is_not(None)
        )
        return int((await self.session.execute(stmt)).scalar() or 0)
