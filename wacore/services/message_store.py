from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wacore.adapters.blob_store import LocalBlobStore
from wacore.adapters.metrics import Metrics
from wacore.adapters.provider import MessageAck, ProviderConnection, ProviderMessage, SentMessage
from wacore.db.models import Attachment, Message
from wacore.repositories.clients import ClientRepository
from wacore.repositories.messages import MessageRepository
from wacore.services.audit import record_audit
from wacore.services.message_types import MessageKind, audit_record_for, kind_of, mime_type_for
from wacore.utils.config import Settings, get_settings


logger = structlog.get_logger(__name__)


INBOUND = "INBOUND"
OUTBOUND = "OUTBOUND"

# Provider ack code -> delivery status
ACK_STATUS: dict[int, str] = {
    -1: "FAILED",
    0: "PENDING",
    1: "SENT",
    2: "DELIVERED",
    3: "READ",
    4: "READ",
}
STATUS_ORDER = ("PENDING", "SENT", "DELIVERED", "READ")


def allowed_predecessors(new_status: str) -> tuple[str, ...]:
    """Statuses an ack may move away from; acks never downgrade and FAILED is terminal."""
    if new_status == "FAILED":
        return ("PENDING", "SENT")
    idx = STATUS_ORDER.index(new_status)
    return STATUS_ORDER[:idx]


def from_epoch(ts: int | float | None) -> datetime:
    if not ts:
        return datetime.utcnow()
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def to_epoch(dt: datetime | None) -> int | None:
    if dt is None:
        return None
    return int(dt.replace(tzinfo=timezone.utc).timestamp())


@dataclass
class PersistResult:
    created: bool
    message: Optional[Message] = None
    reason: Optional[str] = None
    file_url: Optional[str] = None
    attachment_id: Optional[str] = None

    @property
    def skipped(self) -> bool:
        return not self.created


class MessageStore:
    """Durable message records keyed by (client_id, provider_message_id).

    The application pre-check avoids needless work (media downloads), while the
    unique constraint is what makes concurrent writers from the live event stream,
    sends and resync passes safe.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        blob_store: LocalBlobStore,
        settings: Settings | None = None,
    ):
        self.session_maker = session_maker
        self.blob_store = blob_store
        self.settings = settings or get_settings()

    async def exists(self, client_id: str, provider_message_id: str) -> bool:
        async with self.session_maker() as session:
            row = await MessageRepository(session).get_by_provider_id(client_id, provider_message_id)
        return row is not None

    async def persist_inbound(
        self,
        client_id: str,
        msg: ProviderMessage,
        *,
        connection: ProviderConnection | None = None,
    ) -> PersistResult:
        if await self.exists(client_id, msg.id):
            logger.info("inbound_duplicate_skipped", client_id=client_id, provider_message_id=msg.id)
            return PersistResult(created=False, reason="Duplicate message")

        attachment: Attachment | None = None
        file_url: str | None = None
        if kind_of(msg.type) is MessageKind.MEDIA and connection is not None:
            attachment, file_url = await self._store_media(client_id, msg, connection)

        async with self.session_maker() as session:
            row, created = await MessageRepository(session).insert(
                client_id=client_id,
                provider_message_id=msg.id,
                direction=INBOUND,
                from_address=msg.from_address,
                to_address=msg.to_address,
                body=msg.body,
                type=msg.type,
                timestamp=from_epoch(msg.timestamp),
                status="DELIVERED",
                attachment=attachment,
            )
        if not created:
            # Lost the race against another writer; the blob has no owner
            if attachment is not None:
                await self._discard_blob(attachment.storage_key)
            logger.info("inbound_duplicate_skipped", client_id=client_id, provider_message_id=msg.id)
            return PersistResult(created=False, reason="Duplicate message")

        Metrics.inc("whatsapp_message_received")
        logger.info(
            "inbound_message_saved",
            client_id=client_id,
            provider_message_id=msg.id,
            message_id=row.id if row else None,
        )
        record = audit_record_for(msg)
        await record_audit(self.session_maker, client_id, record.type, record.data)
        return PersistResult(
            created=True,
            message=row,
            file_url=file_url,
            attachment_id=attachment.id if attachment is not None else None,
        )

    async def _store_media(
        self, client_id: str, msg: ProviderMessage, connection: ProviderConnection
    ) -> tuple[Attachment | None, str | None]:
        try:
            media = await connection.download_media(msg)
        except Exception:
            logger.exception("media_download_failed", client_id=client_id, provider_message_id=msg.id)
            return None, None
        if media is None:
            return None, None
        name = _random_file_name(msg.id)
        key = f"{self.settings.attachment_prefix}{name}"
        try:
            url = await self.blob_store.put(key, media.data)
        except OSError:
            logger.exception("media_store_failed", client_id=client_id, provider_message_id=msg.id)
            return None, None
        attachment = Attachment(
            id=str(uuid.uuid4()),
            name=name,
            mime_type=media.mime_type or mime_type_for(msg.type) or "application/octet-stream",
            size=len(media.data),
            storage_key=key,
        )
        return attachment, url

    async def _discard_blob(self, key: str) -> None:
        try:
            await self.blob_store.delete(key)
        except OSError:
            logger.warning("blob_delete_failed", key=key)

    async def persist_outbound(
        self,
        client_id: str,
        sent: SentMessage,
        *,
        from_address: str | None,
        to_address: str,
        body: str,
    ) -> Message:
        """Record a confirmed send; re-observing the same provider id returns the existing row."""
        async with self.session_maker() as session:
            repo = MessageRepository(session)
            row, created = await repo.insert(
                client_id=client_id,
                provider_message_id=sent.id,
                direction=OUTBOUND,
                from_address=from_address,
                to_address=to_address,
                body=body,
                type=sent.type or "chat",
                timestamp=from_epoch(sent.timestamp),
                status="SENT",
            )
            if not created:
                row = await repo.get_by_provider_id(client_id, sent.id)
        if row is None:
            raise RuntimeError(f"outbound message {sent.id} missing after duplicate insert")
        return row

    async def persist_synced(self, client_id: str, msg: ProviderMessage) -> bool:
        """Backfill one message observed during resync. Returns True when a row was written."""
        if await self.exists(client_id, msg.id):
            return False
        async with self.session_maker() as session:
            _, created = await MessageRepository(session).insert(
                client_id=client_id,
                provider_message_id=msg.id,
                direction=OUTBOUND if msg.from_me else INBOUND,
                from_address=msg.from_address,
                to_address=msg.to_address,
                body=msg.body,
                type=msg.type or "chat",
                timestamp=from_epoch(msg.timestamp),
                status="SENT" if msg.from_me else "DELIVERED",
            )
        return created

    async def apply_ack(self, client_id: str, ack: MessageAck) -> bool:
        """Apply a delivery ack by provider id. Unknown ids and codes are a silent no-op."""
        new_status = ACK_STATUS.get(ack.code)
        if new_status is None:
            logger.info("ack_code_unknown", client_id=client_id, ack=ack.code)
            return False
        async with self.session_maker() as session:
            updated = await MessageRepository(session).update_status(
                client_id,
                ack.message_id,
                new_status,
                allowed_from=allowed_predecessors(new_status),
            )
        logger.info(
            "ack_applied" if updated else "ack_ignored",
            client_id=client_id,
            provider_message_id=ack.message_id,
            status=new_status,
        )
        return updated

    async def trim(self, client_id: str) -> int:
        keep = self.settings.message_retention_limit
        async with self.session_maker() as session:
            deleted, storage_keys = await MessageRepository(session).trim_to_recent(client_id, keep)
        for key in storage_keys:
            await self._discard_blob(key)
        if deleted:
            logger.info("messages_trimmed", client_id=client_id, deleted=deleted, keep=keep)
            await record_audit(
                self.session_maker,
                client_id,
                "message_cleanup",
                {"deleted_count": deleted, "timestamp": datetime.utcnow().isoformat()},
            )
        return deleted

    async def trim_retention(self, client_id: str) -> int:
        """Best-effort retention cap; errors are logged and reported as zero deletions."""
        try:
            return await self.trim(client_id)
        except Exception:
            logger.exception("message_trim_failed", client_id=client_id)
            return 0

    async def trim_all_clients(self) -> dict[str, Any]:
        async with self.session_maker() as session:
            client_ids = await ClientRepository(session).list_ids()
        total_deleted = 0
        results: list[dict[str, Any]] = []
        for client_id in client_ids:
            try:
                deleted = await self.trim(client_id)
            except Exception as exc:
                logger.exception("message_trim_failed", client_id=client_id)
                results.append({"client_id": client_id, "error": str(exc)})
                continue
            if deleted:
                total_deleted += deleted
                results.append({"client_id": client_id, "deleted_count": deleted})
        return {
            "total_deleted": total_deleted,
            "results": results,
            "timestamp": datetime.utcnow().isoformat(),
        }

    async def purge(self, client_id: str) -> int:
        """Delete every stored message of a tenant together with its media blobs."""
        async with self.session_maker() as session:
            deleted, storage_keys = await MessageRepository(session).delete_for_client(client_id)
        for key in storage_keys:
            await self._discard_blob(key)
        return deleted

    # Presentation helpers shared by events and read models
    def serialize(self, row: Message, *, attachment: Attachment | None = None) -> dict[str, Any]:
        att = attachment if attachment is not None else row.__dict__.get("attachment")
        return {
            "id": row.id,
            "provider_message_id": row.provider_message_id,
            "from": row.from_address,
            "to": row.to_address,
            "body": row.body,
            "type": row.type,
            "direction": row.direction,
            "status": row.status,
            "timestamp": row.timestamp.isoformat() if row.timestamp else None,
            "attachment": (
                {
                    "id": att.id,
                    "name": att.name,
                    "mime_type": att.mime_type,
                    "size": att.size,
                    "url": self.blob_store.url_for(att.storage_key),
                }
                if att is not None
                else None
            ),
        }


def message_event(type_tag: str, row: Message, **extra: Any) -> dict[str, Any]:
    """Fan-out payload for message_received / message_sent."""
    event = {
        "type": type_tag,
        "message_id": row.provider_message_id,
        "from": row.from_address,
        "to": row.to_address,
        "body": row.body,
        "timestamp": to_epoch(row.timestamp),
        "message_type": row.type,
        "direction": row.direction,
        "saved_message_id": row.id,
    }
    event.update(extra)
    return event


_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")


def _random_file_name(seed: str) -> str:
    return f"{uuid.uuid4().hex[:12]}_{_UNSAFE.sub('_', seed)[:80]}"
