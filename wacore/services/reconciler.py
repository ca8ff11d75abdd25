from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wacore.adapters.metrics import Metrics
from wacore.adapters.provider import ProviderError
from wacore.repositories.audit_logs import AuditLogRepository
from wacore.services.audit import record_audit
from wacore.services.message_store import MessageStore
from wacore.services.results import PRECONDITION, OperationResult
from wacore.utils.config import Settings, get_settings

if TYPE_CHECKING:
    from wacore.services.session_registry import SessionRegistry


logger = structlog.get_logger(__name__)

SYNC_AUDIT_TYPE = "message_sync"


class Reconciler:
    """Bulk catch-up against the provider's recent history.

    Idempotent by construction: every fetched message goes through the same
    dedup check as live events. The cooldown is read from the latest
    ``message_sync`` audit row and only bounds provider load.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        registry: "SessionRegistry",
        store: MessageStore,
        settings: Settings | None = None,
    ):
        self.session_maker = session_maker
        self.registry = registry
        self.store = store
        self.settings = settings or get_settings()

    async def _recently_synced(self, client_id: str) -> bool:
        async with self.session_maker() as session:
            last = await AuditLogRepository(session).latest_of_type(client_id, SYNC_AUDIT_TYPE)
        if last is None:
            return False
        return last.created_at > datetime.utcnow() - timedelta(seconds=self.settings.sync_cooldown_s)

    async def reconcile(self, client_id: str, *, force: bool = False) -> OperationResult:
        conn = self.registry.get(client_id)
        if conn is None or not conn.is_ready:
            return OperationResult.fail("WhatsApp client not connected", reason=PRECONDITION)

        if not force:
            try:
                recent = await self._recently_synced(client_id)
            except SQLAlchemyError as exc:
                logger.exception("sync_cooldown_lookup_failed", client_id=client_id)
                return OperationResult.fail(str(exc))
            if recent:
                logger.info("sync_skipped_recent", client_id=client_id)
                return OperationResult.ok({"skipped": True}, message="Last sync was recent")

        try:
            chats = await conn.get_chats()
        except ProviderError as exc:
            logger.warning("sync_chats_failed", client_id=client_id, error=str(exc))
            return OperationResult.fail(str(exc))
        except Exception as exc:
            logger.exception("sync_chats_failed", client_id=client_id)
            return OperationResult.fail(f"Sync failed: {exc}")

        synced = 0
        skipped = 0
        for chat in chats:
            try:
                messages = await conn.fetch_messages(chat.id, limit=self.settings.sync_fetch_limit)
            except ProviderError as exc:
                logger.warning("sync_chat_failed", client_id=client_id, chat_id=chat.id, error=str(exc))
                continue
            except Exception:
                logger.exception("sync_chat_failed", client_id=client_id, chat_id=chat.id)
                continue
            for msg in messages:
                try:
                    created = await self.store.persist_synced(client_id, msg)
                except SQLAlchemyError:
                    logger.exception(
                        "sync_message_failed", client_id=client_id, provider_message_id=msg.id
                    )
                    continue
                if created:
                    synced += 1
                else:
                    skipped += 1

        await self.store.trim_retention(client_id)
        finished = datetime.utcnow().isoformat()
        await record_audit(
            self.session_maker,
            client_id,
            SYNC_AUDIT_TYPE,
            {"total_synced": synced, "total_skipped": skipped, "timestamp": finished},
        )
        Metrics.inc("whatsapp_sync_completed")
        logger.info("sync_completed", client_id=client_id, synced=synced, skipped=skipped, chats=len(chats))
        return OperationResult.ok({"total_synced": synced, "total_skipped": skipped, "timestamp": finished})

    async def auto_sync(self, client_id: str) -> None:
        """Cooldown-guarded reconcile that never raises."""
        try:
            result = await self.reconcile(client_id)
        except Exception:
            logger.exception("auto_sync_failed", client_id=client_id)
            return
        if not result.success:
            logger.info("auto_sync_not_run", client_id=client_id, reason=result.message)
