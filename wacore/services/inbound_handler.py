from __future__ import annotations

import time
from datetime import datetime
from typing import Optional

import structlog

from wacore.adapters.fanout import FanoutChannel
from wacore.adapters.pbx_client import PbxClient
from wacore.adapters.provider import MessageAck, ProviderMessage
from wacore.services.audit import record_audit
from wacore.services.message_store import MessageStore, PersistResult, message_event
from wacore.services.message_types import NOTIFICATION_TYPES
from wacore.services.session_registry import SessionRegistry
from wacore.utils.config import Settings, get_settings


logger = structlog.get_logger(__name__)


def is_missed_call(msg: ProviderMessage) -> bool:
    return msg.type == "call_log" and "missed" in (msg.body or "").lower()


class InboundHandler:
    """Normalizes provider-pushed messages and acks into store writes and fan-out events."""

    def __init__(
        self,
        registry: SessionRegistry,
        store: MessageStore,
        fanout: FanoutChannel,
        settings: Settings | None = None,
        pbx: PbxClient | None = None,
    ):
        self.registry = registry
        self.store = store
        self.fanout = fanout
        self.settings = settings or get_settings()
        self.pbx = pbx or PbxClient.from_settings(self.settings)

    async def handle_message(self, client_id: str, msg: ProviderMessage) -> Optional[PersistResult]:
        if not msg.body or msg.type in NOTIFICATION_TYPES:
            logger.info(
                "inbound_message_ignored",
                client_id=client_id,
                provider_message_id=msg.id,
                message_type=msg.type,
            )
            return None

        conn = self.registry.get(client_id)
        try:
            result = await self.store.persist_inbound(client_id, msg, connection=conn)
        except Exception as exc:
            logger.exception("inbound_message_failed", client_id=client_id, provider_message_id=msg.id)
            await record_audit(
                self.store.session_maker,
                client_id,
                "message_received_error",
                {"provider_message_id": msg.id, "error": str(exc), "timestamp": datetime.utcnow().isoformat()},
            )
            return None
        if result.skipped or result.message is None:
            return result

        if not msg.from_me:
            await self._auto_reply(client_id, msg)
            if is_missed_call(msg) and msg.from_address:
                await self.pbx.send_auto_response_call(msg.from_address, self.settings.missed_call_reply_text)

        await self.fanout.publish(
            client_id,
            message_event(
                "message_received",
                result.message,
                file_url=result.file_url,
                attachment_id=result.attachment_id,
            ),
        )
        return result

    async def _auto_reply(self, client_id: str, msg: ProviderMessage) -> None:
        text = self.settings.auto_reply_text
        conn = self.registry.get(client_id)
        if conn is None or not msg.from_address:
            logger.error("auto_reply_no_client", client_id=client_id)
        else:
            try:
                await conn.send_message(msg.from_address, text)
            except Exception as exc:
                logger.error(
                    "auto_reply_failed", client_id=client_id, provider_message_id=msg.id, error=str(exc)
                )
        await self.fanout.publish(
            client_id,
            {
                "type": "auto_reply",
                "message_id": msg.id,
                "from": msg.to_address,
                "to": msg.from_address,
                "body": text,
                "timestamp": int(time.time()),
                "message_type": "chat",
                "direction": "OUTBOUND",
            },
        )

    async def handle_ack(self, client_id: str, ack: MessageAck) -> bool:
        try:
            return await self.store.apply_ack(client_id, ack)
        except Exception:
            logger.exception("ack_update_failed", client_id=client_id, provider_message_id=ack.message_id)
            return False
