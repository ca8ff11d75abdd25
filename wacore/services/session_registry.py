from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wacore.adapters.fanout import FanoutChannel
from wacore.adapters.provider import (
    ConnectionFactory,
    MessageAck,
    ProviderConnection,
    ProviderEvent,
    ProviderMessage,
)
from wacore.repositories.messages import MessageRepository
from wacore.repositories.sessions import SessionRepository
from wacore.services.audit import record_audit
from wacore.services.results import CONFLICT, ERROR, NOT_FOUND, OperationResult
from wacore.utils.config import Settings, get_settings

if TYPE_CHECKING:
    from wacore.services.inbound_handler import InboundHandler
    from wacore.services.message_store import MessageStore
    from wacore.services.reconciler import Reconciler


logger = structlog.get_logger(__name__)

PENDING = "pending"
ACTIVE = "active"
FAILED = "failed"
DISCONNECTED = "disconnected"


class SessionRegistry:
    """Process-wide map of tenant -> live provider connection.

    Constructed once at startup, populated by connect/health_check/restore and
    cleared by disconnect. Persisted session status follows provider lifecycle
    events; a stale ``active`` row with a dead handle is healed by health_check.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        connection_factory: ConnectionFactory,
        fanout: FanoutChannel,
        settings: Settings | None = None,
    ):
        self.session_maker = session_maker
        self.connection_factory = connection_factory
        self.fanout = fanout
        self.settings = settings or get_settings()
        self._connections: dict[str, ProviderConnection] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._inbound: Optional["InboundHandler"] = None
        self._reconciler: Optional["Reconciler"] = None
        self._store: Optional["MessageStore"] = None

    def bind(self, *, inbound: "InboundHandler", reconciler: "Reconciler", store: "MessageStore") -> None:
        self._inbound = inbound
        self._reconciler = reconciler
        self._store = store

    def get(self, client_id: str) -> Optional[ProviderConnection]:
        return self._connections.get(client_id)

    def __contains__(self, client_id: object) -> bool:
        return client_id in self._connections

    @property
    def connected_count(self) -> int:
        return len(self._connections)

    def _spawn(self, coro: Awaitable[Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error("background_task_failed", task=name, error=str(t.exception()))

        task.add_done_callback(_done)
        return task

    async def _set_status(
        self, client_id: str, status: str, session_data: dict[str, Any] | None = None
    ) -> None:
        async with self.session_maker() as session:
            await SessionRepository(session).upsert_status(client_id, status, session_data)

    async def _publish_status(self, client_id: str, status: str) -> None:
        await self.fanout.publish(
            client_id,
            {"type": "whatsapp_status", "status": status, "client_id": client_id, "timestamp": time.time()},
        )

    def _wire(self, conn: ProviderConnection) -> None:
        client_id = conn.client_id

        def current(handler):
            async def _guarded(payload: Any) -> None:
                # Events from a handle that was replaced or torn down are dropped
                if self._connections.get(client_id) is not conn:
                    logger.info("provider_event_stale_handle", client_id=client_id)
                    return
                await handler(payload)

            return _guarded

        async def on_qr(qr: str | None) -> None:
            await self._set_status(client_id, PENDING, {"qr": qr})
            await self._publish_status(client_id, "qr_ready")

        async def on_authenticated(me: str | None) -> None:
            await self._set_status(client_id, ACTIVE, {"me_number": me})
            logger.info("whatsapp_connected", client_id=client_id, me_number=me)
            await self._publish_status(client_id, "connected")
            if self._reconciler is not None:
                self._spawn(self._reconciler.reconcile(client_id, force=True), name="resync_on_ready")

        async def on_message(msg: ProviderMessage) -> None:
            if self._inbound is not None:
                await self._inbound.handle_message(client_id, msg)

        async def on_ack(ack: MessageAck) -> None:
            if self._inbound is not None:
                await self._inbound.handle_ack(client_id, ack)

        async def on_auth_failure(_: Any) -> None:
            await self._set_status(client_id, FAILED)
            logger.warning("whatsapp_auth_failed", client_id=client_id)
            await self._publish_status(client_id, "auth_failed")

        async def on_disconnected(_: Any) -> None:
            await self._set_status(client_id, DISCONNECTED)
            logger.info("whatsapp_disconnected", client_id=client_id)
            await self._publish_status(client_id, "disconnected")

        conn.on(ProviderEvent.QR, current(on_qr))
        conn.on(ProviderEvent.AUTHENTICATED, current(on_authenticated))
        conn.on(ProviderEvent.MESSAGE, current(on_message))
        conn.on(ProviderEvent.ACK, current(on_ack))
        conn.on(ProviderEvent.AUTH_FAILURE, current(on_auth_failure))
        conn.on(ProviderEvent.DISCONNECTED, current(on_disconnected))

    async def _initialize(self, client_id: str) -> bool:
        """Create, wire and initialize a handle. Failure marks the session failed."""
        if client_id in self._connections:
            return True
        conn = self.connection_factory(client_id)
        self._wire(conn)
        self._connections[client_id] = conn
        logger.info("whatsapp_client_initializing", client_id=client_id)
        try:
            await conn.initialize()
        except Exception as exc:
            logger.exception("whatsapp_client_init_failed", client_id=client_id)
            if self._connections.get(client_id) is conn:
                del self._connections[client_id]
            try:
                await self._set_status(client_id, FAILED)
            except SQLAlchemyError:
                logger.exception("session_status_update_failed", client_id=client_id)
            await record_audit(
                self.session_maker,
                client_id,
                "client_initialization_error",
                {"error": str(exc), "timestamp": datetime.utcnow().isoformat()},
            )
            return False
        return True

    async def _discard(self, client_id: str, *, logout: bool = False) -> None:
        conn = self._connections.pop(client_id, None)
        if conn is None:
            return
        if logout:
            try:
                await conn.logout()
            except Exception as exc:
                logger.warning("whatsapp_logout_failed", client_id=client_id, error=str(exc))
        try:
            await conn.destroy()
        except Exception as exc:
            logger.warning("whatsapp_destroy_failed", client_id=client_id, error=str(exc))

    async def connect(self, client_id: str) -> OperationResult:
        try:
            async with self.session_maker() as session:
                active = await SessionRepository(session).get_active(client_id)
            existing = self._connections.get(client_id)
            if active is not None or (existing is not None and existing.is_ready):
                return OperationResult.fail("WhatsApp already connected", reason=CONFLICT)
            if existing is not None:
                await self._discard(client_id)

            await self._set_status(client_id, PENDING, {})
            # Initialization keeps running even if the QR wait below times out
            self._spawn(self._initialize(client_id), name="initialize_client")

            for _ in range(max(1, self.settings.qr_wait_attempts)):
                async with self.session_maker() as session:
                    row = await SessionRepository(session).get_latest(client_id)
                if row is not None:
                    data = row.session_data or {}
                    if row.status == PENDING and data.get("qr"):
                        return OperationResult.ok(
                            {"qr": data["qr"]}, message="QR code generated. Please scan to connect."
                        )
                    if row.status == ACTIVE:
                        return OperationResult.ok(
                            {"me_number": data.get("me_number")}, message="WhatsApp connected"
                        )
                    if row.status == FAILED:
                        return OperationResult.fail("Failed to initialize WhatsApp client")
                await asyncio.sleep(self.settings.qr_poll_interval_s)

            return OperationResult.fail("QR code generation timeout. Please try again.")
        except SQLAlchemyError as exc:
            logger.exception("whatsapp_connect_failed", client_id=client_id)
            return OperationResult.fail(str(exc))

    async def disconnect(self, client_id: str) -> OperationResult:
        """Tear down the handle and delete every session row and stored message."""
        await self._discard(client_id, logout=True)
        try:
            async with self.session_maker() as session:
                await SessionRepository(session).delete_for_client(client_id)
            deleted = await self._purge_messages(client_id)
        except SQLAlchemyError as exc:
            logger.exception("whatsapp_disconnect_failed", client_id=client_id)
            return OperationResult.fail(str(exc))
        logger.info("whatsapp_disconnected_by_request", client_id=client_id, messages_deleted=deleted)
        await self._publish_status(client_id, DISCONNECTED)
        return OperationResult.ok(message="WhatsApp disconnected and all message history cleared.")

    async def _purge_messages(self, client_id: str) -> int:
        if self._store is not None:
            return await self._store.purge(client_id)
        # Unbound registry: no blob store to clean, drop the rows only
        async with self.session_maker() as session:
            deleted, _ = await MessageRepository(session).delete_for_client(client_id)
        return deleted

    async def health_check(self, client_id: str) -> OperationResult:
        conn = self._connections.get(client_id)
        if conn is None:
            ok = await self._initialize(client_id)
            message = "Client initialized"
        elif not conn.is_ready:
            logger.info("whatsapp_client_not_ready", client_id=client_id)
            await self._discard(client_id)
            ok = await self._initialize(client_id)
            message = "Client reconnected"
        else:
            return OperationResult.ok(message="Client is healthy")
        if not ok:
            return OperationResult.fail("Failed to connect WhatsApp client")
        return OperationResult.ok(message=message)

    async def restore_active_sessions(self) -> list[str]:
        """Re-establish handles for every persisted ``active`` session, then resync them later."""
        async with self.session_maker() as session:
            client_ids = await SessionRepository(session).list_active_client_ids()
        logger.info("whatsapp_sessions_restoring", count=len(client_ids))
        for client_id in client_ids:
            await self._initialize(client_id)
        logger.info("whatsapp_sessions_restored", count=self.connected_count)
        if client_ids and self._reconciler is not None:
            self._spawn(self._delayed_resync(client_ids), name="restore_resync")
        return client_ids

    async def _delayed_resync(self, client_ids: list[str]) -> None:
        await asyncio.sleep(self.settings.restore_sync_delay_s)
        reconciler = self._reconciler
        if reconciler is None:
            return
        for client_id in client_ids:
            try:
                await reconciler.reconcile(client_id, force=True)
            except Exception:
                logger.exception("restore_resync_failed", client_id=client_id)

    async def dispatch_event(self, session_name: str, event: str, payload: dict[str, Any] | None) -> bool:
        """Route a pushed provider notification to the tenant's live handle."""
        conn = self._connections.get(session_name)
        if conn is None:
            logger.warning("provider_event_unrouted", session=session_name, provider_event=event)
            return False
        await conn.feed(event, payload)
        return True

    async def status(self, client_id: str) -> OperationResult:
        try:
            async with self.session_maker() as session:
                row = await SessionRepository(session).get_latest(client_id)
        except SQLAlchemyError as exc:
            logger.exception("whatsapp_status_failed", client_id=client_id)
            return OperationResult.fail(str(exc))
        conn = self._connections.get(client_id)
        ready = bool(conn is not None and conn.is_ready)
        status = row.status if row is not None else DISCONNECTED
        return OperationResult.ok(
            {
                "status": status,
                "connected": status == ACTIVE and ready,
                "last_updated": row.updated_at.isoformat() if row is not None and row.updated_at else None,
                "client_exists": conn is not None,
                "client_ready": ready,
            }
        )

    async def qr_code(self, client_id: str) -> OperationResult:
        try:
            async with self.session_maker() as session:
                row = await SessionRepository(session).get_latest(client_id)
        except SQLAlchemyError as exc:
            logger.exception("whatsapp_qr_lookup_failed", client_id=client_id)
            return OperationResult.fail(str(exc))
        if row is None:
            return OperationResult.fail(
                "No WhatsApp session found. Please connect WhatsApp first.", reason=NOT_FOUND
            )
        if row.status == ACTIVE:
            return OperationResult.fail("WhatsApp is already connected. No QR code needed.", reason=CONFLICT)
        if row.status == DISCONNECTED:
            return OperationResult.fail(
                "WhatsApp is disconnected. Please connect again to get a new QR code.", reason=ERROR
            )
        if row.status != PENDING:
            return OperationResult.fail(
                f"WhatsApp session status is '{row.status}'. Please try connecting again."
            )
        qr = (row.session_data or {}).get("qr")
        if not qr:
            return OperationResult.fail("QR code is being generated. Please wait a moment and try again.")
        return OperationResult.ok({"qr": qr})

    async def active_sessions_status(self) -> OperationResult:
        try:
            async with self.session_maker() as session:
                rows = await SessionRepository(session).list_active()
        except SQLAlchemyError as exc:
            logger.exception("active_sessions_lookup_failed")
            return OperationResult.fail(str(exc))
        return OperationResult.ok(
            {
                "total_active_sessions": len(rows),
                "connected_clients": self.connected_count,
                "sessions": [
                    {
                        "client_id": row.client_id,
                        "status": row.status,
                        "is_connected": row.client_id in self._connections,
                        "last_updated": row.updated_at.isoformat() if row.updated_at else None,
                    }
                    for row in rows
                ],
            }
        )

    async def me_number(self, client_id: str) -> Optional[str]:
        """Own address from the active session row, falling back to the live handle."""
        me: Optional[str] = None
        try:
            async with self.session_maker() as session:
                me = await SessionRepository(session).me_number(client_id)
        except SQLAlchemyError:
            logger.warning("me_number_lookup_failed", client_id=client_id)
        if me:
            return me
        conn = self._connections.get(client_id)
        return conn.me_address if conn is not None else None

    async def drain(self) -> None:
        """Wait until every background task (init, resync) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel background work and drop handles; gateway sessions stay up for the next restore."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._connections.clear()
