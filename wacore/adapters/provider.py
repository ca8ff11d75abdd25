from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Optional

import structlog


logger = structlog.get_logger(__name__)


class ProviderEvent(str, Enum):
    QR = "qr"
    AUTHENTICATED = "authenticated"
    MESSAGE = "message"
    ACK = "message.ack"
    AUTH_FAILURE = "auth_failure"
    DISCONNECTED = "disconnected"


class ErrorCategory(str, Enum):
    CHAT_ACCESS = "chat_access"
    SESSION_EXPIRED = "session_expired"
    RECIPIENT_NOT_FOUND = "recipient_not_found"
    GENERIC = "generic"


def classify_error_message(text: str | None) -> ErrorCategory:
    """Map a provider error text onto the user-facing failure categories."""
    text = text or ""
    if "getChat" in text:
        return ErrorCategory.CHAT_ACCESS
    if "not-authorized" in text:
        return ErrorCategory.SESSION_EXPIRED
    if "not-found" in text:
        return ErrorCategory.RECIPIENT_NOT_FOUND
    return ErrorCategory.GENERIC


class ProviderError(Exception):
    """Raised when a provider call fails.

    Attributes:
        category: user-facing classification (see ErrorCategory)
        transient: True for transport-level failures (network, 5xx) worth retrying
        status_code: HTTP status code when available
    """

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        transient: bool = False,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.category = category or classify_error_message(message)
        self.transient = transient
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.category is ErrorCategory.CHAT_ACCESS or self.transient

    @property
    def user_message(self) -> str:
        if self.category is ErrorCategory.CHAT_ACCESS:
            return "Failed to access chat. Please try reconnecting WhatsApp."
        if self.category is ErrorCategory.SESSION_EXPIRED:
            return "WhatsApp session expired. Please scan QR code again."
        if self.category is ErrorCategory.RECIPIENT_NOT_FOUND:
            return "Phone number not found on WhatsApp."
        return f"Send failed: {self}"


def serialized_id(value: Any) -> str | None:
    """Provider ids arrive either as plain strings or as ``{"_serialized": ...}``."""
    if isinstance(value, Mapping):
        value = value.get("_serialized") or value.get("id")
    return str(value) if value else None


@dataclass(frozen=True)
class ProviderMessage:
    id: str
    from_address: str | None
    to_address: str | None
    body: str | None
    type: str = "chat"
    timestamp: int = 0  # epoch seconds
    from_me: bool = False

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ProviderMessage":
        msg_id = serialized_id(payload.get("id"))
        if not msg_id:
            raise ValueError("provider message without id")
        ts = payload.get("timestamp")
        return cls(
            id=msg_id,
            from_address=payload.get("from"),
            to_address=payload.get("to"),
            body=payload.get("body"),
            type=str(payload.get("type") or "chat"),
            timestamp=int(ts) if ts else int(time.time()),
            from_me=bool(payload.get("fromMe", False)),
        )


@dataclass(frozen=True)
class MessageAck:
    message_id: str
    code: int


@dataclass(frozen=True)
class SentMessage:
    id: str
    timestamp: int
    type: str = "chat"


@dataclass(frozen=True)
class Chat:
    id: str
    name: str | None = None
    is_group: bool = False


@dataclass(frozen=True)
class MediaPayload:
    data: bytes
    mime_type: str | None = None


Handler = Callable[[Any], Awaitable[None]]


class ProviderConnection:
    """One tenant's handle on the external messaging session.

    Subclasses implement the transport; this base class owns event
    subscriptions and the readiness flags derived from lifecycle events.
    """

    def __init__(self, client_id: str):
        self.client_id = client_id
        self.me_address: Optional[str] = None
        self._ready = False
        self._handlers: dict[ProviderEvent, list[Handler]] = {}

    @property
    def is_ready(self) -> bool:
        return self._ready and bool(self.me_address)

    def on(self, event: ProviderEvent, handler: Handler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    async def emit(self, event: ProviderEvent, payload: Any = None) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                await handler(payload)
            except Exception:
                logger.exception(
                    "provider_handler_failed", client_id=self.client_id, provider_event=event.value
                )

    async def feed(self, event: str, payload: Mapping[str, Any] | None) -> None:
        """Translate a raw provider notification into a typed event."""
        payload = payload or {}
        try:
            kind = ProviderEvent(event)
        except ValueError:
            logger.info("provider_event_ignored", client_id=self.client_id, provider_event=event)
            return

        if kind is ProviderEvent.QR:
            await self.emit(kind, payload.get("qr"))
        elif kind is ProviderEvent.AUTHENTICATED:
            me = serialized_id(payload.get("me")) or serialized_id(payload.get("id"))
            self.me_address = me
            self._ready = bool(me)
            await self.emit(kind, me)
        elif kind is ProviderEvent.MESSAGE:
            try:
                msg = ProviderMessage.from_payload(payload)
            except ValueError:
                logger.warning("provider_message_malformed", client_id=self.client_id)
                return
            await self.emit(kind, msg)
        elif kind is ProviderEvent.ACK:
            msg_id = serialized_id(payload.get("id"))
            if msg_id is None or payload.get("ack") is None:
                return
            try:
                code = int(payload["ack"])
            except (TypeError, ValueError):
                logger.warning(
                    "provider_ack_malformed", client_id=self.client_id, message_id=msg_id, ack=payload["ack"]
                )
                return
            await self.emit(kind, MessageAck(message_id=msg_id, code=code))
        else:
            self._ready = False
            await self.emit(kind, payload.get("reason"))

    # Transport
    async def initialize(self) -> None:
        raise NotImplementedError

    async def send_message(self, address: str, body: str) -> SentMessage:
        raise NotImplementedError

    async def get_chats(self) -> list[Chat]:
        raise NotImplementedError

    async def fetch_messages(self, chat_id: str, limit: int = 50) -> list[ProviderMessage]:
        raise NotImplementedError

    async def download_media(self, message: ProviderMessage) -> MediaPayload | None:
        raise NotImplementedError

    async def logout(self) -> None:
        raise NotImplementedError

    async def destroy(self) -> None:
        raise NotImplementedError


ConnectionFactory = Callable[[str], ProviderConnection]
