from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from wacore.adapters.provider import ProviderMessage


class MessageKind(str, Enum):
    TEXT = "text"
    MEDIA = "media"
    LOCATION = "location"


# Provider message type -> MIME type recorded for the stored blob
MEDIA_MIME_TYPES: dict[str, str] = {
    "image": "image/jpeg",
    "video": "video/mp4",
    "audio": "audio/ogg",
    "ptt": "audio/ogg",
    "document": "application/octet-stream",
    "sticker": "image/webp",
}

NOTIFICATION_TYPES = frozenset({"e2e_notification", "notification_template", "gp2"})


def kind_of(message_type: str | None) -> MessageKind:
    if message_type in MEDIA_MIME_TYPES:
        return MessageKind.MEDIA
    if message_type == "location":
        return MessageKind.LOCATION
    return MessageKind.TEXT


def mime_type_for(message_type: str | None) -> Optional[str]:
    return MEDIA_MIME_TYPES.get(message_type or "")


@dataclass(frozen=True)
class AuditRecord:
    type: str
    data: dict[str, Any]


def _text(msg: ProviderMessage) -> AuditRecord:
    return AuditRecord(
        "text_message_received",
        {"message_id": msg.id, "body": msg.body, "timestamp": datetime.utcnow().isoformat()},
    )


def _media(msg: ProviderMessage) -> AuditRecord:
    return AuditRecord(
        "media_message_received",
        {"message_id": msg.id, "media_type": msg.type, "timestamp": datetime.utcnow().isoformat()},
    )


def _location(msg: ProviderMessage) -> AuditRecord:
    return AuditRecord(
        "location_message_received",
        {
            "message_id": msg.id,
            "has_location": bool(msg.body and "location" in msg.body),
            "timestamp": datetime.utcnow().isoformat(),
        },
    )


HANDLERS: dict[MessageKind, Callable[[ProviderMessage], AuditRecord]] = {
    MessageKind.TEXT: _text,
    MessageKind.MEDIA: _media,
    MessageKind.LOCATION: _location,
}


def audit_record_for(msg: ProviderMessage) -> AuditRecord:
    return HANDLERS[kind_of(msg.type)](msg)
