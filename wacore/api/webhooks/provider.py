from __future__ import annotations

import hashlib
import hmac
import json
import uuid
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse

from wacore.api.deps import get_core
from wacore.services.core import MessagingCore
from wacore.utils.config import Settings, get_settings


logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/webhook", tags=["webhooks"])

SIGNATURE_HEADER = "X-Webhook-Signature"


def compute_signature(body: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


@router.post("/provider")
async def provider_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    core: MessagingCore = Depends(get_core),
) -> Response:
    request_id = str(uuid.uuid4())
    body = await request.body()

    if settings.webhook_secret:
        provided = request.headers.get(SIGNATURE_HEADER, "")
        expected = compute_signature(body, settings.webhook_secret)
        if not hmac.compare_digest(provided, expected):
            logger.warning("provider_webhook_auth_failed", request_id=request_id, path=str(request.url.path))
            return Response(status_code=status.HTTP_403_FORBIDDEN)

    try:
        envelope: Any = json.loads(body or b"{}")
    except ValueError:
        logger.info("provider_webhook_invalid_json", request_id=request_id)
        return Response(status_code=status.HTTP_400_BAD_REQUEST)
    if not isinstance(envelope, dict) or not envelope.get("event") or not envelope.get("session"):
        logger.info("provider_webhook_invalid_envelope", request_id=request_id)
        return Response(status_code=status.HTTP_400_BAD_REQUEST)

    event = str(envelope["event"])
    session_name = str(envelope["session"])
    logger.info("provider_webhook_received", request_id=request_id, session=session_name, provider_event=event)
    routed = await core.registry.dispatch_event(session_name, event, envelope.get("payload") or {})
    return JSONResponse(status_code=status.HTTP_200_OK, content={"ok": True, "routed": routed})
