from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from wacore.api.deps import get_ws_core
from wacore.services.core import MessagingCore


logger = structlog.get_logger(__name__)
router = APIRouter()


@router.websocket("/ws/{client_id}")
async def tenant_events(
    websocket: WebSocket, client_id: str, core: MessagingCore = Depends(get_ws_core)
) -> None:
    """Subscribe a front-end to one tenant's events; inbound frames are ignored."""
    await core.fanout.connect(websocket, client_id)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        core.fanout.disconnect(websocket, client_id)
