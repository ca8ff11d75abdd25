from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, Mapping, Set

import structlog
from fastapi import WebSocket


logger = structlog.get_logger(__name__)


class FanoutChannel:
    """Per-tenant WebSocket fan-out.

    publish() is at-most-once and best-effort: a dead socket is dropped and
    logged, and nothing raised while sending reaches the caller.
    """

    def __init__(self) -> None:
        self.active_connections: Dict[str, Set[WebSocket]] = defaultdict(set)

    async def connect(self, websocket: WebSocket, client_id: str) -> None:
        await websocket.accept()
        self.active_connections[client_id].add(websocket)
        logger.info(
            "ws_connected",
            client_id=client_id,
            connections=len(self.active_connections[client_id]),
        )

    def disconnect(self, websocket: WebSocket, client_id: str) -> None:
        conns = self.active_connections.get(client_id)
        if not conns:
            return
        conns.discard(websocket)
        if not conns:
            del self.active_connections[client_id]
        logger.info("ws_disconnected", client_id=client_id)

    def subscriber_count(self, client_id: str) -> int:
        return len(self.active_connections.get(client_id) or ())

    async def publish(self, client_id: str, event: Mapping[str, Any]) -> None:
        conns = self.active_connections.get(client_id)
        if not conns:
            return
        dead: set[WebSocket] = set()
        for websocket in conns.copy():
            try:
                await websocket.send_json(dict(event))
            except Exception as exc:
                logger.warning(
                    "ws_publish_failed",
                    client_id=client_id,
                    event_type=event.get("type"),
                    error=str(exc),
                )
                dead.add(websocket)
        for websocket in dead:
            self.disconnect(websocket, client_id)
