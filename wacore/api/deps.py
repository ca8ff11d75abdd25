from __future__ import annotations

from fastapi import Request, WebSocket
from fastapi.responses import JSONResponse

from wacore.services.core import MessagingCore
from wacore.services.results import CONFLICT, NOT_FOUND, OperationResult


def get_core(request: Request) -> MessagingCore:
    return request.app.state.core


def get_ws_core(websocket: WebSocket) -> MessagingCore:
    return websocket.app.state.core


_FAILURE_STATUS = {NOT_FOUND: 404, CONFLICT: 409}


def result_response(result: OperationResult) -> JSONResponse:
    """Uniform ``{"success", "message", "data"}`` envelope; failures map to 4xx."""
    status_code = 200 if result.success else _FAILURE_STATUS.get(result.reason or "", 400)
    return JSONResponse(status_code=status_code, content=result.to_dict())
