from __future__ import annotations

from typing import Dict, List

import structlog
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from wacore.api.deps import get_core, result_response
from wacore.services.core import MessagingCore
from wacore.services.results import OperationResult


router = APIRouter(prefix="/clients/{client_id}/whatsapp", tags=["whatsapp"])
logger = structlog.get_logger(__name__)


class SendMessageRequest(BaseModel):
    phone_number: str = Field(..., min_length=1, description="Destination phone number")
    message: str = Field(..., min_length=1, description="Message body")


class SendBulkRequest(BaseModel):
    phone_numbers: List[str] = Field(..., min_length=1)
    message: str = Field(..., min_length=1)


class SendTemplateRequest(BaseModel):
    phone_numbers: List[str] = Field(..., min_length=1)
    template_id: str
    variables: Dict[str, str] = Field(default_factory=dict)


class PreviewTemplateRequest(BaseModel):
    template_id: str
    variables: Dict[str, str] = Field(default_factory=dict)


@router.post("/connect")
async def connect(client_id: str, core: MessagingCore = Depends(get_core)) -> JSONResponse:
    return result_response(await core.registry.connect(client_id))


@router.get("/qr")
async def qr_code(client_id: str, core: MessagingCore = Depends(get_core)) -> JSONResponse:
    return result_response(await core.registry.qr_code(client_id))


@router.get("/status")
async def connection_status(client_id: str, core: MessagingCore = Depends(get_core)) -> JSONResponse:
    return result_response(await core.registry.status(client_id))


@router.post("/disconnect")
async def disconnect(client_id: str, core: MessagingCore = Depends(get_core)) -> JSONResponse:
    return result_response(await core.registry.disconnect(client_id))


@router.post("/send")
async def send_message(
    client_id: str, payload: SendMessageRequest, core: MessagingCore = Depends(get_core)
) -> JSONResponse:
    result = await core.pipeline.send_one(client_id, payload.phone_number, payload.message)
    logger.info("api_send", client_id=client_id, success=result.success)
    return result_response(result)


@router.post("/send-bulk")
async def send_bulk(
    client_id: str, payload: SendBulkRequest, core: MessagingCore = Depends(get_core)
) -> JSONResponse:
    result = await core.pipeline.send_bulk(client_id, payload.phone_numbers, payload.message)
    logger.info("api_send_bulk", client_id=client_id, success=result.success, recipients=len(payload.phone_numbers))
    return result_response(result)


@router.post("/send-template")
async def send_template(
    client_id: str, payload: SendTemplateRequest, core: MessagingCore = Depends(get_core)
) -> JSONResponse:
    return result_response(
        await core.pipeline.send_template(
            client_id, payload.phone_numbers, payload.template_id, payload.variables
        )
    )


@router.post("/preview-template")
async def preview_template(
    client_id: str, payload: PreviewTemplateRequest, core: MessagingCore = Depends(get_core)
) -> JSONResponse:
    return result_response(
        await core.pipeline.preview_template(client_id, payload.template_id, payload.variables)
    )


@router.get("/credits")
async def credits(client_id: str, core: MessagingCore = Depends(get_core)) -> JSONResponse:
    return result_response(await core.ledger.balance(client_id))


@router.get("/credits/history")
async def credit_history(
    client_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    core: MessagingCore = Depends(get_core),
) -> JSONResponse:
    return result_response(await core.ledger.history(client_id, limit=limit, offset=offset))


@router.get("/conversations")
async def conversations(client_id: str, core: MessagingCore = Depends(get_core)) -> JSONResponse:
    return result_response(await core.read_models.conversations(client_id))


@router.get("/conversations/{address}")
async def conversation_thread(
    client_id: str,
    address: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    core: MessagingCore = Depends(get_core),
) -> JSONResponse:
    return result_response(
        await core.read_models.conversation_thread(client_id, address, limit=limit, offset=offset)
    )


@router.get("/inbox")
async def inbox(client_id: str, core: MessagingCore = Depends(get_core)) -> JSONResponse:
    return result_response(await core.read_models.inbox_summary(client_id))


@router.get("/messages")
async def all_messages(
    client_id: str,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    core: MessagingCore = Depends(get_core),
) -> JSONResponse:
    return result_response(await core.read_models.all_messages(client_id, limit=limit, offset=offset))


@router.get("/stats")
async def message_stats(client_id: str, core: MessagingCore = Depends(get_core)) -> JSONResponse:
    return result_response(await core.read_models.message_stats(client_id))


@router.post("/sync")
async def sync_messages(client_id: str, core: MessagingCore = Depends(get_core)) -> JSONResponse:
    return result_response(await core.reconciler.reconcile(client_id, force=True))


admin_router = APIRouter(prefix="/whatsapp", tags=["whatsapp"])


@admin_router.get("/sessions")
async def active_sessions(core: MessagingCore = Depends(get_core)) -> JSONResponse:
    return result_response(await core.registry.active_sessions_status())


@admin_router.post("/cleanup")
async def cleanup_all(core: MessagingCore = Depends(get_core)) -> JSONResponse:
    try:
        data = await core.store.trim_all_clients()
    except SQLAlchemyError as exc:
        logger.exception("cleanup_all_failed")
        return result_response(OperationResult.fail(str(exc)))
    return result_response(OperationResult.ok(data))
