from __future__ import annotations

import uuid
from typing import Any, Literal
from typing_extensions import TypedDict

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from wacore.api.deps import get_core
from wacore.services.core import MessagingCore


logger = structlog.get_logger(__name__)
router = APIRouter()


class HealthChecks(TypedDict, total=False):
    config: bool
    db: bool | Literal["unknown"]
    connected_clients: int


class HealthResponse(BaseModel):
    ok: bool
    version: str
    checks: HealthChecks


@router.get("/health", response_model=HealthResponse, tags=["system"])
async def health(core: MessagingCore = Depends(get_core)) -> HealthResponse:
    """Return basic service health with a DB round-trip and the live handle count."""
    request_id = str(uuid.uuid4())

    db_ok: bool | Literal["unknown"] = "unknown"
    try:
        async with core.session_maker() as session:
            await session.execute(text("SELECT 1"))
        db_ok = True
    except SQLAlchemyError:
        db_ok = False

    checks: HealthChecks = {
        "config": True,
        "db": db_ok,
        "connected_clients": core.registry.connected_count,
    }
    payload: dict[str, Any] = {
        "ok": db_ok is not False,
        "version": core.settings.app_version,
        "checks": checks,
    }

    logger.info("health_check", request_id=request_id, **payload)
    return HealthResponse(**payload)
