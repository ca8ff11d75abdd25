from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator

import structlog
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from wacore.api.health import router as health_router
from wacore.api.webhooks.provider import router as provider_webhook_router
from wacore.api.whatsapp import admin_router as whatsapp_admin_router
from wacore.api.whatsapp import router as whatsapp_router
from wacore.api.ws import router as ws_router
from wacore.db.base import dispose_engine
from wacore.services.core import MessagingCore, build_core
from wacore.utils.config import get_settings
from wacore.workflows.reconciliation import run_periodic_sync


logger = structlog.get_logger(__name__)


def configure_logging() -> None:
    """Configure structlog for JSON logs with reasonable defaults."""
    timestamper = structlog.processors.TimeStamper(fmt="iso")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            timestamper,
            structlog.processors.add_log_level,
            structlog.processors.EventRenamer("message"),
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    core: MessagingCore = app.state.core
    await core.registry.restore_active_sessions()
    sweeper = asyncio.create_task(run_periodic_sync(core))
    try:
        yield
    finally:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        await core.registry.shutdown()
        await dispose_engine()
        logger.info("app_shutdown")


def create_app(core: MessagingCore | None = None) -> FastAPI:
    """Build the app. Passing ``core`` skips startup recovery and the periodic sweep."""
    configure_logging()
    settings = get_settings()
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=None if core is not None else lifespan,
    )
    app.state.core = core if core is not None else build_core(settings=settings)
    app.include_router(health_router)
    app.include_router(provider_webhook_router)
    app.include_router(whatsapp_router)
    app.include_router(whatsapp_admin_router)
    app.include_router(ws_router)
    _mount_storage(app, app.state.core)
    return app


def _mount_storage(app: FastAPI, core: MessagingCore) -> None:
    """Serve stored media at the URLs the blob store hands out."""
    blobs = core.blob_store
    if not blobs.base_url.startswith("/"):
        # Absolute base URL: media is served by something in front of the app
        return
    blobs.root.mkdir(parents=True, exist_ok=True)
    app.mount(blobs.base_url, StaticFiles(directory=str(blobs.root)), name="storage")


app = create_app()
