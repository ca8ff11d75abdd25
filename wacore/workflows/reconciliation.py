from __future__ import annotations

import asyncio

import structlog
from sqlalchemy.exc import SQLAlchemyError

from wacore.adapters.metrics import Metrics
from wacore.repositories.sessions import SessionRepository
from wacore.services.core import MessagingCore


logger = structlog.get_logger(__name__)


async def sync_active_sessions(core: MessagingCore) -> dict[str, int]:
    """Run a cooldown-guarded sync for every tenant whose session is active.

    Returns a summary dict with counts of processed/synced/skipped.
    """
    async with core.session_maker() as session:
        client_ids = await SessionRepository(session).list_active_client_ids()

    processed = 0
    synced = 0
    skipped = 0
    for client_id in client_ids:
        processed += 1
        try:
            result = await core.reconciler.reconcile(client_id)
        except Exception:
            logger.exception("periodic_sync_failed", client_id=client_id)
            skipped += 1
            continue
        if result.success and not (result.data or {}).get("skipped"):
            synced += 1
        else:
            skipped += 1

    Metrics.inc("periodic_sync_runs")
    logger.info("periodic_sync_completed", processed=processed, synced=synced, skipped=skipped)
    return {"processed": processed, "synced": synced, "skipped": skipped}


async def run_periodic_sync(core: MessagingCore, *, interval_s: float | None = None) -> None:
    """Loop forever; cancelled by the application lifespan on shutdown."""
    interval = core.settings.sync_interval_s if interval_s is None else interval_s
    logger.info("periodic_sync_started", interval_s=interval)
    while True:
        await asyncio.sleep(interval)
        try:
            await sync_active_sessions(core)
        except SQLAlchemyError:
            logger.exception("periodic_sync_sweep_failed")
