from __future__ import annotations

import httpx
import structlog

from wacore.adapters.metrics import Metrics
from wacore.utils.config import Settings, get_settings


logger = structlog.get_logger(__name__)


class PbxClient:
    """Best-effort trigger for the telephony auto-response call on missed calls.

    Never raises: a PBX outage must not affect inbound message handling.
    """

    def __init__(self, base_url: str, *, timeout_s: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "PbxClient":
        s = settings or get_settings()
        return cls(s.pbx_url, timeout_s=s.pbx_timeout_s)

    async def send_auto_response_call(self, phone_number: str, message: str) -> bool:
        if not self.base_url:
            logger.info("pbx_not_configured", to=phone_number)
            return False
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                resp = await client.post(
                    f"{self.base_url}/auto-response", json={"to": phone_number, "message": message}
                )
            resp.raise_for_status()
        except httpx.HTTPError as ex:
            logger.error("pbx_auto_response_failed", to=phone_number, error=str(ex))
            return False
        Metrics.inc("pbx_auto_response_triggered")
        logger.info("pbx_auto_response_triggered", to=phone_number)
        return True
