from __future__ import annotations

import time
from typing import Any, Optional

import httpx
import structlog

from wacore.adapters.provider import (
    Chat,
    ConnectionFactory,
    MediaPayload,
    ProviderConnection,
    ProviderError,
    ProviderEvent,
    ProviderMessage,
    SentMessage,
    serialized_id,
)
from wacore.utils.config import Settings, get_settings
from wacore.utils.phone import is_group


logger = structlog.get_logger(__name__)


class HttpGatewayConnection(ProviderConnection):
    """Provider connection backed by an HTTP WhatsApp-Web session gateway.

    The gateway hosts one browser session per tenant (named after the client id)
    and pushes lifecycle events to ``/webhook/provider``; those are fed back into
    this object through :meth:`feed`. Outbound calls use httpx with a short-lived
    AsyncClient per request so tests can intercept them with respx.
    """

    def __init__(
        self,
        client_id: str,
        *,
        base_url: str,
        api_key: str = "",
        timeout_s: float = 10.0,
    ):
        super().__init__(client_id)
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = timeout_s

    @property
    def session_name(self) -> str:
        return self.client_id

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["X-Api-Key"] = self.api_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        ok_statuses: tuple[int, ...] = (),
    ) -> httpx.Response:
        if not self.base_url:
            raise ProviderError("gateway_not_configured")
        url = f"{self.base_url}{path}"
        async with httpx.AsyncClient(timeout=self.timeout_s, headers=self._headers()) as client:
            try:
                resp = await client.request(method, url, json=json, params=params)
            except (httpx.ConnectError, httpx.TimeoutException) as ex:
                raise ProviderError("gateway_network_error", transient=True) from ex
            except httpx.HTTPError as ex:
                # Reset connections, protocol errors and the like: the request may be retried
                raise ProviderError(f"gateway_transport_error:{type(ex).__name__}", transient=True) from ex
        if resp.status_code < 300 or resp.status_code in ok_statuses:
            return resp
        detail = _error_detail(resp)
        raise ProviderError(
            detail or f"gateway_error:{resp.status_code}",
            status_code=resp.status_code,
            transient=resp.status_code >= 500 or resp.status_code == 429,
        )

    async def initialize(self) -> None:
        # 409/422: session already started on the gateway
        await self._request(
            "POST",
            "/api/sessions/start",
            json={"name": self.session_name},
            ok_statuses=(409, 422),
        )
        me = await self._fetch_me()
        if me:
            # Session restored from gateway storage; no QR round-trip will happen
            await self.feed(ProviderEvent.AUTHENTICATED.value, {"me": me})

    async def _fetch_me(self) -> Optional[str]:
        resp = await self._request(
            "GET", f"/api/sessions/{self.session_name}/me", ok_statuses=(404,)
        )
        if resp.status_code == 404 or not resp.content:
            return None
        data = _json(resp)
        if not isinstance(data, dict):
            return None
        return serialized_id(data.get("id"))

    async def send_message(self, address: str, body: str) -> SentMessage:
        resp = await self._request(
            "POST",
            "/api/sendText",
            json={"session": self.session_name, "chatId": address, "text": body},
        )
        data = _json(resp) if resp.content else {}
        msg_id = serialized_id(data.get("id")) if isinstance(data, dict) else None
        if not msg_id:
            raise ProviderError("missing_message_id", status_code=resp.status_code)
        ts = data.get("timestamp")
        return SentMessage(
            id=msg_id,
            timestamp=int(ts) if ts else int(time.time()),
            type=str(data.get("type") or "chat"),
        )

    async def get_chats(self) -> list[Chat]:
        resp = await self._request("GET", f"/api/{self.session_name}/chats")
        chats: list[Chat] = []
        for item in _json_list(resp):
            if not isinstance(item, dict):
                continue
            chat_id = serialized_id(item.get("id"))
            if not chat_id:
                continue
            chats.append(
                Chat(id=chat_id, name=item.get("name"), is_group=bool(item.get("isGroup", is_group(chat_id))))
            )
        return chats

    async def fetch_messages(self, chat_id: str, limit: int = 50) -> list[ProviderMessage]:
        resp = await self._request(
            "GET",
            f"/api/{self.session_name}/chats/{chat_id}/messages",
            params={"limit": limit},
        )
        messages: list[ProviderMessage] = []
        for item in _json_list(resp):
            if not isinstance(item, dict):
                logger.warning("gateway_message_skipped", client_id=self.client_id, chat_id=chat_id)
                continue
            try:
                messages.append(ProviderMessage.from_payload(item))
            except ValueError:
                logger.warning("gateway_message_skipped", client_id=self.client_id, chat_id=chat_id)
        return messages

    async def download_media(self, message: ProviderMessage) -> MediaPayload | None:
        resp = await self._request(
            "GET",
            f"/api/{self.session_name}/messages/{message.id}/media",
            ok_statuses=(404,),
        )
        if resp.status_code == 404 or not resp.content:
            return None
        mime = resp.headers.get("Content-Type")
        return MediaPayload(data=resp.content, mime_type=mime.split(";")[0] if mime else None)

    async def logout(self) -> None:
        await self._request(
            "POST", f"/api/sessions/{self.session_name}/logout", ok_statuses=(404,)
        )
        self._ready = False

    async def destroy(self) -> None:
        self._ready = False
        await self._request(
            "POST", f"/api/sessions/{self.session_name}/stop", ok_statuses=(404,)
        )


def _json(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError as ex:
        raise ProviderError("gateway_invalid_response", status_code=resp.status_code) from ex


def _json_list(resp: httpx.Response) -> list[Any]:
    data = _json(resp) if resp.content else []
    if data is None:
        return []
    if not isinstance(data, list):
        raise ProviderError("gateway_invalid_response", status_code=resp.status_code)
    return data


def _error_detail(resp: httpx.Response) -> str | None:
    try:
        data = resp.json()
    except ValueError:
        return resp.text or None
    if isinstance(data, dict):
        for key in ("message", "error", "detail"):
            if data.get(key):
                return str(data[key])
    return None


def gateway_connection_factory(settings: Settings | None = None) -> ConnectionFactory:
    s = settings or get_settings()

    def _factory(client_id: str) -> ProviderConnection:
        return HttpGatewayConnection(
            client_id,
            base_url=s.gateway_url,
            api_key=s.gateway_api_key,
            timeout_s=s.gateway_timeout_s,
        )

    return _factory
