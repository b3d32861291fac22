"""
WhatsApp Gateway — talks to a WhatsApp-Web bridge sidecar over HTTP.

The bridge owns the socket, the QR pairing and the auth folder; this
process only sees its REST surface:

  GET  /session              → {"status": "...", "qr": "...", "rich_media": bool}
  POST /session/connect      → same body as GET /session
  POST /session/logout
  POST /messages/text        {"jid", "text", "link_preview"}
  POST /messages/audio       {"jid", "url", "mimetype", "ptt"}
  POST /messages/media       {"jid", "type", "url", "caption"}

Numbers are addressed as <521XXXXXXXXXX>@s.whatsapp.net.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx

from channels.base import GatewayStatus, MessagingGateway
from config.settings import GatewayConfig, get_settings
from core.errors import GatewayError, GatewayTimeout
from models.schemas import MessageKind

logger = structlog.get_logger()


def to_jid(phone: str) -> str:
    return f"{phone}@s.whatsapp.net"


class WhatsAppBridgeGateway(MessagingGateway):
    """httpx client for the bridge; session state is mirrored from its replies."""

    name = "whatsapp"

    def __init__(self, config: Optional[GatewayConfig] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or get_settings().gateway
        super().__init__(
            send_timeout=self.config.send_timeout,
            audio_timeout=self.config.audio_timeout,
            max_attempts=self.config.max_attempts,
            backoff_seconds=self.config.backoff_seconds,
        )
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._rich_media = False

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=httpx.Timeout(self.config.send_timeout, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def _post(self, path: str, body: dict[str, Any], timeout: float) -> dict[str, Any]:
        client = await self._get_client()
        try:
            resp = await client.post(path, json=body, timeout=timeout)
        except httpx.TimeoutException as e:
            raise GatewayTimeout(f"Bridge call {path} timed out") from e
        except httpx.HTTPError as e:
            raise GatewayError(f"Bridge call {path} failed: {e}", retryable=True) from e

        if resp.status_code >= 400:
            logger.error("whatsapp_bridge_error", path=path, status=resp.status_code, body=resp.text[:500])
            raise GatewayError(
                f"Bridge call {path} returned {resp.status_code}",
                retryable=resp.status_code >= 500,
                status_code=resp.status_code,
            )
        return resp.json() if resp.content else {}

    def _apply_session(self, data: dict[str, Any]) -> GatewayStatus:
        try:
            self._status = GatewayStatus(data.get("status", "disconnected"))
        except ValueError:
            self._status = GatewayStatus.DISCONNECTED
        self._qr = data.get("qr") or None
        self._rich_media = bool(data.get("rich_media", False))
        return self._status

    @property
    def supports_rich_media(self) -> bool:
        return self._rich_media

    # ── Session lifecycle ─────────────────────────────────────

    async def refresh(self) -> GatewayStatus:
        """Pull the bridge's current session state."""
        client = await self._get_client()
        try:
            resp = await client.get("/session")
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("whatsapp_session_refresh_failed", error=str(e))
            self._status = GatewayStatus.DISCONNECTED
            return self._status
        return self._apply_session(resp.json())

    async def connect(self) -> GatewayStatus:
        self._status = GatewayStatus.CONNECTING
        try:
            data = await self._post("/session/connect", {}, timeout=self.send_timeout)
        except GatewayError as e:
            logger.error("whatsapp_connect_failed", error=str(e))
            self._status = GatewayStatus.DISCONNECTED
            return self._status
        status = self._apply_session(data)
        logger.info("whatsapp_session", status=status.value, qr_pending=self._qr is not None)
        return status

    async def disconnect(self) -> None:
        try:
            await self._post("/session/logout", {}, timeout=self.send_timeout)
        except GatewayError as e:
            logger.warning("whatsapp_logout_failed", error=str(e))
        self._status = GatewayStatus.DISCONNECTED
        self._qr = None
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ── Send hooks ────────────────────────────────────────────

    async def _do_send_text(self, phone: str, text: str, timeout: float) -> None:
        await self._post(
            "/messages/text",
            {"jid": to_jid(phone), "text": text, "link_preview": False},
            timeout=timeout,
        )

    async def _do_send_audio(self, phone: str, url: str, timeout: float) -> None:
        await self._post(
            "/messages/audio",
            {"jid": to_jid(phone), "url": url, "mimetype": "audio/mp4", "ptt": False},
            timeout=timeout,
        )

    async def _do_send_rich_media(
        self, phone: str, kind: MessageKind, url: str, caption: str, timeout: float,
    ) -> None:
        await self._post(
            "/messages/media",
            {"jid": to_jid(phone), "type": kind.value, "url": url, "caption": caption},
            timeout=timeout,
        )
