"""Tests for the messaging gateway base and the WhatsApp bridge adapter."""
import asyncio
import json

import httpx
import pytest

from channels.base import GatewayStatus
from channels.whatsapp_adapter import WhatsAppBridgeGateway, to_jid
from config.settings import GatewayConfig
from core.errors import GatewayError, GatewayNotConnected, GatewayTimeout
from models.schemas import MessageKind
from tests.doubles import RecordingGateway


class SlowGateway(RecordingGateway):
    """Hangs on the first `slow_calls` sends, then behaves."""

    def __init__(self, slow_calls: int, max_attempts: int = 3):
        super().__init__()
        self.send_timeout = 0.05
        self.max_attempts = max_attempts
        self.slow_calls = slow_calls
        self.calls = 0

    async def _do_send_text(self, phone: str, text: str, timeout: float) -> None:
        self.calls += 1
        if self.calls <= self.slow_calls:
            await asyncio.sleep(1)
        await super()._do_send_text(phone, text, timeout)


class TestMessagingGateway:
    @pytest.mark.asyncio
    async def test_timeout_is_retried(self):
        gw = SlowGateway(slow_calls=2)
        await gw.send_text("5512345678", "hola")
        assert gw.calls == 3
        assert gw.sent == [("text", "5215512345678", "hola")]
        assert gw.metrics.timeouts == 2
        assert gw.metrics.messages_sent == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        gw = SlowGateway(slow_calls=5, max_attempts=2)
        with pytest.raises(GatewayTimeout):
            await gw.send_text("5512345678", "hola")
        assert gw.calls == 2
        assert gw.metrics.messages_failed == 1

    @pytest.mark.asyncio
    async def test_other_failures_are_not_retried(self):
        gw = RecordingGateway(fail_phones={"5215512345678"})
        gw.max_attempts = 3
        with pytest.raises(GatewayError, match="bridge rejected"):
            await gw.send_text("5512345678", "hola")
        assert gw.metrics.messages_failed == 1

    @pytest.mark.asyncio
    async def test_refuses_when_disconnected(self):
        gw = RecordingGateway()
        await gw.disconnect()
        with pytest.raises(GatewayNotConnected):
            await gw.send_audio("5512345678", "https://a/x.mp3")
        assert gw.sent == []

    @pytest.mark.asyncio
    async def test_empty_phone(self):
        with pytest.raises(GatewayError, match="empty phone"):
            await RecordingGateway().send_text("n/a", "hola")

    @pytest.mark.asyncio
    async def test_health_check(self):
        health = await RecordingGateway(rich_media=True).health_check()
        assert health["status"] == "connected"
        assert health["rich_media"] is True
        assert health["metrics"]["sent"] == 0


# ──────────────────────────────────────────────────────────────
#  WhatsApp bridge over httpx.MockTransport
# ──────────────────────────────────────────────────────────────

class FakeBridge:
    def __init__(self, session=None, fail_status: int = 0):
        self.session = session or {"status": "connected", "rich_media": True}
        self.fail_status = fail_status
        self.requests: list[tuple[str, str, dict]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.requests.append((request.method, request.url.path, body))
        if request.url.path.startswith("/session"):
            return httpx.Response(200, json=self.session)
        if self.fail_status:
            return httpx.Response(self.fail_status, text="bridge exploded")
        return httpx.Response(200, json={"ok": True})


def bridge_gateway(bridge: FakeBridge) -> WhatsAppBridgeGateway:
    config = GatewayConfig(base_url="http://bridge.test", api_key="secret", max_attempts=1, backoff_seconds=0)
    return WhatsAppBridgeGateway(config, transport=httpx.MockTransport(bridge))


class TestWhatsAppBridgeGateway:
    def test_jid(self):
        assert to_jid("5215512345678") == "5215512345678@s.whatsapp.net"

    @pytest.mark.asyncio
    async def test_connect_mirrors_session(self):
        gw = bridge_gateway(FakeBridge({"status": "qr", "qr": "2@abc"}))
        assert await gw.connect() == GatewayStatus.QR
        assert gw.current_qr == "2@abc"
        assert not gw.is_connected

    @pytest.mark.asyncio
    async def test_unknown_status_means_disconnected(self):
        gw = bridge_gateway(FakeBridge({"status": "weird"}))
        assert await gw.refresh() == GatewayStatus.DISCONNECTED

    @pytest.mark.asyncio
    async def test_sends_hit_bridge_routes(self):
        bridge = FakeBridge()
        gw = bridge_gateway(bridge)
        await gw.connect()

        await gw.send_text("5512345678", "hola")
        await gw.send_audio("5512345678", "https://a/clip.m4a")
        await gw.send_rich_media("5512345678", MessageKind.IMAGE, "https://i/1.png", "mira")

        sends = [(path, body) for method, path, body in bridge.requests if path.startswith("/messages")]
        jid = "5215512345678@s.whatsapp.net"
        assert sends == [
            ("/messages/text", {"jid": jid, "text": "hola", "link_preview": False}),
            ("/messages/audio", {"jid": jid, "url": "https://a/clip.m4a", "mimetype": "audio/mp4", "ptt": False}),
            ("/messages/media", {"jid": jid, "type": "image", "url": "https://i/1.png", "caption": "mira"}),
        ]
        assert gw.supports_rich_media

    @pytest.mark.asyncio
    async def test_bridge_error_status(self):
        gw = bridge_gateway(FakeBridge(fail_status=500))
        await gw.connect()
        with pytest.raises(GatewayError) as info:
            await gw.send_text("5512345678", "hola")
        assert info.value.retryable
        assert gw.metrics.messages_failed == 1

    @pytest.mark.asyncio
    async def test_disconnect_resets_state(self):
        bridge = FakeBridge()
        gw = bridge_gateway(bridge)
        await gw.connect()
        await gw.disconnect()
        assert gw.status == GatewayStatus.DISCONNECTED
        assert ("POST", "/session/logout", {}) in bridge.requests

    @pytest.mark.asyncio
    async def test_send_picks_up_late_pairing(self):
        bridge = FakeBridge({"status": "qr", "qr": "2@abc"})
        gw = bridge_gateway(bridge)
        await gw.connect()

        with pytest.raises(GatewayNotConnected):
            await gw.send_text("5512345678", "hola")

        bridge.session = {"status": "connected"}
        await gw.send_text("5512345678", "hola")

        assert gw.is_connected
        assert gw.current_qr is None
        assert [path for _, path, _ in bridge.requests].count("/messages/text") == 1
