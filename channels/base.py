"""
Messaging gateway — base infrastructure for outbound WhatsApp delivery.

Provides:
- GatewayStatus: session lifecycle (disconnected → qr → connected)
- GatewayMetrics: send/fail/timeout/latency counters
- MessagingGateway: abstract base wrapping every send with a bounded
  timeout and a tenacity retry on timeouts
"""
from __future__ import annotations

import abc
import asyncio
import time
import structlog
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from tenacity import (
    AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_incrementing,
)

from core.errors import GatewayError, GatewayNotConnected, GatewayTimeout
from models.schemas import MessageKind
from utils.templating import normalize_phone

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  SESSION STATUS & METRICS
# ══════════════════════════════════════════════════════════════

class GatewayStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    QR = "qr"                    # waiting for the phone to scan the pairing code
    CONNECTED = "connected"


class GatewayMetrics:
    """Tracks send, failure, timeout and latency numbers for one gateway."""

    def __init__(self):
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self.timeouts: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)
            del self._latencies[:-500]

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)
            del self._errors[:-50]

    def record_timeout(self):
        self.timeouts += 1

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "timeouts": self.timeouts,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  MESSAGING GATEWAY — Abstract Base
# ══════════════════════════════════════════════════════════════

class MessagingGateway(abc.ABC):
    """
    Narrow interface to the messaging session.

    Subclasses implement connect/disconnect and the _do_send_* hooks. The
    base class normalizes the phone, refuses to send while disconnected,
    applies the per-kind timeout and retries timeouts with growing backoff.
    Any other failure surfaces immediately as GatewayError.
    """

    name: str = "gateway"

    def __init__(
        self,
        send_timeout: float = 60.0,
        audio_timeout: float = 120.0,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
    ):
        self.send_timeout = send_timeout
        self.audio_timeout = audio_timeout
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._status = GatewayStatus.DISCONNECTED
        self._qr: Optional[str] = None
        self.metrics = GatewayMetrics()

    # ── Session state ─────────────────────────────────────────

    @property
    def status(self) -> GatewayStatus:
        return self._status

    @property
    def current_qr(self) -> Optional[str]:
        return self._qr

    @property
    def is_connected(self) -> bool:
        return self._status == GatewayStatus.CONNECTED

    @property
    def supports_rich_media(self) -> bool:
        """Whether the current session can send inline images and videos."""
        return False

    @abc.abstractmethod
    async def connect(self) -> GatewayStatus:
        ...

    @abc.abstractmethod
    async def disconnect(self) -> None:
        ...

    async def refresh(self) -> GatewayStatus:
        """Re-read the session state; sessions that pair later become usable here."""
        return self._status

    # ── Abstract send hooks ───────────────────────────────────

    @abc.abstractmethod
    async def _do_send_text(self, phone: str, text: str, timeout: float) -> None:
        ...

    @abc.abstractmethod
    async def _do_send_audio(self, phone: str, url: str, timeout: float) -> None:
        ...

    @abc.abstractmethod
    async def _do_send_rich_media(
        self, phone: str, kind: MessageKind, url: str, caption: str, timeout: float,
    ) -> None:
        ...

    # ── Public send ───────────────────────────────────────────

    async def send_text(self, phone: str, text: str) -> None:
        await self._send("text", self._do_send_text, phone, self.send_timeout, text)

    async def send_audio(self, phone: str, url: str) -> None:
        """Send an inline playable audio attachment fetched from url."""
        await self._send("audio", self._do_send_audio, phone, self.audio_timeout, url)

    async def send_rich_media(self, phone: str, kind: MessageKind, url: str, caption: str = "") -> None:
        await self._send(
            kind.value, self._do_send_rich_media, phone, self.audio_timeout, kind, url, caption,
        )

    async def _send(
        self,
        what: str,
        hook: Callable[..., Awaitable[None]],
        phone: str,
        timeout: float,
        *args: Any,
    ) -> None:
        if not self.is_connected:
            await self.refresh()
        if not self.is_connected:
            self.metrics.record_failure("not_connected")
            raise GatewayNotConnected()

        to = normalize_phone(phone)
        if not to:
            raise GatewayError(f"Cannot send {what}: empty phone number")

        start = time.monotonic()
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_incrementing(start=self.backoff_seconds, increment=self.backoff_seconds),
            retry=retry_if_exception_type(GatewayTimeout),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    n = attempt.retry_state.attempt_number
                    try:
                        await asyncio.wait_for(hook(to, *args, timeout=timeout), timeout=timeout)
                    except asyncio.TimeoutError:
                        self.metrics.record_timeout()
                        logger.warning("gateway_send_timeout", kind=what, to=to, attempt=n)
                        raise GatewayTimeout(f"Sending {what} to {to} timed out after {timeout}s")
        except GatewayError as e:
            self.metrics.record_failure(str(e))
            raise
        except Exception as e:
            self.metrics.record_failure(str(e))
            raise GatewayError(f"Sending {what} to {to} failed: {e}") from e

        latency = (time.monotonic() - start) * 1000
        self.metrics.record_send(latency)
        logger.info("gateway_message_sent", kind=what, to=to, attempts=n, latency_ms=round(latency, 1))

    async def health_check(self) -> dict[str, Any]:
        return {
            "gateway": self.name,
            "status": self._status.value,
            "has_qr": self._qr is not None,
            "rich_media": self.supports_rich_media,
            "metrics": self.metrics.to_dict(),
        }
