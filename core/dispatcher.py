"""
Delivery Dispatcher — turns one payload into one gateway call.

Payload kinds are a closed set; each maps to exactly one send function and
anything unrecognised was already coerced to TEXT when the payload was
built. The dispatcher never touches task status; on success it stamps the
lead's last_message_at.
"""
from __future__ import annotations

import structlog
from typing import Awaitable, Callable

from channels.base import MessagingGateway
from core.errors import LeadNotFound, MissingPhone
from database.store_base import BaseStore
from models.schemas import Lead, MessageKind, Payload, utcnow
from utils.templating import normalize_phone, render

logger = structlog.get_logger()

Handler = Callable[[str, Payload, Lead], Awaitable[bool]]


class DeliveryDispatcher:
    def __init__(self, store: BaseStore, gateway: MessagingGateway):
        self.store = store
        self.gateway = gateway
        self._handlers: dict[MessageKind, Handler] = {
            MessageKind.TEXT: self._send_text,
            MessageKind.FORM: self._send_text,
            MessageKind.AUDIO: self._send_audio,
            MessageKind.CLIP: self._send_audio,
            MessageKind.IMAGE: self._send_media,
            MessageKind.VIDEO: self._send_media,
        }

    async def deliver(self, lead_id: str, payload: Payload) -> bool:
        """
        Send payload to the lead. Returns False when rendering left nothing
        to send, True after a successful gateway call.

        Raises LeadNotFound, MissingPhone or any ExternalCallFailure from the
        gateway.
        """
        lead = await self.store.get_lead(lead_id)
        if lead is None:
            raise LeadNotFound(lead_id)
        phone = normalize_phone(lead.phone)
        if not phone:
            raise MissingPhone(lead_id)
        return await self._dispatch(phone, payload, lead)

    async def send_to_phone(self, phone: str, payload: Payload) -> bool:
        """Ad-hoc send to a raw number; renders against the matching lead if one exists."""
        to = normalize_phone(phone)
        if not to:
            raise MissingPhone(phone or "<empty>")
        lead = await self.store.find_lead_by_phone(to) or Lead(id="", phone=to)
        return await self._dispatch(to, payload, lead)

    async def _dispatch(self, phone: str, payload: Payload, lead: Lead) -> bool:
        handler = self._handlers.get(payload.kind, self._send_text)
        sent = await handler(phone, payload, lead)
        if sent and lead.id:
            await self.store.update_lead(lead.id, last_message_at=utcnow())
        logger.debug("payload_delivered" if sent else "payload_skipped_empty",
                     lead_id=lead.id, kind=payload.kind.value)
        return sent

    # ── Per-kind handlers ─────────────────────────────────────

    async def _send_text(self, phone: str, payload: Payload, lead: Lead) -> bool:
        text = render(payload.content, lead).strip()
        if not text:
            return False
        await self.gateway.send_text(phone, text)
        return True

    async def _send_audio(self, phone: str, payload: Payload, lead: Lead) -> bool:
        url = render(payload.content, lead).strip()
        if not url:
            return False
        await self.gateway.send_audio(phone, url)
        return True

    async def _send_media(self, phone: str, payload: Payload, lead: Lead) -> bool:
        url = render(payload.content, lead).strip()
        if not url:
            return False
        if self.gateway.supports_rich_media:
            await self.gateway.send_rich_media(phone, payload.kind, url)
        else:
            await self.gateway.send_text(phone, url)
        return True
