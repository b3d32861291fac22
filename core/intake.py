"""
Lead intake — first contact and the after-form hand-off.

handle_inbound runs for every message a prospect sends. The first time a
lead picks up a trigger tag, the sequence behind that trigger is scheduled;
a lead that arrives straight on the sales trigger stops getting intake
reminders. after_form runs once the prospect has filled in the song form:
intake reminders stop and a short empathetic acknowledgement is queued a
minute or two later.
"""
from __future__ import annotations

import random
import structlog
from datetime import timedelta
from typing import Any, Optional

from config.settings import IntakeConfig, SequenceConfig, get_settings
from core.errors import InvalidPayload, LeadNotFound, MissingPhone
from database.store_base import BaseStore
from models.schemas import Lead, MessageKind, Payload, SequenceTask, utcnow
from providers.text_generation import TextGenerator
from sequences.scheduler import SequenceScheduler
from utils.templating import normalize_phone

logger = structlog.get_logger()

EMPATHY_SEQUENCE = "empathy"


class LeadIntake:
    def __init__(
        self,
        store: BaseStore,
        scheduler: SequenceScheduler,
        text: TextGenerator,
        config: Optional[IntakeConfig] = None,
        sequences: Optional[SequenceConfig] = None,
        rng: Optional[random.Random] = None,
    ):
        settings = get_settings()
        self.store = store
        self.scheduler = scheduler
        self.text = text
        self.config = config or settings.intake
        self.sequences = sequences or settings.sequences
        self._rng = rng or random.Random()

    def pick_trigger(self, text: str) -> str:
        """A configured keyword anywhere in the message wins over the default trigger."""
        content = text or ""
        for keyword, trigger in self.config.keyword_triggers.items():
            if keyword and keyword in content:
                return trigger
        return self.config.default_trigger

    async def handle_inbound(self, phone: str, name: str = "", text: str = "") -> Lead:
        to = normalize_phone(phone)
        if not to:
            raise MissingPhone(phone or "<empty>")
        trigger = self.pick_trigger(text)

        lead = await self.store.find_lead_by_phone(to)
        is_new = lead is None
        if is_new:
            lead = await self.store.upsert_lead(
                Lead(phone=to, name=name or "", source="whatsapp", tags=[trigger], last_message_at=utcnow())
            )
            had_tag = False
        else:
            had_tag = trigger in lead.tags
            await self.store.add_lead_tags(lead.id, trigger)
            await self.store.update_lead(lead.id, last_message_at=utcnow())

        if not had_tag:
            await self.scheduler.schedule_sequence(lead.id, trigger)

        if trigger == self.sequences.sales_sequence and not lead.intake_cancelled:
            await self._cancel_intake(lead.id)

        logger.info("inbound_message_handled", lead_id=lead.id, trigger=trigger, new_lead=is_new,
                    scheduled=not had_tag)
        return await self.store.get_lead(lead.id)

    async def _cancel_intake(self, lead_id: str) -> int:
        cancelled = await self.scheduler.cancel_sequences(lead_id, [self.sequences.intake_sequence])
        await self.store.update_lead(lead_id, intake_cancelled=True)
        return cancelled

    async def after_form(self, lead_id: str, summary: dict[str, Any]) -> SequenceTask:
        """
        Stop intake reminders and queue the empathy message.

        summary keys: requester_name, anecdotes, genre, artist. Missing keys
        are fine; the message degrades to a generic thank-you.
        """
        if not isinstance(summary, dict):
            raise InvalidPayload("summary must be an object")
        lead = await self.store.get_lead(lead_id)
        if lead is None:
            raise LeadNotFound(lead_id)
        if not normalize_phone(lead.phone):
            raise MissingPhone(lead_id)

        await self._cancel_intake(lead_id)

        requester = str(summary.get("requester_name") or "").strip()
        message = await self.text.empathy_message(
            first_name=requester.split()[0] if requester else "",
            anecdotes=str(summary.get("anecdotes") or "").strip(),
            genre=str(summary.get("genre") or "").strip(),
            artist=str(summary.get("artist") or "").strip(),
        )

        delay = self._rng.randint(self.config.empathy_delay_min_s, self.config.empathy_delay_max_s)
        return await self.scheduler.enqueue_message(
            lead_id,
            Payload(kind=MessageKind.TEXT, content=message),
            due_at=utcnow() + timedelta(seconds=delay),
            sequence_id=EMPATHY_SEQUENCE,
        )
