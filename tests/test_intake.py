"""Tests for lead intake and the after-form hand-off."""
import random
from datetime import timedelta

import pytest

from config.settings import IntakeConfig
from core.errors import InvalidPayload, LeadNotFound, MissingPhone
from core.intake import EMPATHY_SEQUENCE, LeadIntake
from models.schemas import Lead, TaskStatus, utcnow
from tests.doubles import make_definition


@pytest.fixture
async def definitions(store, funnel_definitions):
    await store.upsert_sequence_definition(make_definition("web-1490", [0, 30]))
    return store


class TestPickTrigger:
    def test_keyword_anywhere_in_message(self, intake):
        assert intake.pick_trigger("Hola! vengo de #web1490 quiero info") == "web-1490"

    def test_default_trigger(self, intake):
        assert intake.pick_trigger("Hola, quiero una canción") == "new-lead"
        assert intake.pick_trigger("") == "new-lead"


class TestHandleInbound:
    @pytest.mark.asyncio
    async def test_new_lead_gets_trigger_sequence(self, intake, store, definitions):
        lead = await intake.handle_inbound("+52 55 9876 5432", "Luis Pérez", "Hola")

        assert lead.phone == "5215598765432"
        assert lead.name == "Luis Pérez"
        assert lead.tags == ["new-lead"]
        assert lead.last_message_at is not None
        tasks = await store.list_tasks(lead_id=lead.id)
        assert {t.sequence_id for t in tasks} == {"new-lead"}
        assert len(tasks) == 3

    @pytest.mark.asyncio
    async def test_repeat_messages_schedule_once(self, intake, store, definitions):
        lead = await intake.handle_inbound("5598765432", "Luis", "Hola")
        again = await intake.handle_inbound("5598765432", "", "¿Sigues ahí?")

        assert again.id == lead.id
        assert len(await store.list_tasks(lead_id=lead.id)) == 3

    @pytest.mark.asyncio
    async def test_existing_lead_new_trigger(self, intake, store, definitions, lead):
        await store.upsert_lead(lead)
        updated = await intake.handle_inbound("5512345678", "", "me llegó el anuncio #web1490")

        assert updated.id == "lead-ana"
        assert "web-1490" in updated.tags
        assert [t.sequence_id for t in await store.list_tasks(lead_id="lead-ana")] == ["web-1490"] * 2

    @pytest.mark.asyncio
    async def test_sales_trigger_cancels_intake(self, store, scheduler, text_generator, sequence_config, definitions):
        intake = LeadIntake(
            store, scheduler, text_generator,
            IntakeConfig(keyword_triggers={"#cancion": "song-sales"}), sequence_config,
        )
        lead = await intake.handle_inbound("5598765432", "Luis", "Hola")
        updated = await intake.handle_inbound("5598765432", "Luis", "Quiero mi #cancion")

        assert updated.intake_cancelled
        pending = await store.list_tasks(lead_id=lead.id, status=TaskStatus.PENDING)
        assert {t.sequence_id for t in pending} == {"song-sales"}

    @pytest.mark.asyncio
    async def test_empty_phone(self, intake):
        with pytest.raises(MissingPhone):
            await intake.handle_inbound("", "Luis", "Hola")


class TestAfterForm:
    SUMMARY = {
        "requester_name": "Ana María",
        "anecdotes": "Nos casamos en la playa",
        "genre": "bolero",
        "artist": "Luis Miguel",
    }

    @pytest.mark.asyncio
    async def test_cancels_intake_and_queues_empathy(self, intake, store, scheduler, text_generator,
                                                     definitions, lead):
        await store.upsert_lead(lead)
        await scheduler.schedule_sequence("lead-ana", "new-lead")
        before = utcnow()

        task = await intake.after_form("lead-ana", self.SUMMARY)

        text_generator.empathy_message.assert_awaited_once_with(
            first_name="Ana", anecdotes="Nos casamos en la playa", genre="bolero", artist="Luis Miguel",
        )
        assert task.sequence_id == EMPATHY_SEQUENCE
        assert task.payload.content == "Ana, gracias por contarnos tu historia."
        assert before + timedelta(seconds=60) <= task.due_at <= utcnow() + timedelta(seconds=120)

        remaining = await store.list_tasks(lead_id="lead-ana")
        assert [t.sequence_id for t in remaining] == [EMPATHY_SEQUENCE]
        assert (await store.get_lead("lead-ana")).intake_cancelled

    @pytest.mark.asyncio
    async def test_delay_stays_in_window(self, store, scheduler, text_generator, lead):
        await store.upsert_lead(lead)
        for seed in range(10):
            intake = LeadIntake(store, scheduler, text_generator, IntakeConfig(), rng=random.Random(seed))
            now = utcnow()
            task = await intake.after_form("lead-ana", {})
            delay = (task.due_at - now).total_seconds()
            assert 59 <= delay <= 121

    @pytest.mark.asyncio
    async def test_empty_summary_still_queues(self, intake, store, text_generator, lead):
        await store.upsert_lead(lead)
        await intake.after_form("lead-ana", {})
        text_generator.empathy_message.assert_awaited_once_with(first_name="", anecdotes="", genre="", artist="")

    @pytest.mark.asyncio
    async def test_bad_input(self, intake, store):
        await store.upsert_lead(Lead(id="no-phone", name="Ana"))
        with pytest.raises(InvalidPayload):
            await intake.after_form("no-phone", "not a dict")
        with pytest.raises(LeadNotFound):
            await intake.after_form("ghost", {})
        with pytest.raises(MissingPhone):
            await intake.after_form("no-phone", {})
