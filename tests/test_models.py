"""Tests for data models and payload kind coercion."""
from datetime import datetime, timezone

from models.schemas import (
    JobStage, Lead, ListenToken, MessageKind, Payload, ProductionJob,
    SequenceDefinition, SequenceStep, SequenceTask, TaskStatus, coerce_kind,
)


class TestKindCoercion:
    def test_known_kinds(self):
        assert coerce_kind("audio") == MessageKind.AUDIO
        assert coerce_kind(" VIDEO ") == MessageKind.VIDEO
        assert coerce_kind(MessageKind.CLIP) == MessageKind.CLIP

    def test_unknown_kind_falls_back_to_text(self):
        assert coerce_kind("sticker") == MessageKind.TEXT
        assert coerce_kind(None) == MessageKind.TEXT

    def test_payload_coerces_on_build(self):
        assert Payload(kind="gif", content="x").kind == MessageKind.TEXT


class TestSequenceModels:
    def test_step_delay_coercion(self):
        assert SequenceStep(delay_minutes="15").delay_minutes == 15.0
        assert SequenceStep(delay_minutes="soon").delay_minutes == 0.0
        assert SequenceStep(delay_minutes=None).delay_minutes == 0.0

    def test_step_to_payload(self):
        step = SequenceStep(kind="image", content="https://x/img.png", delay_minutes=3)
        assert step.to_payload() == Payload(kind=MessageKind.IMAGE, content="https://x/img.png")

    def test_definition_schedulable(self):
        assert SequenceDefinition(id="a", steps=[SequenceStep(content="hi")]).is_schedulable
        assert not SequenceDefinition(id="a", steps=[]).is_schedulable
        assert not SequenceDefinition(id="a", active=False, steps=[SequenceStep()]).is_schedulable

    def test_task_defaults(self):
        task = SequenceTask(lead_id="l1", sequence_id="s", due_at=datetime.now(timezone.utc))
        assert task.status == TaskStatus.PENDING
        assert task.is_pending
        assert task.claimed_by is None
        assert len(task.id) == 20


class TestLead:
    def test_extra_fields_kept(self):
        lead = Lead(name="Ana", city="Puebla")
        assert lead.model_dump()["city"] == "Puebla"

    def test_first_name(self):
        assert Lead(name="Ana María").first_name == "Ana"
        assert Lead(name="").first_name == ""


class TestProductionJob:
    def test_defaults(self):
        job = ProductionJob(purpose="  Aniversario de bodas  ")
        assert job.stage == JobStage.AWAITING_LYRICS
        assert job.title == "Aniversario de bodas"
        assert job.listen is None

    def test_listen_token_exhausted(self):
        token = ListenToken(value="t", play_count=2, max_plays=2)
        assert token.exhausted
        assert not ListenToken(value="t").exhausted
