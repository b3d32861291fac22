"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - Listen-token fields are plain columns, not JSON, so the play counter and
    the half-heard flag can be updated with a portable conditional UPDATE.
  - String primary keys (uuid hex) — no database-specific sequences.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, DateTime, Index, Integer, JSON, String, Text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from models.schemas import (
    JobStage, Lead, ListenToken, Payload, ProductionJob, SequenceDefinition,
    SequenceStep, SequenceTask, TaskStatus, new_id,
)


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Leads
# ──────────────────────────────────────────────────────────────

_LEAD_COLUMNS = {
    "id", "name", "phone", "source", "tags", "has_active_sequences",
    "next_action_at", "last_message_at", "intake_cancelled", "created_at",
}


class LeadRow(Base):
    __tablename__ = "leads"

    id: Mapped[str] = mapped_column(String(128), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(256), default="")
    phone: Mapped[str] = mapped_column(String(32), default="", index=True)
    source: Mapped[str] = mapped_column(String(64), default="")
    tags: Mapped[Any] = mapped_column(JSON, default=list)

    has_active_sequences: Mapped[bool] = mapped_column(Boolean, default=False)
    next_action_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    intake_cancelled: Mapped[bool] = mapped_column(Boolean, default=False)

    extra: Mapped[Any] = mapped_column(JSON, default=dict)     # intake form fields used by templates
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def apply(self, fields: dict[str, Any]) -> None:
        """Merge model-level fields onto the row; unknown keys land in extra."""
        extra = dict(self.extra or {})
        for key, value in fields.items():
            if key in _LEAD_COLUMNS:
                setattr(self, key, value)
            else:
                extra[key] = value
        self.extra = extra

    def to_model(self) -> Lead:
        return Lead(
            **(self.extra or {}),
            id=self.id, name=self.name or "", phone=self.phone or "",
            source=self.source or "", tags=list(self.tags or []),
            has_active_sequences=bool(self.has_active_sequences),
            next_action_at=as_utc(self.next_action_at),
            last_message_at=as_utc(self.last_message_at),
            intake_cancelled=bool(self.intake_cancelled),
            created_at=as_utc(self.created_at) or _utcnow(),
        )


# ──────────────────────────────────────────────────────────────
#  Sequence definitions
# ──────────────────────────────────────────────────────────────

class SequenceDefinitionRow(Base):
    __tablename__ = "sequence_definitions"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    trigger: Mapped[str] = mapped_column(String(128), default="", index=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    steps: Mapped[Any] = mapped_column(JSON, default=list)
    description: Mapped[str] = mapped_column(Text, default="")

    def to_model(self) -> SequenceDefinition:
        return SequenceDefinition(
            id=self.id, trigger=self.trigger or "", active=bool(self.active),
            steps=[SequenceStep(**s) for s in (self.steps or [])],
            description=self.description or "",
        )


# ──────────────────────────────────────────────────────────────
#  Sequence tasks
# ──────────────────────────────────────────────────────────────

class SequenceTaskRow(Base):
    __tablename__ = "sequence_tasks"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    lead_id: Mapped[str] = mapped_column(String(128), nullable=False)
    sequence_id: Mapped[str] = mapped_column(String(128), nullable=False)
    step_index: Mapped[int] = mapped_column(Integer, default=0)
    payload: Mapped[Any] = mapped_column(JSON, default=dict)
    due_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=TaskStatus.PENDING.value)
    shard: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str] = mapped_column(Text, default="")
    claimed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_tasks_status_due", "status", "due_at"),
        Index("ix_tasks_status_shard_due", "status", "shard", "due_at"),
        Index("ix_tasks_lead_status", "lead_id", "status"),
    )

    @classmethod
    def from_model(cls, task: SequenceTask) -> "SequenceTaskRow":
        return cls(
            id=task.id, lead_id=task.lead_id, sequence_id=task.sequence_id,
            step_index=task.step_index, payload=task.payload.model_dump(mode="json"),
            due_at=task.due_at, status=task.status.value, shard=task.shard,
            created_at=task.created_at, processed_at=task.processed_at,
            error_message=task.error_message,
            claimed_by=task.claimed_by, claimed_at=task.claimed_at,
        )

    def to_model(self) -> SequenceTask:
        return SequenceTask(
            id=self.id, lead_id=self.lead_id, sequence_id=self.sequence_id,
            step_index=self.step_index or 0,
            payload=Payload(**(self.payload or {})),
            due_at=as_utc(self.due_at), status=TaskStatus(self.status),
            shard=self.shard or 0, created_at=as_utc(self.created_at) or _utcnow(),
            processed_at=as_utc(self.processed_at),
            error_message=self.error_message or "",
            claimed_by=self.claimed_by, claimed_at=as_utc(self.claimed_at),
        )


# ──────────────────────────────────────────────────────────────
#  Production jobs
# ──────────────────────────────────────────────────────────────

class ProductionJobRow(Base):
    __tablename__ = "production_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=new_id)
    lead_id: Mapped[str] = mapped_column(String(128), default="", index=True)
    lead_phone: Mapped[str] = mapped_column(String(32), default="")

    purpose: Mapped[str] = mapped_column(Text, default="")
    include_name: Mapped[str] = mapped_column(String(256), default="")
    anecdotes: Mapped[str] = mapped_column(Text, default="")
    genre: Mapped[str] = mapped_column(String(128), default="")
    artist: Mapped[str] = mapped_column(String(256), default="")
    voice_type: Mapped[str] = mapped_column(String(64), default="")

    stage: Mapped[str] = mapped_column(String(32), default=JobStage.AWAITING_LYRICS.value)
    lyrics: Mapped[str] = mapped_column(Text, default="")
    style_prompt: Mapped[str] = mapped_column(String(512), default="")
    external_task_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, index=True)
    full_audio_url: Mapped[str] = mapped_column(Text, default="")
    clip_url: Mapped[str] = mapped_column(Text, default="")

    listen_token: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True)
    listen_play_count: Mapped[int] = mapped_column(Integer, default=0)
    listen_max_plays: Mapped[int] = mapped_column(Integer, default=2)
    listen_disabled: Mapped[bool] = mapped_column(Boolean, default=False)
    listen_half_heard: Mapped[bool] = mapped_column(Boolean, default=False)

    generation_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    generated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str] = mapped_column(Text, default="")
    failed_stage: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_jobs_stage_created", "stage", "created_at"),
    )

    @staticmethod
    def columns_for(fields: dict[str, Any]) -> dict[str, Any]:
        """Translate ProductionJob field updates into column values."""
        values: dict[str, Any] = {}
        for key, value in fields.items():
            if key == "listen":
                token = value if isinstance(value, ListenToken) or value is None else ListenToken(**value)
                values["listen_token"] = token.value if token else None
                values["listen_play_count"] = token.play_count if token else 0
                values["listen_max_plays"] = token.max_plays if token else 2
                values["listen_disabled"] = token.disabled if token else False
                values["listen_half_heard"] = token.half_heard if token else False
            elif key in ("stage", "failed_stage"):
                values[key] = value.value if isinstance(value, JobStage) else value
            else:
                values[key] = value
        return values

    @classmethod
    def from_model(cls, job: ProductionJob) -> "ProductionJobRow":
        data = job.model_dump()
        return cls(**cls.columns_for(data))

    def to_model(self) -> ProductionJob:
        listen = None
        if self.listen_token:
            listen = ListenToken(
                value=self.listen_token,
                play_count=self.listen_play_count or 0,
                max_plays=self.listen_max_plays if self.listen_max_plays is not None else 2,
                disabled=bool(self.listen_disabled),
                half_heard=bool(self.listen_half_heard),
            )
        return ProductionJob(
            id=self.id, lead_id=self.lead_id or "", lead_phone=self.lead_phone or "",
            purpose=self.purpose or "", include_name=self.include_name or "",
            anecdotes=self.anecdotes or "", genre=self.genre or "",
            artist=self.artist or "", voice_type=self.voice_type or "",
            stage=JobStage(self.stage), lyrics=self.lyrics or "",
            style_prompt=self.style_prompt or "",
            external_task_id=self.external_task_id,
            full_audio_url=self.full_audio_url or "", clip_url=self.clip_url or "",
            listen=listen,
            generation_started_at=as_utc(self.generation_started_at),
            generated_at=as_utc(self.generated_at),
            sent_at=as_utc(self.sent_at),
            error_message=self.error_message or "",
            failed_stage=JobStage(self.failed_stage) if self.failed_stage else None,
            created_at=as_utc(self.created_at) or _utcnow(),
            updated_at=as_utc(self.updated_at) or _utcnow(),
        )
