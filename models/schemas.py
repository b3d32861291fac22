"""
Core data models for the SongFunnel system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex[:20]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MessageKind(str, Enum):
    """
    Closed set of payload variants a sequence step can carry.
    Anything not listed here is coerced to TEXT when a payload is built.
    """
    TEXT = "text"
    FORM = "form"
    AUDIO = "audio"
    CLIP = "clip"
    IMAGE = "image"
    VIDEO = "video"


class TaskStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    ERROR = "error"


class JobStage(str, Enum):
    AWAITING_LYRICS = "awaiting-lyrics"
    AWAITING_PROMPT = "awaiting-prompt"
    AWAITING_GENERATION = "awaiting-generation"
    GENERATION_PENDING = "generation-pending"
    AUDIO_READY = "audio-ready"
    READY_TO_SEND = "ready-to-send"
    DELIVERED = "delivered"
    ERROR = "error"


# ──────────────────────────────────────────────────────────────
#  Lead — the prospect being messaged
# ──────────────────────────────────────────────────────────────

class Lead(BaseModel):
    """
    A prospect. Extra fields coming from the intake form are kept as-is so
    message templates can reference them.

    has_active_sequences / next_action_at / last_message_at are hints written
    by the engine; they may be stale.
    """
    model_config = ConfigDict(extra="allow")

    id: str = Field(default_factory=new_id)
    name: str = ""
    phone: str = ""
    source: str = ""
    tags: list[str] = []
    has_active_sequences: bool = False
    next_action_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    intake_cancelled: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def first_name(self) -> str:
        parts = (self.name or "").split()
        return parts[0] if parts else ""


# ──────────────────────────────────────────────────────────────
#  Sequences — definitions (config) and scheduled tasks
# ──────────────────────────────────────────────────────────────

def coerce_kind(value: Any) -> MessageKind:
    """Map a raw kind tag onto MessageKind; unknown tags fall back to TEXT."""
    if isinstance(value, MessageKind):
        return value
    try:
        return MessageKind(str(value or "").strip().lower())
    except ValueError:
        return MessageKind.TEXT


class Payload(BaseModel):
    kind: MessageKind = MessageKind.TEXT
    content: str = ""

    @field_validator("kind", mode="before")
    @classmethod
    def _coerce_kind(cls, value: Any) -> MessageKind:
        return coerce_kind(value)


class SequenceStep(BaseModel):
    kind: MessageKind = MessageKind.TEXT
    content: str = ""
    delay_minutes: float = 0

    @field_validator("kind", mode="before")
    @classmethod
    def _coerce_kind(cls, value: Any) -> MessageKind:
        return coerce_kind(value)

    @field_validator("delay_minutes", mode="before")
    @classmethod
    def _coerce_delay(cls, value: Any) -> float:
        try:
            return float(value or 0)
        except (TypeError, ValueError):
            return 0.0

    def to_payload(self) -> Payload:
        return Payload(kind=self.kind, content=self.content)


class SequenceDefinition(BaseModel):
    """
    A named list of delayed message steps. Looked up by id first,
    then by trigger name.
    """
    id: str
    trigger: str = ""
    active: bool = True
    steps: list[SequenceStep] = []
    description: str = ""

    @property
    def is_schedulable(self) -> bool:
        return self.active and bool(self.steps)


class SequenceTask(BaseModel):
    """One scheduled message step for one lead."""
    id: str = Field(default_factory=new_id)
    lead_id: str
    sequence_id: str
    step_index: int = 0
    payload: Payload = Field(default_factory=Payload)
    due_at: datetime
    status: TaskStatus = TaskStatus.PENDING
    shard: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None
    error_message: str = ""
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == TaskStatus.PENDING


# ──────────────────────────────────────────────────────────────
#  Production — one song order moving through the pipeline
# ──────────────────────────────────────────────────────────────

class ListenToken(BaseModel):
    """Play-capped credential behind the listen link of a delivered song."""
    value: str
    play_count: int = 0
    max_plays: int = 2
    disabled: bool = False
    half_heard: bool = False

    @property
    def exhausted(self) -> bool:
        return self.play_count >= self.max_plays


class ProductionJob(BaseModel):
    id: str = Field(default_factory=new_id)
    lead_id: str = ""
    lead_phone: str = ""

    # order inputs
    purpose: str = ""
    include_name: str = ""
    anecdotes: str = ""
    genre: str = ""
    artist: str = ""
    voice_type: str = ""

    stage: JobStage = JobStage.AWAITING_LYRICS
    lyrics: str = ""
    style_prompt: str = ""
    external_task_id: Optional[str] = None
    full_audio_url: str = ""
    clip_url: str = ""
    listen: Optional[ListenToken] = None

    generation_started_at: Optional[datetime] = None
    generated_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    error_message: str = ""
    failed_stage: Optional[JobStage] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def title(self) -> str:
        return (self.purpose or "").strip()
