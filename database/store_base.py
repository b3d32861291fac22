"""
Abstract Store — Interface for all storage backends.

Implementations:
  - SqlStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryStore (dict-based, single-process, no persistence)
  - FileStore     (JSON files on disk, single-process, durable)

Every write the engine relies on for consistency is exposed here as a single
call so each backend can make it atomic in its own way:

  insert_tasks                          — all-or-nothing multi insert
  claim_task / mark_task_sent / _error  — conditional on status == pending
  delete_pending_by_lead_and_sequences  — read, filter, batch delete
  transition_job                        — conditional on the expected stage
  claim_delivery                        — conditional on ready-to-send with no token yet
  increment_play_count / mark_half_heard — conditional single-field updates
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    JobStage, Lead, ListenToken, ProductionJob, SequenceDefinition, SequenceTask,
)


class BaseStore(ABC):
    """Interface that all store backends must implement."""

    # ── Leads ─────────────────────────────────────────────────

    @abstractmethod
    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        ...

    @abstractmethod
    async def find_lead_by_phone(self, phone: str) -> Optional[Lead]:
        ...

    @abstractmethod
    async def find_leads_by_tag(self, tag: str, limit: int = 300) -> list[Lead]:
        ...

    @abstractmethod
    async def upsert_lead(self, lead: Lead) -> Lead:
        ...

    @abstractmethod
    async def update_lead(self, lead_id: str, **fields: Any) -> None:
        """Merge fields into the lead. Missing leads are created (set-with-merge)."""
        ...

    @abstractmethod
    async def add_lead_tags(self, lead_id: str, *tags: str) -> None:
        ...

    # ── Sequence definitions ──────────────────────────────────

    @abstractmethod
    async def get_sequence_definition(self, sequence_id: str) -> Optional[SequenceDefinition]:
        ...

    @abstractmethod
    async def find_sequence_definition_by_trigger(self, trigger: str) -> Optional[SequenceDefinition]:
        ...

    @abstractmethod
    async def upsert_sequence_definition(self, definition: SequenceDefinition) -> SequenceDefinition:
        ...

    # ── Sequence tasks ────────────────────────────────────────

    @abstractmethod
    async def insert_tasks(self, tasks: list[SequenceTask]) -> None:
        ...

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[SequenceTask]:
        ...

    @abstractmethod
    async def scan_due(self, now: datetime, limit: int, shard: Optional[int] = None) -> list[SequenceTask]:
        """Pending tasks with due_at <= now, oldest due first, capped at limit."""
        ...

    @abstractmethod
    async def claim_task(self, task_id: str, worker_id: str, now: datetime, lease_seconds: int) -> bool:
        """
        Lease a pending task to worker_id. Succeeds only if the task is still
        pending and unclaimed, or its previous lease is older than lease_seconds.
        """
        ...

    @abstractmethod
    async def mark_task_sent(self, task_id: str, now: datetime) -> bool:
        ...

    @abstractmethod
    async def mark_task_error(self, task_id: str, message: str, now: datetime) -> bool:
        ...

    @abstractmethod
    async def delete_pending_by_lead_and_sequences(self, lead_id: str, sequence_ids: list[str]) -> int:
        ...

    @abstractmethod
    async def list_tasks(self, lead_id: str = "", status: Optional[str] = None) -> list[SequenceTask]:
        ...

    # ── Production jobs ───────────────────────────────────────

    @abstractmethod
    async def create_job(self, job: ProductionJob) -> ProductionJob:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[ProductionJob]:
        ...

    @abstractmethod
    async def oldest_job_in_stage(self, stage: JobStage) -> Optional[ProductionJob]:
        ...

    @abstractmethod
    async def list_jobs_in_stage(self, stage: JobStage, limit: int = 100) -> list[ProductionJob]:
        ...

    @abstractmethod
    async def transition_job(self, job_id: str, from_stage: JobStage, to_stage: JobStage, **fields: Any) -> bool:
        """Move a job to to_stage and merge fields, only if it is still in from_stage."""
        ...

    @abstractmethod
    async def update_job(self, job_id: str, **fields: Any) -> None:
        ...

    @abstractmethod
    async def find_job_by_external_task(self, external_task_id: str) -> Optional[ProductionJob]:
        ...

    @abstractmethod
    async def find_job_by_listen_token(self, token: str) -> Optional[ProductionJob]:
        ...

    @abstractmethod
    async def find_latest_job_for_lead(self, lead_id: str) -> Optional[ProductionJob]:
        ...

    @abstractmethod
    async def find_stale_jobs(self, stage: JobStage, started_before: datetime) -> list[ProductionJob]:
        """Jobs in stage whose generation_started_at is at or before started_before."""
        ...

    @abstractmethod
    async def increment_play_count(self, job_id: str) -> bool:
        """Add one play if the token is enabled and below max_plays."""
        ...

    @abstractmethod
    async def claim_delivery(self, job_id: str, token: ListenToken, sent_at: datetime) -> bool:
        """Attach the listen token to a ready-to-send job that has none yet."""
        ...

    @abstractmethod
    async def mark_half_heard(self, job_id: str, value: bool = True) -> bool:
        """Set listen.half_heard to value; True only for the call that flipped it."""
        ...
