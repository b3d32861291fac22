"""
InMemoryStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlStore
  - Conditional updates and batches serialised by one asyncio.Lock
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
import copy
import structlog
from datetime import datetime, timedelta
from typing import Any, Optional

from database.store_base import BaseStore
from models.schemas import (
    JobStage, Lead, ListenToken, ProductionJob, SequenceDefinition, SequenceTask,
    TaskStatus, utcnow,
)
from utils.templating import normalize_phone

logger = structlog.get_logger()


class InMemoryStore(BaseStore):
    """
    Full-featured in-memory store with the same interface as SqlStore.
    Models are copied on the way in and out so callers never share state
    with the store.
    """

    def __init__(self):
        self._leads: dict[str, Lead] = {}                         # id → lead
        self._definitions: dict[str, SequenceDefinition] = {}     # id → definition
        self._tasks: dict[str, SequenceTask] = {}                 # id → task (insertion ordered)
        self._jobs: dict[str, ProductionJob] = {}                 # id → job (insertion ordered)
        self._lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    # ── Leads ─────────────────────────────────────────────

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        lead = self._leads.get(lead_id)
        return lead.model_copy(deep=True) if lead else None

    async def find_lead_by_phone(self, phone: str) -> Optional[Lead]:
        wanted = normalize_phone(phone)
        if not wanted:
            return None
        for lead in self._leads.values():
            if normalize_phone(lead.phone) == wanted:
                return lead.model_copy(deep=True)
        return None

    async def find_leads_by_tag(self, tag: str, limit: int = 300) -> list[Lead]:
        found = [l for l in self._leads.values() if tag in l.tags]
        return [l.model_copy(deep=True) for l in found[:limit]]

    async def upsert_lead(self, lead: Lead) -> Lead:
        self._leads[lead.id] = lead.model_copy(deep=True)
        return lead

    async def update_lead(self, lead_id: str, **fields: Any) -> None:
        async with self._lock:
            lead = self._leads.get(lead_id)
            if lead is None:
                self._leads[lead_id] = Lead(id=lead_id, **fields)
                return
            self._leads[lead_id] = Lead(**{**lead.model_dump(), **fields})

    async def add_lead_tags(self, lead_id: str, *tags: str) -> None:
        async with self._lock:
            lead = self._leads.get(lead_id) or Lead(id=lead_id)
            merged = list(lead.tags)
            for tag in tags:
                if tag and tag not in merged:
                    merged.append(tag)
            lead.tags = merged
            self._leads[lead_id] = lead

    # ── Sequence definitions ──────────────────────────────

    async def get_sequence_definition(self, sequence_id: str) -> Optional[SequenceDefinition]:
        d = self._definitions.get(sequence_id)
        return d.model_copy(deep=True) if d else None

    async def find_sequence_definition_by_trigger(self, trigger: str) -> Optional[SequenceDefinition]:
        for d in self._definitions.values():
            if d.trigger == trigger:
                return d.model_copy(deep=True)
        return None

    async def upsert_sequence_definition(self, definition: SequenceDefinition) -> SequenceDefinition:
        self._definitions[definition.id] = definition.model_copy(deep=True)
        return definition

    # ── Sequence tasks ────────────────────────────────────

    async def insert_tasks(self, tasks: list[SequenceTask]) -> None:
        async with self._lock:
            duplicates = [t.id for t in tasks if t.id in self._tasks]
            if duplicates:
                raise ValueError(f"Duplicate task ids: {duplicates}")
            for t in tasks:
                self._tasks[t.id] = t.model_copy(deep=True)

    async def get_task(self, task_id: str) -> Optional[SequenceTask]:
        t = self._tasks.get(task_id)
        return t.model_copy(deep=True) if t else None

    async def scan_due(self, now: datetime, limit: int, shard: Optional[int] = None) -> list[SequenceTask]:
        due = [
            t for t in self._tasks.values()
            if t.status == TaskStatus.PENDING
            and t.due_at <= now
            and (shard is None or t.shard == shard)
        ]
        # sorted() is stable, so equal due_at keeps insertion order
        due = sorted(due, key=lambda t: t.due_at)
        return [t.model_copy(deep=True) for t in due[:limit]]

    async def claim_task(self, task_id: str, worker_id: str, now: datetime, lease_seconds: int) -> bool:
        async with self._lock:
            t = self._tasks.get(task_id)
            if t is None or t.status != TaskStatus.PENDING:
                return False
            if t.claimed_at and t.claimed_at > now - timedelta(seconds=lease_seconds):
                return False
            t.claimed_by = worker_id
            t.claimed_at = now
            return True

    async def _finish_task(self, task_id: str, status: TaskStatus, now: datetime, message: str = "") -> bool:
        async with self._lock:
            t = self._tasks.get(task_id)
            if t is None or t.status != TaskStatus.PENDING:
                return False
            t.status = status
            t.processed_at = now
            if message:
                t.error_message = message
            return True

    async def mark_task_sent(self, task_id: str, now: datetime) -> bool:
        return await self._finish_task(task_id, TaskStatus.SENT, now)

    async def mark_task_error(self, task_id: str, message: str, now: datetime) -> bool:
        return await self._finish_task(task_id, TaskStatus.ERROR, now, message or "unknown error")

    async def delete_pending_by_lead_and_sequences(self, lead_id: str, sequence_ids: list[str]) -> int:
        wanted = set(sequence_ids)
        async with self._lock:
            doomed = [
                t.id for t in self._tasks.values()
                if t.lead_id == lead_id
                and t.status == TaskStatus.PENDING
                and t.sequence_id in wanted
            ]
            for task_id in doomed:
                del self._tasks[task_id]
            return len(doomed)

    async def list_tasks(self, lead_id: str = "", status: Optional[str] = None) -> list[SequenceTask]:
        return [
            t.model_copy(deep=True) for t in self._tasks.values()
            if (not lead_id or t.lead_id == lead_id)
            and (status is None or t.status == status)
        ]

    # ── Production jobs ───────────────────────────────────

    async def create_job(self, job: ProductionJob) -> ProductionJob:
        self._jobs[job.id] = job.model_copy(deep=True)
        return job

    async def get_job(self, job_id: str) -> Optional[ProductionJob]:
        j = self._jobs.get(job_id)
        return j.model_copy(deep=True) if j else None

    def _in_stage(self, stage: JobStage) -> list[ProductionJob]:
        jobs = [j for j in self._jobs.values() if j.stage == stage]
        return sorted(jobs, key=lambda j: j.created_at)

    async def oldest_job_in_stage(self, stage: JobStage) -> Optional[ProductionJob]:
        jobs = self._in_stage(stage)
        return jobs[0].model_copy(deep=True) if jobs else None

    async def list_jobs_in_stage(self, stage: JobStage, limit: int = 100) -> list[ProductionJob]:
        return [j.model_copy(deep=True) for j in self._in_stage(stage)[:limit]]

    async def transition_job(self, job_id: str, from_stage: JobStage, to_stage: JobStage, **fields: Any) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.stage != from_stage:
                return False
            self._jobs[job_id] = job.model_copy(
                update={**copy.deepcopy(fields), "stage": to_stage, "updated_at": utcnow()}
            )
            return True

    async def update_job(self, job_id: str, **fields: Any) -> None:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                self._jobs[job_id] = job.model_copy(update={**copy.deepcopy(fields), "updated_at": utcnow()})

    async def find_job_by_external_task(self, external_task_id: str) -> Optional[ProductionJob]:
        for j in self._jobs.values():
            if external_task_id and j.external_task_id == external_task_id:
                return j.model_copy(deep=True)
        return None

    async def find_job_by_listen_token(self, token: str) -> Optional[ProductionJob]:
        for j in self._jobs.values():
            if token and j.listen and j.listen.value == token:
                return j.model_copy(deep=True)
        return None

    async def find_latest_job_for_lead(self, lead_id: str) -> Optional[ProductionJob]:
        jobs = [j for j in self._jobs.values() if j.lead_id == lead_id]
        if not jobs:
            return None
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[0].model_copy(deep=True)

    async def find_stale_jobs(self, stage: JobStage, started_before: datetime) -> list[ProductionJob]:
        return [
            j.model_copy(deep=True) for j in self._in_stage(stage)
            if j.generation_started_at is not None
            and j.generation_started_at <= started_before
        ]

    async def increment_play_count(self, job_id: str) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.listen is None:
                return False
            if job.listen.disabled or job.listen.exhausted:
                return False
            job.listen.play_count += 1
            return True

    async def claim_delivery(self, job_id: str, token: ListenToken, sent_at: datetime) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.stage != JobStage.READY_TO_SEND or job.listen is not None:
                return False
            self._jobs[job_id] = job.model_copy(
                update={"listen": token.model_copy(), "sent_at": sent_at, "updated_at": utcnow()}
            )
            return True

    async def mark_half_heard(self, job_id: str, value: bool = True) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.listen is None or job.listen.half_heard == value:
                return False
            job.listen.half_heard = value
            return True

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {
            "leads": len(self._leads),
            "sequence_definitions": len(self._definitions),
            "tasks": len(self._tasks),
            "pending_tasks": sum(1 for t in self._tasks.values() if t.status == TaskStatus.PENDING),
            "jobs": len(self._jobs),
        }
