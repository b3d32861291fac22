"""
FileStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    leads.json
    sequence_definitions.json
    sequence_tasks.json
    production_jobs.json

Features:
  - Survives process restarts (unlike InMemoryStore)
  - No external dependencies (no database server)
  - Writes go to a temp file and are renamed into place
  - Single-process only (no concurrent write safety across processes)

Best for: small deployments, demos, air-gapped environments.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from database.store_memory import InMemoryStore
from models.schemas import (
    JobStage, Lead, ListenToken, ProductionJob, SequenceDefinition, SequenceTask,
)

logger = structlog.get_logger()

_COLLECTIONS = {
    "leads": ("_leads", Lead),
    "sequence_definitions": ("_definitions", SequenceDefinition),
    "sequence_tasks": ("_tasks", SequenceTask),
    "production_jobs": ("_jobs", ProductionJob),
}


class FileStore(InMemoryStore):
    """
    Extends InMemoryStore with JSON file persistence.

    On init: loads all data from JSON files into memory.
    On every write: flushes the changed collection to disk.

    For higher performance, set flush_interval_s > 0 to batch writes.
    """

    def __init__(self, data_dir: str = "./data", flush_interval_s: float = 0):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty: set[str] = set()
        self._flush_task: Optional[asyncio.Task] = None
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def _file_path(self, collection: str) -> Path:
        return self._data_dir / f"{collection}.json"

    def _load_all(self):
        """Load all collections from disk."""
        for collection, (attr, model) in _COLLECTIONS.items():
            path = self._file_path(collection)
            if not path.exists():
                continue
            try:
                with open(path, "r") as f:
                    raw = json.load(f)
                setattr(self, attr, {k: model.model_validate(v) for k, v in raw.items()})
                logger.debug("file_store_loaded", collection=collection, records=len(raw))
            except (json.JSONDecodeError, ValueError) as e:
                logger.warning("file_store_load_error", collection=collection, error=str(e))

    def _flush_collection(self, collection: str):
        """Write a single collection to disk."""
        attr, _ = _COLLECTIONS[collection]
        data = {k: v.model_dump(mode="json") for k, v in getattr(self, attr).items()}
        path = self._file_path(collection)
        tmp_path = path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        tmp_path.replace(path)

    def _mark_dirty(self, *collections: str):
        """Mark collections as needing a flush."""
        if self._flush_interval <= 0:
            for c in collections:
                self._flush_collection(c)
        else:
            self._dirty.update(collections)
            if self._flush_task is None or self._flush_task.done():
                self._flush_task = asyncio.get_running_loop().create_task(self._deferred_flush())

    async def _deferred_flush(self):
        """Batch flush after interval."""
        await asyncio.sleep(self._flush_interval)
        dirty = self._dirty.copy()
        self._dirty.clear()
        for c in dirty:
            self._flush_collection(c)

    def flush_all(self):
        """Force flush all collections to disk."""
        for c in _COLLECTIONS:
            self._flush_collection(c)
        logger.info("file_store_flushed_all")

    # ── Override write methods to trigger persistence ──────

    async def upsert_lead(self, lead: Lead) -> Lead:
        result = await super().upsert_lead(lead)
        self._mark_dirty("leads")
        return result

    async def update_lead(self, lead_id: str, **fields: Any) -> None:
        await super().update_lead(lead_id, **fields)
        self._mark_dirty("leads")

    async def add_lead_tags(self, lead_id: str, *tags: str) -> None:
        await super().add_lead_tags(lead_id, *tags)
        self._mark_dirty("leads")

    async def upsert_sequence_definition(self, definition: SequenceDefinition) -> SequenceDefinition:
        result = await super().upsert_sequence_definition(definition)
        self._mark_dirty("sequence_definitions")
        return result

    async def insert_tasks(self, tasks: list[SequenceTask]) -> None:
        await super().insert_tasks(tasks)
        self._mark_dirty("sequence_tasks")

    async def claim_task(self, task_id: str, worker_id: str, now: datetime, lease_seconds: int) -> bool:
        claimed = await super().claim_task(task_id, worker_id, now, lease_seconds)
        if claimed:
            self._mark_dirty("sequence_tasks")
        return claimed

    async def mark_task_sent(self, task_id: str, now: datetime) -> bool:
        changed = await super().mark_task_sent(task_id, now)
        if changed:
            self._mark_dirty("sequence_tasks")
        return changed

    async def mark_task_error(self, task_id: str, message: str, now: datetime) -> bool:
        changed = await super().mark_task_error(task_id, message, now)
        if changed:
            self._mark_dirty("sequence_tasks")
        return changed

    async def delete_pending_by_lead_and_sequences(self, lead_id: str, sequence_ids: list[str]) -> int:
        n = await super().delete_pending_by_lead_and_sequences(lead_id, sequence_ids)
        if n:
            self._mark_dirty("sequence_tasks")
        return n

    async def create_job(self, job: ProductionJob) -> ProductionJob:
        result = await super().create_job(job)
        self._mark_dirty("production_jobs")
        return result

    async def transition_job(self, job_id: str, from_stage: JobStage, to_stage: JobStage, **fields: Any) -> bool:
        changed = await super().transition_job(job_id, from_stage, to_stage, **fields)
        if changed:
            self._mark_dirty("production_jobs")
        return changed

    async def update_job(self, job_id: str, **fields: Any) -> None:
        await super().update_job(job_id, **fields)
        self._mark_dirty("production_jobs")

    async def increment_play_count(self, job_id: str) -> bool:
        changed = await super().increment_play_count(job_id)
        if changed:
            self._mark_dirty("production_jobs")
        return changed

    async def claim_delivery(self, job_id: str, token: ListenToken, sent_at: datetime) -> bool:
        changed = await super().claim_delivery(job_id, token, sent_at)
        if changed:
            self._mark_dirty("production_jobs")
        return changed

    async def mark_half_heard(self, job_id: str, value: bool = True) -> bool:
        changed = await super().mark_half_heard(job_id, value)
        if changed:
            self._mark_dirty("production_jobs")
        return changed
