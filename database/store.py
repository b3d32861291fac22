"""
SqlStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Every conditional write is a single UPDATE/DELETE with the precondition in
its WHERE clause; rowcount tells the caller whether it won.

  - JSON tag / phone lookups → Python-side filtering (JSON search is not portable)
  - Counter increments       → column arithmetic in the UPDATE itself
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import and_, delete, or_, select, update

from database.models import (
    LeadRow, ProductionJobRow, SequenceDefinitionRow, SequenceTaskRow,
)
from database.session import get_session
from database.store_base import BaseStore
from models.schemas import (
    JobStage, Lead, ListenToken, ProductionJob, SequenceDefinition, SequenceTask, TaskStatus,
)
from utils.templating import normalize_phone

logger = structlog.get_logger()

_PENDING = TaskStatus.PENDING.value


class SqlStore(BaseStore):
    """
    Persistent store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Leads ──────────────────────────────────────────────

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        async with get_session() as db:
            row = await db.get(LeadRow, lead_id)
            return row.to_model() if row else None

    async def find_lead_by_phone(self, phone: str) -> Optional[Lead]:
        wanted = normalize_phone(phone)
        if not wanted:
            return None
        async with get_session() as db:
            # Stored numbers may carry formatting, so compare normalized forms in Python
            result = await db.execute(select(LeadRow).where(LeadRow.phone != ""))
            for row in result.scalars():
                if normalize_phone(row.phone) == wanted:
                    return row.to_model()
        return None

    async def find_leads_by_tag(self, tag: str, limit: int = 300) -> list[Lead]:
        found: list[Lead] = []
        async with get_session() as db:
            result = await db.execute(select(LeadRow).order_by(LeadRow.created_at))
            for row in result.scalars():
                if tag in (row.tags or []):
                    found.append(row.to_model())
                    if len(found) >= limit:
                        break
        return found

    async def upsert_lead(self, lead: Lead) -> Lead:
        async with get_session() as db:
            row = await db.get(LeadRow, lead.id)
            if row is None:
                row = LeadRow(id=lead.id, extra={})
                db.add(row)
            row.apply(lead.model_dump())
            return lead

    async def update_lead(self, lead_id: str, **fields: Any) -> None:
        async with get_session() as db:
            row = await db.get(LeadRow, lead_id)
            if row is None:
                row = LeadRow(id=lead_id, tags=[], extra={})
                db.add(row)
            row.apply(fields)

    async def add_lead_tags(self, lead_id: str, *tags: str) -> None:
        async with get_session() as db:
            row = await db.get(LeadRow, lead_id)
            if row is None:
                row = LeadRow(id=lead_id, tags=[], extra={})
                db.add(row)
            merged = list(row.tags or [])
            for tag in tags:
                if tag and tag not in merged:
                    merged.append(tag)
            row.tags = merged

    # ── Sequence definitions ───────────────────────────────

    async def get_sequence_definition(self, sequence_id: str) -> Optional[SequenceDefinition]:
        async with get_session() as db:
            row = await db.get(SequenceDefinitionRow, sequence_id)
            return row.to_model() if row else None

    async def find_sequence_definition_by_trigger(self, trigger: str) -> Optional[SequenceDefinition]:
        async with get_session() as db:
            stmt = select(SequenceDefinitionRow).where(SequenceDefinitionRow.trigger == trigger).limit(1)
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return row.to_model() if row else None

    async def upsert_sequence_definition(self, definition: SequenceDefinition) -> SequenceDefinition:
        steps = [s.model_dump(mode="json") for s in definition.steps]
        async with get_session() as db:
            row = await db.get(SequenceDefinitionRow, definition.id)
            if row is None:
                db.add(SequenceDefinitionRow(
                    id=definition.id, trigger=definition.trigger,
                    active=definition.active, steps=steps,
                    description=definition.description,
                ))
            else:
                row.trigger = definition.trigger
                row.active = definition.active
                row.steps = steps
                row.description = definition.description
            return definition

    # ── Sequence tasks ─────────────────────────────────────

    async def insert_tasks(self, tasks: list[SequenceTask]) -> None:
        # One session is one transaction: a duplicate key rolls back the batch
        async with get_session() as db:
            db.add_all([SequenceTaskRow.from_model(t) for t in tasks])

    async def get_task(self, task_id: str) -> Optional[SequenceTask]:
        async with get_session() as db:
            row = await db.get(SequenceTaskRow, task_id)
            return row.to_model() if row else None

    async def scan_due(self, now: datetime, limit: int, shard: Optional[int] = None) -> list[SequenceTask]:
        conditions = [SequenceTaskRow.status == _PENDING, SequenceTaskRow.due_at <= now]
        if shard is not None:
            conditions.append(SequenceTaskRow.shard == shard)
        stmt = (
            select(SequenceTaskRow)
            .where(and_(*conditions))
            .order_by(SequenceTaskRow.due_at, SequenceTaskRow.created_at, SequenceTaskRow.step_index)
            .limit(limit)
        )
        async with get_session() as db:
            result = await db.execute(stmt)
            return [r.to_model() for r in result.scalars().all()]

    async def claim_task(self, task_id: str, worker_id: str, now: datetime, lease_seconds: int) -> bool:
        expired = now - timedelta(seconds=lease_seconds)
        stmt = (
            update(SequenceTaskRow)
            .where(and_(
                SequenceTaskRow.id == task_id,
                SequenceTaskRow.status == _PENDING,
                or_(SequenceTaskRow.claimed_at.is_(None), SequenceTaskRow.claimed_at <= expired),
            ))
            .values(claimed_by=worker_id, claimed_at=now)
        )
        async with get_session() as db:
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def _finish_task(self, task_id: str, status: TaskStatus, now: datetime, message: str = "") -> bool:
        values: dict[str, Any] = {"status": status.value, "processed_at": now}
        if message:
            values["error_message"] = message
        stmt = (
            update(SequenceTaskRow)
            .where(and_(SequenceTaskRow.id == task_id, SequenceTaskRow.status == _PENDING))
            .values(**values)
        )
        async with get_session() as db:
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def mark_task_sent(self, task_id: str, now: datetime) -> bool:
        return await self._finish_task(task_id, TaskStatus.SENT, now)

    async def mark_task_error(self, task_id: str, message: str, now: datetime) -> bool:
        return await self._finish_task(task_id, TaskStatus.ERROR, now, message or "unknown error")

    async def delete_pending_by_lead_and_sequences(self, lead_id: str, sequence_ids: list[str]) -> int:
        if not sequence_ids:
            return 0
        stmt = delete(SequenceTaskRow).where(and_(
            SequenceTaskRow.lead_id == lead_id,
            SequenceTaskRow.status == _PENDING,
            SequenceTaskRow.sequence_id.in_(list(sequence_ids)),
        ))
        async with get_session() as db:
            result = await db.execute(stmt)
            return result.rowcount or 0

    async def list_tasks(self, lead_id: str = "", status: Optional[str] = None) -> list[SequenceTask]:
        stmt = select(SequenceTaskRow)
        if lead_id:
            stmt = stmt.where(SequenceTaskRow.lead_id == lead_id)
        if status is not None:
            stmt = stmt.where(SequenceTaskRow.status == TaskStatus(status).value)
        stmt = stmt.order_by(SequenceTaskRow.created_at, SequenceTaskRow.step_index)
        async with get_session() as db:
            result = await db.execute(stmt)
            return [r.to_model() for r in result.scalars().all()]

    # ── Production jobs ────────────────────────────────────

    async def create_job(self, job: ProductionJob) -> ProductionJob:
        async with get_session() as db:
            db.add(ProductionJobRow.from_model(job))
            return job

    async def get_job(self, job_id: str) -> Optional[ProductionJob]:
        async with get_session() as db:
            row = await db.get(ProductionJobRow, job_id)
            return row.to_model() if row else None

    async def oldest_job_in_stage(self, stage: JobStage) -> Optional[ProductionJob]:
        jobs = await self.list_jobs_in_stage(stage, limit=1)
        return jobs[0] if jobs else None

    async def list_jobs_in_stage(self, stage: JobStage, limit: int = 100) -> list[ProductionJob]:
        stmt = (
            select(ProductionJobRow)
            .where(ProductionJobRow.stage == JobStage(stage).value)
            .order_by(ProductionJobRow.created_at)
            .limit(limit)
        )
        async with get_session() as db:
            result = await db.execute(stmt)
            return [r.to_model() for r in result.scalars().all()]

    async def transition_job(self, job_id: str, from_stage: JobStage, to_stage: JobStage, **fields: Any) -> bool:
        values = ProductionJobRow.columns_for(fields)
        values["stage"] = JobStage(to_stage).value
        values["updated_at"] = datetime.now(timezone.utc)
        stmt = (
            update(ProductionJobRow)
            .where(and_(
                ProductionJobRow.id == job_id,
                ProductionJobRow.stage == JobStage(from_stage).value,
            ))
            .values(**values)
        )
        async with get_session() as db:
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def update_job(self, job_id: str, **fields: Any) -> None:
        values = ProductionJobRow.columns_for(fields)
        values["updated_at"] = datetime.now(timezone.utc)
        async with get_session() as db:
            await db.execute(
                update(ProductionJobRow).where(ProductionJobRow.id == job_id).values(**values)
            )

    async def _find_job(self, *conditions) -> Optional[ProductionJob]:
        stmt = select(ProductionJobRow).where(and_(*conditions)).limit(1)
        async with get_session() as db:
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return row.to_model() if row else None

    async def find_job_by_external_task(self, external_task_id: str) -> Optional[ProductionJob]:
        if not external_task_id:
            return None
        return await self._find_job(ProductionJobRow.external_task_id == external_task_id)

    async def find_job_by_listen_token(self, token: str) -> Optional[ProductionJob]:
        if not token:
            return None
        return await self._find_job(ProductionJobRow.listen_token == token)

    async def find_latest_job_for_lead(self, lead_id: str) -> Optional[ProductionJob]:
        stmt = (
            select(ProductionJobRow)
            .where(ProductionJobRow.lead_id == lead_id)
            .order_by(ProductionJobRow.created_at.desc())
            .limit(1)
        )
        async with get_session() as db:
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return row.to_model() if row else None

    async def find_stale_jobs(self, stage: JobStage, started_before: datetime) -> list[ProductionJob]:
        stmt = (
            select(ProductionJobRow)
            .where(and_(
                ProductionJobRow.stage == JobStage(stage).value,
                ProductionJobRow.generation_started_at.is_not(None),
                ProductionJobRow.generation_started_at <= started_before,
            ))
            .order_by(ProductionJobRow.created_at)
        )
        async with get_session() as db:
            result = await db.execute(stmt)
            return [r.to_model() for r in result.scalars().all()]

    async def increment_play_count(self, job_id: str) -> bool:
        stmt = (
            update(ProductionJobRow)
            .where(and_(
                ProductionJobRow.id == job_id,
                ProductionJobRow.listen_token.is_not(None),
                ProductionJobRow.listen_disabled.is_(False),
                ProductionJobRow.listen_play_count < ProductionJobRow.listen_max_plays,
            ))
            .values(listen_play_count=ProductionJobRow.listen_play_count + 1)
        )
        async with get_session() as db:
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def claim_delivery(self, job_id: str, token: ListenToken, sent_at: datetime) -> bool:
        values = ProductionJobRow.columns_for({"listen": token, "sent_at": sent_at})
        values["updated_at"] = datetime.now(timezone.utc)
        stmt = (
            update(ProductionJobRow)
            .where(and_(
                ProductionJobRow.id == job_id,
                ProductionJobRow.stage == JobStage.READY_TO_SEND.value,
                ProductionJobRow.listen_token.is_(None),
            ))
            .values(**values)
        )
        async with get_session() as db:
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def mark_half_heard(self, job_id: str, value: bool = True) -> bool:
        stmt = (
            update(ProductionJobRow)
            .where(and_(
                ProductionJobRow.id == job_id,
                ProductionJobRow.listen_token.is_not(None),
                ProductionJobRow.listen_half_heard.is_(not value),
            ))
            .values(listen_half_heard=value)
        )
        async with get_session() as db:
            result = await db.execute(stmt)
            return result.rowcount == 1
