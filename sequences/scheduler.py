"""
Sequence Scheduler — due-time queue of per-lead message steps.

  schedule_sequence   definition → N pending tasks, one per step
  cancel_sequences    delete a lead's pending tasks for named sequences
  dispatch_due        scan → claim → deliver → mark, concurrently per task
  enqueue_message     one-off task outside any definition
  cancel_intake_for_tagged_leads
                      leads that completed the form stop getting intake steps

Task status only ever moves pending → sent or pending → error. A failed
delivery is recorded and never retried; the claim lease keeps overlapping
dispatch runs from sending the same task twice.
"""
from __future__ import annotations

import asyncio
import os
import random
import socket
import structlog
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from config.settings import SequenceConfig, get_settings
from core.dispatcher import DeliveryDispatcher
from database.store_base import BaseStore
from models.schemas import (
    Payload, SequenceDefinition, SequenceTask, TaskStatus, new_id, utcnow,
)

logger = structlog.get_logger()


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{new_id()[:6]}"


@dataclass
class DispatchOutcome:
    """Result slot for one task in a dispatch cycle."""
    task_id: str
    lead_id: str
    status: str              # "sent" | "error" | "skipped"
    error: str = ""


class SequenceScheduler:
    """
    Usage:
        scheduler = SequenceScheduler(store, dispatcher)
        await scheduler.schedule_sequence(lead.id, "new-lead")
        sent = await scheduler.dispatch_due()
    """

    def __init__(
        self,
        store: BaseStore,
        dispatcher: DeliveryDispatcher,
        config: Optional[SequenceConfig] = None,
        worker_id: str = "",
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.config = config or get_settings().sequences
        self.worker_id = worker_id or default_worker_id()
        self._rng = rng or random.Random()

    # ── Definitions ───────────────────────────────────────────

    async def resolve_definition(self, sequence_id: str) -> Optional[SequenceDefinition]:
        """By id first, then by trigger name."""
        if not sequence_id:
            return None
        definition = await self.store.get_sequence_definition(sequence_id)
        if definition is None:
            definition = await self.store.find_sequence_definition_by_trigger(sequence_id)
        return definition

    async def register_definitions(self, raw: list[dict[str, Any]]) -> int:
        """Upsert definitions from configuration."""
        count = 0
        for item in raw or []:
            definition = SequenceDefinition(**item)
            await self.store.upsert_sequence_definition(definition)
            count += 1
        if count:
            logger.info("sequence_definitions_registered", count=count)
        return count

    # ── Scheduling ────────────────────────────────────────────

    async def schedule_sequence(self, lead_id: str, sequence_id: str, start_at: Optional[datetime] = None) -> int:
        """
        Enqueue every step of the sequence for the lead. Returns the number
        of tasks created; 0 (and no writes) for a missing, inactive or empty
        definition.
        """
        definition = await self.resolve_definition(sequence_id)
        if definition is None:
            logger.warning("sequence_not_found", sequence_id=sequence_id, lead_id=lead_id)
            return 0
        if not definition.is_schedulable:
            logger.info("sequence_not_schedulable", sequence_id=sequence_id, active=definition.active)
            return 0

        start_at = start_at or utcnow()
        tasks = [
            SequenceTask(
                lead_id=lead_id,
                sequence_id=sequence_id,
                step_index=i,
                payload=step.to_payload(),
                due_at=start_at + timedelta(minutes=step.delay_minutes),
                shard=self._rng.randrange(self.config.shard_count),
            )
            for i, step in enumerate(definition.steps)
        ]
        await self.store.insert_tasks(tasks)
        await self.store.update_lead(
            lead_id,
            has_active_sequences=True,
            next_action_at=min(t.due_at for t in tasks),
        )
        logger.info("sequence_scheduled", lead_id=lead_id, sequence_id=sequence_id, steps=len(tasks))
        return len(tasks)

    async def enqueue_message(
        self,
        lead_id: str,
        payload: Payload,
        due_at: Optional[datetime] = None,
        sequence_id: str = "ad-hoc",
    ) -> SequenceTask:
        task = SequenceTask(
            lead_id=lead_id,
            sequence_id=sequence_id,
            payload=payload,
            due_at=due_at or utcnow(),
            shard=self._rng.randrange(self.config.shard_count),
        )
        await self.store.insert_tasks([task])

        lead = await self.store.get_lead(lead_id)
        next_at = task.due_at
        if lead and lead.next_action_at and lead.next_action_at < next_at:
            next_at = lead.next_action_at
        await self.store.update_lead(lead_id, has_active_sequences=True, next_action_at=next_at)
        logger.info("message_enqueued", lead_id=lead_id, task_id=task.id, due_at=task.due_at.isoformat())
        return task

    # ── Cancellation ──────────────────────────────────────────

    async def cancel_sequences(self, lead_id: str, sequence_ids: list[str]) -> int:
        if not lead_id or not sequence_ids:
            return 0
        n = await self.store.delete_pending_by_lead_and_sequences(lead_id, list(sequence_ids))
        if n:
            remaining = await self.store.list_tasks(lead_id=lead_id, status=TaskStatus.PENDING)
            if not remaining:
                await self.store.update_lead(lead_id, has_active_sequences=False, next_action_at=None)
            logger.info("sequences_cancelled", lead_id=lead_id, sequence_ids=sequence_ids, cancelled=n)
        return n

    async def cancel_intake_for_tagged_leads(self, limit: Optional[int] = None) -> int:
        """Cancel the intake sequence once for every lead carrying the intake tag."""
        limit = limit or self.config.intake_sweep_limit
        leads = await self.store.find_leads_by_tag(self.config.intake_tag, limit=limit)
        cancelled = 0
        for lead in leads:
            if lead.intake_cancelled:
                continue
            try:
                cancelled += await self.cancel_sequences(lead.id, [self.config.intake_sequence])
                await self.store.update_lead(lead.id, intake_cancelled=True)
            except Exception as e:
                logger.error("intake_cancel_failed", lead_id=lead.id, error=str(e))
        if cancelled:
            logger.info("intake_sweep_cancelled", tasks=cancelled)
        return cancelled

    # ── Dispatch ──────────────────────────────────────────────

    async def dispatch_due(
        self,
        batch_size: Optional[int] = None,
        shard: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Deliver every due task in one batch. Returns how many tasks this run
        processed (sent or error); tasks claimed by another worker are skipped.
        """
        outcomes = await self.dispatch_due_detailed(batch_size, shard, now)
        return sum(1 for o in outcomes if o.status != "skipped")

    async def dispatch_due_detailed(
        self,
        batch_size: Optional[int] = None,
        shard: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> list[DispatchOutcome]:
        now = now or utcnow()
        tasks = await self.store.scan_due(now, batch_size or self.config.batch_size, shard)
        if not tasks:
            return []

        semaphore = asyncio.Semaphore(self.config.dispatch_concurrency)

        async def bounded(task: SequenceTask) -> DispatchOutcome:
            async with semaphore:
                return await self._process_task(task, now)

        results = await asyncio.gather(*(bounded(t) for t in tasks), return_exceptions=True)

        outcomes: list[DispatchOutcome] = []
        for task, result in zip(tasks, results):
            if isinstance(result, BaseException):
                logger.error("dispatch_slot_failed", task_id=task.id, error=str(result))
                outcomes.append(DispatchOutcome(task.id, task.lead_id, "error", str(result)))
            else:
                outcomes.append(result)

        sent = sum(1 for o in outcomes if o.status == "sent")
        failed = sum(1 for o in outcomes if o.status == "error")
        logger.info("dispatch_cycle_complete", scanned=len(tasks), sent=sent, failed=failed, shard=shard)
        return outcomes

    async def _process_task(self, task: SequenceTask, now: datetime) -> DispatchOutcome:
        claimed = await self.store.claim_task(task.id, self.worker_id, now, self.config.claim_lease_seconds)
        if not claimed:
            logger.debug("task_claim_lost", task_id=task.id)
            return DispatchOutcome(task.id, task.lead_id, "skipped")

        try:
            await self.dispatcher.deliver(task.lead_id, task.payload)
        except Exception as e:
            message = str(e) or type(e).__name__
            if not await self.store.mark_task_error(task.id, message, utcnow()):
                logger.warning("task_conflict", task_id=task.id, expected="pending")
            logger.warning("task_delivery_failed", task_id=task.id, lead_id=task.lead_id,
                           sequence_id=task.sequence_id, error=message)
            return DispatchOutcome(task.id, task.lead_id, "error", message)

        if not await self.store.mark_task_sent(task.id, utcnow()):
            logger.warning("task_conflict", task_id=task.id, expected="pending")
            return DispatchOutcome(task.id, task.lead_id, "skipped")

        logger.info("task_sent", task_id=task.id, lead_id=task.lead_id,
                    sequence_id=task.sequence_id, step=task.step_index)
        return DispatchOutcome(task.id, task.lead_id, "sent")
