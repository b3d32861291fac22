"""
Stuck-job recovery.

A generation request whose callback never arrives leaves the job in
generation-pending forever. Jobs that have been there longer than the
threshold go back to awaiting-generation and are requested again on the
next start_generation tick.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Optional

from config.settings import PipelineConfig, get_settings
from database.store_base import BaseStore
from models.schemas import JobStage, utcnow
from pipeline.stages import validate_transition

logger = structlog.get_logger()


class RecoverySupervisor:
    def __init__(self, store: BaseStore, config: Optional[PipelineConfig] = None):
        self.store = store
        self.config = config or get_settings().pipeline

    async def retry_stuck(self, threshold_minutes: Optional[int] = None, now: Optional[datetime] = None) -> int:
        """Reset stale generation-pending jobs. Returns how many were reset."""
        if threshold_minutes is None:
            threshold_minutes = self.config.stuck_threshold_minutes
        cutoff = (now or utcnow()) - timedelta(minutes=threshold_minutes)

        validate_transition(JobStage.GENERATION_PENDING, JobStage.AWAITING_GENERATION)
        stale = await self.store.find_stale_jobs(JobStage.GENERATION_PENDING, cutoff)

        reset = 0
        for job in stale:
            moved = await self.store.transition_job(
                job.id,
                JobStage.GENERATION_PENDING,
                JobStage.AWAITING_GENERATION,
                external_task_id=None,
                error_message="",
                failed_stage=None,
                generation_started_at=None,
            )
            if moved:
                reset += 1
                logger.warning("stuck_job_reset", job_id=job.id, started_at=str(job.generation_started_at))
        if reset:
            logger.info("stuck_recovery_complete", reset=reset, threshold_minutes=threshold_minutes)
        return reset
