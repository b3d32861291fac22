"""
Periodic Driver — runs every engine operation on its own interval.

Each registered operation gets its own background task, so a slow clip
sweep never delays the message dispatcher. Within one task, ticks never
overlap: the next sleep starts after the previous run returns.
"""
from __future__ import annotations

import asyncio
import structlog
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from config.settings import ScheduleConfig, get_settings

logger = structlog.get_logger()

Operation = Callable[[], Awaitable[Any]]


@dataclass
class PeriodicJob:
    name: str
    interval: float
    operation: Operation
    runs: int = 0
    failures: int = 0
    last_result: Any = None


class PeriodicDriver:
    """
    Usage:
        driver = PeriodicDriver.for_engine(scheduler, pipeline, recovery)
        await driver.start_background()
        ...
        await driver.stop()
    """

    def __init__(self):
        self.jobs: dict[str, PeriodicJob] = {}
        self._tasks: list[asyncio.Task] = []

    def add(self, name: str, interval: float, operation: Operation) -> None:
        if interval <= 0:
            logger.info("periodic_job_disabled", name=name)
            return
        self.jobs[name] = PeriodicJob(name=name, interval=interval, operation=operation)

    @classmethod
    def for_engine(cls, scheduler, pipeline, recovery, schedule: Optional[ScheduleConfig] = None) -> "PeriodicDriver":
        schedule = schedule or get_settings().schedule
        driver = cls()
        driver.add("dispatch", schedule.dispatch, scheduler.dispatch_due)
        driver.add("intake_sweep", schedule.intake_sweep, scheduler.cancel_intake_for_tagged_leads)
        driver.add("lyrics", schedule.lyrics, pipeline.generate_lyrics)
        driver.add("prompt", schedule.prompt, pipeline.generate_style_prompt)
        driver.add("generation", schedule.generation, pipeline.start_generation)
        driver.add("clips", schedule.clips, pipeline.produce_clips)
        driver.add("delivery", schedule.delivery, pipeline.deliver_songs)
        driver.add("recovery", schedule.recovery, recovery.retry_stuck)
        return driver

    async def run_once(self, name: str) -> Any:
        """Run one operation now; errors are logged and counted, not raised."""
        job = self.jobs[name]
        job.runs += 1
        try:
            job.last_result = await job.operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            job.failures += 1
            logger.error("periodic_job_error", name=name, error=str(e), exc_info=True)
            return None
        return job.last_result

    async def _run(self, job: PeriodicJob):
        logger.info("periodic_job_started", name=job.name, interval=job.interval)
        while True:
            try:
                await self.run_once(job.name)
                await asyncio.sleep(job.interval)
            except asyncio.CancelledError:
                break

    async def start_background(self) -> list[asyncio.Task]:
        for job in self.jobs.values():
            self._tasks.append(asyncio.create_task(self._run(job), name=f"periodic-{job.name}"))
        return list(self._tasks)

    async def stop(self):
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("periodic_driver_stopped")

    def status(self) -> dict[str, dict[str, Any]]:
        return {
            name: {"interval": j.interval, "runs": j.runs, "failures": j.failures}
            for name, j in self.jobs.items()
        }
