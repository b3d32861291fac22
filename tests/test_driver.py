"""Tests for the periodic driver."""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from config.settings import ScheduleConfig
from core.driver import PeriodicDriver


class TestRunOnce:
    @pytest.mark.asyncio
    async def test_records_result(self):
        driver = PeriodicDriver()
        driver.add("dispatch", 30, AsyncMock(return_value=4))
        assert await driver.run_once("dispatch") == 4
        assert driver.status()["dispatch"] == {"interval": 30, "runs": 1, "failures": 0}

    @pytest.mark.asyncio
    async def test_errors_are_counted_not_raised(self):
        driver = PeriodicDriver()
        driver.add("clips", 60, AsyncMock(side_effect=RuntimeError("ffmpeg missing")))
        assert await driver.run_once("clips") is None
        assert await driver.run_once("clips") is None
        assert driver.jobs["clips"].failures == 2

    def test_non_positive_interval_disables(self):
        driver = PeriodicDriver()
        driver.add("recovery", 0, AsyncMock())
        assert "recovery" not in driver.jobs


class TestForEngine:
    def test_registers_every_operation(self):
        scheduler, pipeline, recovery = MagicMock(), MagicMock(), MagicMock()
        driver = PeriodicDriver.for_engine(scheduler, pipeline, recovery, ScheduleConfig())
        assert set(driver.jobs) == {
            "dispatch", "intake_sweep", "lyrics", "prompt", "generation", "clips", "delivery", "recovery",
        }
        assert driver.jobs["dispatch"].operation is scheduler.dispatch_due
        assert driver.jobs["recovery"].operation is recovery.retry_stuck
        assert driver.jobs["generation"].interval == 120

    def test_schedule_can_switch_operations_off(self):
        driver = PeriodicDriver.for_engine(MagicMock(), MagicMock(), MagicMock(), ScheduleConfig(clips=0, recovery=-1))
        assert "clips" not in driver.jobs
        assert "recovery" not in driver.jobs


class TestBackgroundLoop:
    @pytest.mark.asyncio
    async def test_loops_until_stopped(self):
        driver = PeriodicDriver()
        op = AsyncMock(return_value=0)
        driver.add("dispatch", 0.01, op)

        tasks = await driver.start_background()
        await asyncio.sleep(0.1)
        await driver.stop()

        assert op.await_count >= 2
        assert all(t.done() for t in tasks)

    @pytest.mark.asyncio
    async def test_failing_operation_keeps_looping(self):
        driver = PeriodicDriver()
        op = AsyncMock(side_effect=RuntimeError("boom"))
        driver.add("lyrics", 0.01, op)

        await driver.start_background()
        await asyncio.sleep(0.1)
        await driver.stop()

        assert driver.jobs["lyrics"].failures >= 2
