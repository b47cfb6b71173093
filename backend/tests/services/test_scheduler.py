"""Tests for PipelineScheduler."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from family_events.schemas.pipeline import ProposalSummary
from family_events.services.scheduler import PipelineScheduler

pytestmark = pytest.mark.unit


def _orchestrator(propose_side_effect=None) -> MagicMock:
    orchestrator = MagicMock()
    orchestrator.propose_events = AsyncMock(
        return_value=ProposalSummary(), side_effect=propose_side_effect
    )
    orchestrator.process_approved_events = AsyncMock(return_value=[])
    return orchestrator


async def test_run_once_proposes_registers_and_cleans_up():
    orchestrator = _orchestrator()
    reporting = MagicMock()
    reporting.cleanup_old_reports = AsyncMock(return_value=0)

    await PipelineScheduler(orchestrator, reporting=reporting).run_once()

    orchestrator.propose_events.assert_awaited_once()
    orchestrator.process_approved_events.assert_awaited_once()
    reporting.cleanup_old_reports.assert_awaited_once()


async def test_failing_tick_does_not_stop_cleanup():
    orchestrator = _orchestrator(propose_side_effect=RuntimeError("boom"))
    reporting = MagicMock()
    reporting.cleanup_old_reports = AsyncMock(return_value=0)
    scheduler = PipelineScheduler(orchestrator, reporting=reporting)

    await scheduler.run_once()

    assert scheduler.ticks == 1
    orchestrator.process_approved_events.assert_not_awaited()
    reporting.cleanup_old_reports.assert_awaited_once()


async def test_loop_ticks_until_stopped():
    orchestrator = _orchestrator()
    scheduler = PipelineScheduler(orchestrator, interval_seconds=0.01)

    scheduler.start()
    await asyncio.sleep(0.1)
    await scheduler.stop()

    assert scheduler.ticks >= 2
    ticks = scheduler.ticks
    await asyncio.sleep(0.05)
    assert scheduler.ticks == ticks


async def test_stop_interrupts_a_long_interval():
    scheduler = PipelineScheduler(_orchestrator(), interval_seconds=3600)

    scheduler.start()
    await asyncio.sleep(0.01)
    await asyncio.wait_for(scheduler.stop(), timeout=1.0)

    assert scheduler.ticks == 1


async def test_start_is_idempotent():
    scheduler = PipelineScheduler(_orchestrator(), interval_seconds=3600)

    first = scheduler.start()
    second = scheduler.start()
    await scheduler.stop()

    assert first is second


async def test_stop_without_start():
    await PipelineScheduler(_orchestrator()).stop()
