"""PipelineScheduler — periodic propose + register loop.

Runs as an asyncio.Task inside the API process (started from the app
lifespan), not as a separate worker. Each tick:
  1. propose_events: score discovered events and send approval requests
  2. process_approved_events: register everything already approved
  3. cleanup_old_reports: enforce report retention

A failing tick is logged and the loop carries on; stop() ends it between ticks.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from family_events.services.registration_orchestrator import RegistrationOrchestrator
    from family_events.services.reporting_service import ReportingService

logger = structlog.get_logger(__name__)


class PipelineScheduler:
    """Usage:
        scheduler = PipelineScheduler(orchestrator, interval_seconds=900)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        orchestrator: RegistrationOrchestrator,
        interval_seconds: float = 900,
        reporting: ReportingService | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self.reporting = reporting
        self.ticks = 0
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stop_event.clear()
            self._task = asyncio.create_task(self.run(), name="pipeline-scheduler")
        return self._task

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def run(self) -> None:
        logger.info("scheduler_started", interval_seconds=self.interval_seconds)
        while not self._stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("scheduler_stopped", ticks=self.ticks)

    async def run_once(self) -> None:
        self.ticks += 1
        try:
            proposal = await self.orchestrator.propose_events()
            outcomes = await self.orchestrator.process_approved_events()
            logger.info(
                "scheduler_tick_complete",
                tick=self.ticks,
                proposed=len(proposal.proposed),
                processed=len(outcomes),
            )
        except Exception as exc:
            logger.error("scheduler_tick_failed", tick=self.ticks, error=str(exc), error_type=type(exc).__name__)

        if self.reporting is not None:
            try:
                await self.reporting.cleanup_old_reports()
            except Exception as exc:
                logger.warning("report_cleanup_failed", error=str(exc), error_type=type(exc).__name__)
