"""
Sync Scheduler Module
=====================

Runs the ingestion pipeline on a cron schedule and once shortly after
startup, guarantees at most one active run, and exposes the manual
trigger used by the operator API and CLI.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger

from carnival_sync.core.config import PipelineConfig
from carnival_sync.core.enums import TriggerSource
from carnival_sync.core.errors import RunInProgress
from carnival_sync.core.schema import IngestionRun, SchedulerStatus, TriggerResult
from carnival_sync.ingestion.audit import RunHandle
from carnival_sync.ingestion.pipeline import IngestionPipeline

logger = logging.getLogger(__name__)

SCHEDULED_JOB_ID = "mysideline-sync"
STARTUP_JOB_ID = "mysideline-startup-sync"

REASON_IN_PROGRESS = "run-in-progress"
REASON_DISABLED = "disabled"
REASON_SHUTTING_DOWN = "shutting-down"


class SyncScheduler:
    """
    Owns the run lifecycle for one process.

    Single-flight is enforced twice: an in-process lock serialises
    triggers, and the 'running' IngestionRun row (unique partial index)
    excludes runs started by other processes.
    """

    def __init__(self, pipeline: IngestionPipeline, config: PipelineConfig | None = None) -> None:
        self.pipeline = pipeline
        self.config = config or pipeline.config
        self._lock = asyncio.Lock()
        self._cancel_event = asyncio.Event()
        self._current_task: asyncio.Task[IngestionRun] | None = None
        self._current_correlation_id: str | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._shutting_down = False

    @property
    def enabled(self) -> bool:
        return self.config.sync_enabled

    @property
    def running_correlation_id(self) -> str | None:
        if self._current_task is not None and not self._current_task.done():
            return self._current_correlation_id
        return None

    def start(self) -> None:
        """Start cron and startup jobs. Must be called with a running event loop."""
        if not self.enabled:
            logger.info("MySideline sync disabled; scheduler not started")
            return
        if self._scheduler is not None:
            return

        tz = self.config.tz
        scheduler = AsyncIOScheduler(timezone=tz)
        scheduler.add_job(
            self._scheduled_tick,
            CronTrigger.from_crontab(self.config.schedule, timezone=tz),
            id=SCHEDULED_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        if self.config.startup_delay_seconds >= 0:
            run_at = self.pipeline.clock() + timedelta(seconds=self.config.startup_delay_seconds)
            scheduler.add_job(
                self._startup_tick,
                DateTrigger(run_date=run_at, timezone=tz),
                id=STARTUP_JOB_ID,
                misfire_grace_time=None,
                replace_existing=True,
            )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(f"Scheduler started (schedule='{self.config.schedule}', tz={self.config.timezone})")

    async def _scheduled_tick(self) -> None:
        result = await self.trigger_run_now(TriggerSource.SCHEDULED)
        if not result.accepted:
            logger.info(f"Scheduled run not started: {result.reason} ({result.correlation_id or '-'})")

    async def _startup_tick(self) -> None:
        hours = self.config.initial_sync_hours
        if hours > 0:
            recent = await asyncio.to_thread(self.pipeline.audit.last_success_within, hours)
            if recent is not None:
                logger.info(f"Skipping startup run: last successful run {recent.correlation_id} is recent")
                return
        result = await self.trigger_run_now(TriggerSource.STARTUP)
        if not result.accepted:
            logger.info(f"Startup run not started: {result.reason}")

    async def trigger_run_now(self, trigger_source: TriggerSource = TriggerSource.MANUAL) -> TriggerResult:
        """
        Start a run immediately if idle.

        Returns:
            ``accepted=True`` with the new run's correlation id, or
            ``accepted=False`` with a reason (and the active run's id
            when one is in progress)
        """
        async with self._lock:
            if not self.enabled:
                return TriggerResult(accepted=False, reason=REASON_DISABLED)
            if self._shutting_down:
                return TriggerResult(accepted=False, reason=REASON_SHUTTING_DOWN)
            if self.running_correlation_id is not None:
                return TriggerResult(
                    accepted=False, reason=REASON_IN_PROGRESS, correlation_id=self.running_correlation_id
                )
            try:
                handle = await asyncio.to_thread(self.pipeline.begin, trigger_source)
            except RunInProgress as e:
                logger.info(f"Run {e.correlation_id} is active in another process")
                return TriggerResult(accepted=False, reason=REASON_IN_PROGRESS, correlation_id=e.correlation_id)

            self._current_correlation_id = handle.correlation_id
            self._current_task = asyncio.create_task(self._run(handle), name=f"ingestion-{handle.correlation_id}")
            return TriggerResult(accepted=True, correlation_id=handle.correlation_id)

    async def _run(self, handle: RunHandle) -> IngestionRun:
        return await self.pipeline.execute(handle, self._cancel_event)

    async def wait_for_current(self) -> IngestionRun | None:
        """Wait for the active run, if any, and return its record."""
        task = self._current_task
        if task is None:
            return None
        return await task

    async def run_once(
        self, trigger_source: TriggerSource = TriggerSource.CLI
    ) -> tuple[TriggerResult, IngestionRun | None]:
        """Trigger a run and wait for it to finish."""
        result = await self.trigger_run_now(trigger_source)
        if not result.accepted:
            return result, None
        return result, await self.wait_for_current()

    def next_run_at(self) -> datetime | None:
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(SCHEDULED_JOB_ID)
        return job.next_run_time if job is not None else None

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            enabled=self.enabled,
            running_correlation_id=self.running_correlation_id,
            next_run_at=self.next_run_at(),
            schedule=self.config.schedule,
            timezone=self.config.timezone,
        )

    async def shutdown(self) -> None:
        """
        Stop scheduling, signal the active run and wait for it.

        The run stops after the candidate being persisted and records
        itself as partial.
        """
        self._shutting_down = True
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        self._cancel_event.set()
        task = self._current_task
        if task is not None and not task.done():
            logger.info(f"Waiting for run {self._current_correlation_id} to stop")
            await asyncio.gather(task, return_exceptions=True)
