"""
Scheduled re-checks of every active monitoring job.

SCHEDULING:
- APScheduler AsyncIOScheduler, one CronTrigger job (default 09:00 daily,
  Asia/Ho_Chi_Minh).
- max_instances=1 + coalesce=True: a batch never overlaps the previous one,
  and missed fires collapse into a single run.

BATCH:
1. Load active jobs from Supabase.
2. Execute them strictly one at a time, sleeping job_delay_seconds between
   jobs to stay polite to csgt.vn.
3. Notify each job's chat with its result.
4. A single job failure is logged and counted; the batch continues.

CIRCUIT BREAKER:
- Three consecutive batches in which every job failed send an admin alert.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from phatnguoi import store
from phatnguoi.config import settings
from phatnguoi.execution import CronJobExecutor
from phatnguoi.notifier import send_admin_alert, send_cron_job_notification

logger = logging.getLogger(__name__)

_JOB_ID = "violation_checks"
_MAX_CONSECUTIVE_FAILED_BATCHES = 3


class ViolationScheduler:
    def __init__(
        self,
        executor: CronJobExecutor,
        schedule: str | None = None,
        timezone: str | None = None,
        job_delay_seconds: float | None = None,
        enabled: bool | None = None,
        notify=send_cron_job_notification,
    ):
        self._executor = executor
        self._schedule = schedule or settings.cron_schedule
        self._timezone = timezone or settings.timezone
        self._job_delay = (
            job_delay_seconds if job_delay_seconds is not None
            else settings.cron_job_delay_seconds
        )
        self._enabled = settings.cron_enabled if enabled is None else enabled
        self._notify = notify
        self._scheduler: AsyncIOScheduler | None = None
        self._active_batches = 0
        self._batches_idle = asyncio.Event()
        self._batches_idle.set()

        self.batches = 0
        self.total_jobs = 0
        self.successful_jobs = 0
        self.failed_jobs = 0
        self.last_execution: datetime | None = None
        self._consecutive_failed_batches = 0

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def _trigger(self, expression: str) -> CronTrigger:
        return CronTrigger.from_crontab(expression, timezone=ZoneInfo(self._timezone))

    def start(self) -> None:
        if not self._enabled:
            logger.info("Scheduled violation checks are disabled")
            return
        if self.running:
            logger.warning("Scheduler already running")
            return

        self._scheduler = AsyncIOScheduler(timezone=ZoneInfo(self._timezone))
        self._scheduler.add_job(
            self.run_scheduled_jobs,
            self._trigger(self._schedule),
            id=_JOB_ID,
            name=_JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        logger.info(
            "Scheduler started: %r (%s), next run %s",
            self._schedule, self._timezone, self.next_execution_time(),
        )

    async def stop(self) -> None:
        """Stop firing new batches, wait for an in-flight batch, then shut down.

        The APScheduler executor cancels pending job futures on shutdown, so
        the scheduler is paused and the running batch awaited first.
        """
        if not self.running:
            return
        self._scheduler.pause()
        if not self._batches_idle.is_set():
            logger.info("Waiting for the in-flight violation check batch to finish")
        await self._batches_idle.wait()
        self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Scheduler stopped")

    async def run_scheduled_jobs(self) -> None:
        self._active_batches += 1
        self._batches_idle.clear()
        try:
            await self._run_batch()
        finally:
            self._active_batches -= 1
            if self._active_batches == 0:
                self._batches_idle.set()

    async def _run_batch(self) -> None:
        try:
            jobs = store.get_all_active_cron_jobs()
        except Exception:
            logger.error("Failed to load active cron jobs", exc_info=True)
            return

        self.batches += 1
        self.last_execution = datetime.now(ZoneInfo(self._timezone))
        if not jobs:
            logger.info("No active cron jobs to run")
            return

        logger.info("Running %d scheduled violation checks", len(jobs))
        batch_failures = 0

        for i, job in enumerate(jobs):
            if i > 0 and self._job_delay > 0:
                await asyncio.sleep(self._job_delay)

            self.total_jobs += 1
            try:
                result = await self._executor.execute(job)
            except Exception:
                logger.error("Unexpected error executing cron job %s", job.id, exc_info=True)
                self.failed_jobs += 1
                batch_failures += 1
                continue

            if result.success:
                self.successful_jobs += 1
            else:
                self.failed_jobs += 1
                batch_failures += 1

            try:
                await self._notify(job, result)
            except Exception:
                logger.error("Notification failed for cron job %s", job.id, exc_info=True)

        logger.info(
            "Scheduled batch finished: %d/%d succeeded",
            len(jobs) - batch_failures, len(jobs),
        )
        await self._track_batch_outcome(all_failed=batch_failures == len(jobs))

    async def _track_batch_outcome(self, all_failed: bool) -> None:
        if not all_failed:
            self._consecutive_failed_batches = 0
            return

        self._consecutive_failed_batches += 1
        if self._consecutive_failed_batches >= _MAX_CONSECUTIVE_FAILED_BATCHES:
            logger.critical(
                "Every scheduled lookup failed for %d consecutive batches. Sending admin alert.",
                self._consecutive_failed_batches,
            )
            await send_admin_alert(
                "csgt.vn lookups failing",
                f"Every scheduled violation lookup has failed for "
                f"{self._consecutive_failed_batches} consecutive batches.\n\n"
                "The site may be down, blocking us, or the captcha solver is failing.",
            )

    async def execute_now(self) -> None:
        """Run a batch immediately, outside the cron schedule."""
        logger.info("Manual trigger of scheduled violation checks")
        await self.run_scheduled_jobs()

    def next_execution_time(self) -> datetime | None:
        if self.running:
            job = self._scheduler.get_job(_JOB_ID)
            return job.next_run_time if job else None
        return self._trigger(self._schedule).get_next_fire_time(
            None, datetime.now(ZoneInfo(self._timezone)),
        )

    def update_schedule(self, expression: str) -> None:
        """Switch to a new cron expression. Raises ValueError if invalid."""
        trigger = self._trigger(expression)
        self._schedule = expression
        self._executor.schedule = expression
        if self.running:
            self._scheduler.reschedule_job(_JOB_ID, trigger=trigger)
        logger.info("Schedule updated to %r", expression)

    def get_stats(self) -> dict:
        next_run = self.next_execution_time()
        return {
            "enabled": self._enabled,
            "running": self.running,
            "schedule": self._schedule,
            "timezone": self._timezone,
            "batches": self.batches,
            "total_jobs": self.total_jobs,
            "successful_jobs": self.successful_jobs,
            "failed_jobs": self.failed_jobs,
            "last_execution": self.last_execution.isoformat() if self.last_execution else None,
            "next_execution": next_run.isoformat() if next_run else None,
        }
