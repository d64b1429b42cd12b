"""
Execute one monitoring job: lookup, diff against the last snapshot, persist.

FLOW PER JOB:
1. Run the lookup pipeline for the job's plate.
2. Lookup failed -> return a failure result. History and run times untouched.
3. Read the latest stored snapshot (no snapshot, or a failed read -> first run).
4. Diff current vs previous by identity key.
5. Insert a lookup_history row, then update last_run / next_run.

Persistence failures after a successful lookup are logged and recorded on the
result; they never turn the job into a failure.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

from apscheduler.triggers.cron import CronTrigger

from phatnguoi import store
from phatnguoi.config import settings
from phatnguoi.csgt_client import InvalidInputError
from phatnguoi.diff import ViolationDiff, diff_violations
from phatnguoi.lookup import ViolationLookupService
from phatnguoi.models import CronJob, LookupResult

logger = logging.getLogger(__name__)


def compute_next_run(schedule: str, timezone: str, now: datetime | None = None) -> datetime:
    """Next fire time of a 5-field cron expression after `now`.

    An invalid expression falls back to tomorrow 09:00 in `timezone`.
    """
    tz = ZoneInfo(timezone)
    now = now.astimezone(tz) if now else datetime.now(tz)
    try:
        trigger = CronTrigger.from_crontab(schedule, timezone=tz)
        next_run = trigger.get_next_fire_time(None, now)
        if next_run is not None:
            return next_run
    except ValueError:
        logger.warning("Invalid cron expression %r, falling back to 09:00 tomorrow", schedule)
    tomorrow = now + timedelta(days=1)
    return tomorrow.replace(hour=9, minute=0, second=0, microsecond=0)


@dataclass
class ExecutionResult:
    success: bool
    cron_job: CronJob
    lookup_result: LookupResult | None = None
    diff: ViolationDiff | None = None
    has_changes: bool = False
    error: str | None = None
    persistence_errors: list[str] = field(default_factory=list)


class CronJobExecutor:
    """Runs monitoring jobs through the lookup pipeline and records history."""

    def __init__(
        self,
        lookup_service: ViolationLookupService,
        schedule: str | None = None,
        timezone: str | None = None,
    ):
        self._lookup_service = lookup_service
        self._schedule = schedule or settings.cron_schedule
        self._timezone = timezone or settings.timezone

    @property
    def schedule(self) -> str:
        return self._schedule

    @schedule.setter
    def schedule(self, value: str) -> None:
        self._schedule = value

    async def execute(self, job: CronJob) -> ExecutionResult:
        logger.info("Executing cron job %s (user %s, plate %s)", job.id, job.user_id, job.plate)

        try:
            lookup_result = await self._lookup_service.lookup_by_plate(job.plate, job.vehicle_type)
        except InvalidInputError as e:
            logger.error("Cron job %s has invalid input: %s", job.id, e)
            return ExecutionResult(success=False, cron_job=job, error=str(e))

        if not lookup_result.ok or lookup_result.data is None:
            logger.error("Lookup failed for cron job %s: %s", job.id, lookup_result.message)
            return ExecutionResult(
                success=False,
                cron_job=job,
                lookup_result=lookup_result,
                error=lookup_result.message or "Lookup failed",
            )

        data = lookup_result.data
        persistence_errors: list[str] = []

        try:
            previous = store.get_latest_lookup_history(job.id)
        except Exception as e:
            logger.error(
                "Failed to read lookup history for cron job %s, treating as first run",
                job.id, exc_info=True,
            )
            persistence_errors.append(f"history read: {e}")
            previous = None

        diff = diff_violations(previous, list(data.violations))
        if diff.has_changes:
            logger.info(
                "Cron job %s: %d new, %d removed violations (first_run=%s)",
                job.id, len(diff.added), len(diff.removed), diff.first_run,
            )

        try:
            store.create_lookup_history(job.id, data, has_new_violations=diff.has_changes)
        except Exception as e:
            logger.error("Failed to store lookup history for cron job %s", job.id, exc_info=True)
            persistence_errors.append(f"history write: {e}")

        now = datetime.now(ZoneInfo(self._timezone))
        try:
            store.update_cron_job_run_times(
                job.id, now, compute_next_run(self._schedule, self._timezone, now),
            )
        except Exception as e:
            logger.error("Failed to update run times for cron job %s", job.id, exc_info=True)
            persistence_errors.append(f"run times: {e}")

        logger.info("Cron job %s executed successfully", job.id)
        return ExecutionResult(
            success=True,
            cron_job=job,
            lookup_result=lookup_result,
            diff=diff,
            has_changes=diff.has_changes,
            persistence_errors=persistence_errors,
        )
