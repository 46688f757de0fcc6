"""Daily synchronization of the task queue with the schedules due today."""

import asyncio
import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Set
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from schedule_engine.config import EngineSettings
from schedule_engine.domain.job import EnqueueOptions, JobState, RepeatOptions
from schedule_engine.domain.schedule import Schedule, ScheduleStatus
from schedule_engine.queues.protocol import TaskQueue
from schedule_engine.recurrence import (
    compute_next_run, has_expired, is_due_before, is_overdue, local_instant, occurrences_between, today_at,
)
from schedule_engine.storages.protocol import ScheduleCriteria, ScheduleStore

logger = logging.getLogger(__name__)

# Active jobs are left alone: removing them would kill a run that is in progress.
PURGE_STATES = [JobState.WAITING, JobState.DELAYED, JobState.COMPLETED, JobState.FAILED]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_midnight(now: datetime, zone: ZoneInfo) -> datetime:
    """UTC instant of the next midnight in ``zone``, when the next synchronization runs."""
    local = now.astimezone(zone)
    midnight = datetime.combine(local.date() + timedelta(days=1), time(0), tzinfo=zone)
    return midnight.astimezone(timezone.utc)


def seconds_until_midnight(now: datetime, zone: ZoneInfo) -> float:
    return max(0.0, (next_midnight(now, zone) - now).total_seconds())


def build_enqueue_options(schedule: Schedule, now: datetime, settings: EngineSettings) -> EnqueueOptions:
    """
    Queue options for the next run of a schedule.

    The job starts at ``next_run_date`` (immediately if that is past). Interval
    schedules repeat until ``end_time`` (23:59 by default) on the local day of
    that run, rolled over to the following day if it is not after the start.
    """
    zone = schedule.zone
    start = schedule.next_run_date or today_at(schedule.time_of_day, zone, now)
    delay_ms = max(0, int((start - now).total_seconds() * 1000))

    repeat = None
    interval_minutes = schedule.interval_minutes
    if interval_minutes:
        end_time = schedule.end_time or "23:59"
        run_day = start.astimezone(zone).date()
        until = local_instant(run_day, end_time, zone)
        if until <= max(start, now):
            until = local_instant(run_day + timedelta(days=1), end_time, zone)
        repeat = RepeatOptions(every_ms=interval_minutes * 60 * 1000, until=until)

    return EnqueueOptions(
        delay_ms=delay_ms,
        attempts=max(1, schedule.max_retries) if schedule.retry_on_failure else 1,
        backoff_ms=settings.retry_backoff_seconds * 1000,
        remove_on_fail=settings.failed_jobs_to_keep if schedule.retry_on_failure else 0,
        repeat=repeat,
        namespace=settings.namespace,
    )


def build_job_payload(schedule: Schedule, options: EnqueueOptions) -> Dict[str, Any]:
    if options.repeat is None:
        return schedule.job_payload()
    return schedule.job_payload(
        repeatEveryMs=options.repeat.every_ms,
        repeatUntil=options.repeat.until.isoformat(),
    )


class SyncReport(BaseModel):
    started_at: datetime
    purged: int = 0
    purge_failures: int = 0
    enqueued: int = 0
    enqueue_failures: int = 0
    completed: int = 0
    advanced: int = 0
    skipped_active: int = 0


class DailySynchronizer:
    """Rebuilds the queue from the schedules due today, at start and at every local midnight.

    Each run first removes this engine's pending and finished jobs, then enqueues
    one job per schedule whose ``next_run_date`` falls before the next midnight. Runs never overlap; a trigger arriving while a run
    is in progress is dropped. Failures are isolated per job and per schedule.

    Args:
        store: ScheduleStore with the schedule records.
        queue: TaskQueue to fill.
        settings: EngineSettings (local timezone, namespace, backoff).
        clock: Callable returning the current UTC time.
    """

    def __init__(
        self,
        store: ScheduleStore,
        queue: TaskQueue,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.queue = queue
        self.settings = settings or EngineSettings()
        self.clock = clock
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    # -- Lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        """Run once now, then at every local midnight."""
        if self._loop_task is not None:
            return
        await self.run()
        self._loop_task = asyncio.create_task(self._midnight_loop())
        logger.info("Daily synchronizer started (tz=%s)", self.settings.timezone)

    async def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
            logger.info("Daily synchronizer stopped")

    async def _midnight_loop(self) -> None:
        zone = ZoneInfo(self.settings.timezone)
        while True:
            await asyncio.sleep(seconds_until_midnight(self.clock(), zone) + 0.5)
            try:
                await self.run()
            except Exception:
                logger.exception("Daily synchronization failed")

    # -- Synchronization -------------------------------------------------------

    async def run(self) -> Optional[SyncReport]:
        """
        Synchronize the queue with today's schedules.

        Returns:
            Optional[SyncReport]: Counters of the run, or None if a run was already in progress.
        """
        if self._running:
            logger.warning("Daily synchronization already in progress, trigger ignored")
            return None
        self._running = True
        try:
            return await self._sync()
        finally:
            self._running = False

    async def _sync(self) -> SyncReport:
        now = self.clock()
        report = SyncReport(started_at=now)
        logger.info("Setting up schedules for today...")

        # Runs due before the next synchronization are enqueued by this one.
        until = next_midnight(now, ZoneInfo(self.settings.timezone))

        await self._purge(report)
        running = await self._running_schedule_ids()

        schedules = await self.store.find(ScheduleCriteria(
            status=ScheduleStatus.ACTIVE,
            next_run_before=until,
        ))
        for schedule in schedules:
            try:
                await self._sync_schedule(schedule, now, until, running, report)
            except Exception:
                report.enqueue_failures += 1
                logger.exception("Failed to set up schedule %s ('%s')", schedule.id, schedule.title)

        logger.info(
            "Daily schedules set up: %d enqueued, %d advanced, %d completed, %d still running, %d failed",
            report.enqueued, report.advanced, report.completed, report.skipped_active, report.enqueue_failures,
        )
        return report

    async def _purge(self, report: SyncReport) -> None:
        try:
            jobs = await self.queue.list_jobs(PURGE_STATES)
        except Exception:
            report.purge_failures += 1
            logger.exception("Failed to list queued jobs, previous jobs are kept")
            return

        for job in jobs:
            if job.namespace != self.settings.namespace:
                continue
            try:
                if await self.queue.remove_job(job.id):
                    report.purged += 1
            except Exception as e:
                report.purge_failures += 1
                logger.error("Failed to remove job %s: %s", job.id, e)
        logger.info("Removed %d previous job(s) from the queue", report.purged)

    async def _running_schedule_ids(self) -> Set[str]:
        try:
            jobs = await self.queue.list_jobs([JobState.ACTIVE])
        except Exception:
            logger.exception("Failed to list active jobs")
            return set()
        return {
            job.schedule_id for job in jobs
            if job.namespace == self.settings.namespace and job.schedule_id
        }

    async def _sync_schedule(self, schedule: Schedule, now: datetime, until: datetime, running: Set[str],
                             report: SyncReport) -> None:
        if has_expired(schedule, now):
            await self._complete(schedule, report, "expired")
            return

        if is_overdue(schedule, now):
            schedule = await self._advance(schedule, now, report)
            if schedule is None:
                return

        if not is_due_before(schedule, until):
            return

        if schedule.id in running:
            report.skipped_active += 1
            logger.info("Schedule %s ('%s') is still running, not enqueued again", schedule.id, schedule.title)
            return

        options = build_enqueue_options(schedule, now, self.settings)
        job_id = await self.queue.enqueue(schedule.action, build_job_payload(schedule, options), options)
        report.enqueued += 1
        logger.info("Scheduled job: '%s' at %s (%s %s, job %s)", schedule.title, schedule.next_run_date.isoformat(),
                    schedule.time_of_day, schedule.timezone, job_id)

    async def _advance(self, schedule: Schedule, now: datetime, report: SyncReport) -> Optional[Schedule]:
        missed = occurrences_between(schedule, schedule.next_run_date - timedelta(seconds=1), now)
        logger.warning("Schedule %s ('%s') missed %d run(s) since %s", schedule.id, schedule.title,
                       len(missed), schedule.next_run_date.isoformat())

        next_run = compute_next_run(schedule, now, horizon_days=self.settings.search_horizon_days)
        if next_run is None:
            await self._complete(schedule, report, "has no run left after missed runs")
            return None

        updated = await self.store.update(
            schedule.id,
            {"next_run_date": next_run, "current_retries": 0},
            expected_version=schedule.version,
        )
        report.advanced += 1
        logger.info("Schedule %s ('%s') moved to %s", schedule.id, schedule.title, next_run.isoformat())
        return updated

    async def _complete(self, schedule: Schedule, report: SyncReport, reason: str) -> None:
        await self.store.update(
            schedule.id,
            {"status": ScheduleStatus.COMPLETED, "next_run_date": None},
            expected_version=schedule.version,
        )
        report.completed += 1
        logger.info("Schedule %s ('%s') %s, marked completed", schedule.id, schedule.title, reason)
