import logging
from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from pydantic import ValidationError

from schedule_engine.config import EngineSettings
from schedule_engine.domain.job import JobState
from schedule_engine.domain.schedule import RECURRENCE_FIELDS, Schedule, ScheduleStatus
from schedule_engine.errors import InvalidScheduleError, ScheduleNotFoundError
from schedule_engine.queues.protocol import TaskQueue
from schedule_engine.recurrence import (
    build_cron_expression, compute_next_run, is_due_before, is_due_today, occurrences_between,
)
from schedule_engine.storages.protocol import ScheduleCriteria, ScheduleStore
from schedule_engine.synchronizer import build_enqueue_options, build_job_payload, next_midnight

logger = logging.getLogger(__name__)

# Fields the engine maintains itself and callers cannot change through update_schedule.
READ_ONLY_FIELDS = frozenset({
    "id", "version", "created_at", "updated_at", "status", "next_run_date", "last_run_at",
    "execution_count", "success_count", "failure_count", "last_execution_status",
    "last_error_message", "execution_history", "current_retries",
})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScheduleService:
    """
    Administrative operations on schedules: create, update, pause, resume,
    cancel and delete, plus the read side used by callers of the engine.
    """

    def __init__(self, store: ScheduleStore, queue: Optional[TaskQueue] = None,
                 settings: Optional[EngineSettings] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.queue = queue
        self.settings = settings or EngineSettings()
        self.clock = clock

    async def create_schedule(self, schedule: Schedule) -> Schedule:
        """
        Store a new schedule with its derived cron expression and first due date.

        A schedule with no occurrence at all (a ONCE schedule in the past, an
        end_date already behind us) is stored as COMPLETED.

        Raises:
            InvalidScheduleError: If the recurrence rule cannot be evaluated.
        """
        now = self.clock()
        prepared = self._prepare(schedule, now)
        stored = await self.store.create(prepared)
        logger.info("Created schedule %s ('%s'), next run %s", stored.id, stored.title,
                    stored.next_run_date.isoformat() if stored.next_run_date else "none")
        await self._enqueue_if_due(stored)
        return stored

    async def get_schedule(self, schedule_id: str) -> Schedule:
        schedule = await self.store.get(schedule_id)
        if schedule is None:
            raise ScheduleNotFoundError(schedule_id)
        return schedule

    async def list_schedules(self, criteria: Optional[ScheduleCriteria] = None) -> List[Schedule]:
        return await self.store.find(criteria or ScheduleCriteria())

    async def list_due_today(self, now: Optional[datetime] = None) -> List[Schedule]:
        """
        ACTIVE schedules whose next run falls on today's date in their own timezone.
        """
        now = now or self.clock()
        candidates = await self.store.find(ScheduleCriteria(
            status=ScheduleStatus.ACTIVE,
            next_run_before=now + timedelta(days=2),
            next_run_after=now - timedelta(days=2),
        ))
        return [schedule for schedule in candidates if is_due_today(schedule, now)]

    async def update_schedule(self, schedule_id: str, changes: Dict[str, Any]) -> Schedule:
        """
        Apply changes to a schedule.

        Changing any recurrence field re-derives the cron expression and the next
        due date, and starts a fresh occurrence (``current_retries`` back to 0).

        Raises:
            ScheduleNotFoundError: If the schedule does not exist.
            InvalidScheduleError: If a field is read-only or the result is invalid.
        """
        read_only = READ_ONLY_FIELDS.intersection(changes)
        if read_only:
            raise InvalidScheduleError(f"Fields cannot be updated directly: {', '.join(sorted(read_only))}")

        current = await self.get_schedule(schedule_id)
        patch = dict(changes)
        try:
            candidate = Schedule.model_validate({**current.model_dump(), **patch})
        except ValidationError as e:
            raise InvalidScheduleError(str(e)) from e

        if RECURRENCE_FIELDS.intersection(changes):
            patch["cron_expression"] = build_cron_expression(candidate)
            patch["current_retries"] = 0
            if candidate.is_active:
                next_run = self._first_run(candidate.model_copy(update=patch), self.clock())
                patch["next_run_date"] = next_run
                if next_run is None:
                    patch["status"] = ScheduleStatus.COMPLETED

        updated = await self.store.update(schedule_id, patch, expected_version=current.version)
        logger.info("Updated schedule %s ('%s'): %s", updated.id, updated.title, ", ".join(sorted(changes)))
        if RECURRENCE_FIELDS.intersection(changes):
            await self._remove_pending_jobs(schedule_id)
            await self._enqueue_if_due(updated)
        return updated

    async def pause_schedule(self, schedule_id: str) -> Schedule:
        schedule = await self._set_status(schedule_id, ScheduleStatus.PAUSED, {})
        await self._remove_pending_jobs(schedule_id)
        return schedule

    async def cancel_schedule(self, schedule_id: str) -> Schedule:
        schedule = await self._set_status(schedule_id, ScheduleStatus.CANCELLED, {"next_run_date": None})
        await self._remove_pending_jobs(schedule_id)
        return schedule

    async def resume_schedule(self, schedule_id: str) -> Schedule:
        """
        Reactivate a paused schedule from now on. Runs missed while paused are skipped.
        """
        current = await self.get_schedule(schedule_id)
        if current.is_terminal:
            raise InvalidScheduleError(f"Schedule {schedule_id} is {current.status.value} and cannot be resumed")
        if current.is_active:
            return current

        now = self.clock()
        next_run = self._first_run(current, now)
        patch: Dict[str, Any] = {"current_retries": 0, "next_run_date": next_run}
        patch["status"] = ScheduleStatus.ACTIVE if next_run else ScheduleStatus.COMPLETED
        updated = await self.store.update(schedule_id, patch, expected_version=current.version)
        logger.info("Resumed schedule %s ('%s'), next run %s", updated.id, updated.title,
                    next_run.isoformat() if next_run else "none")
        await self._enqueue_if_due(updated)
        return updated

    async def delete_schedule(self, schedule_id: str) -> bool:
        await self._remove_pending_jobs(schedule_id)
        deleted = await self.store.delete(schedule_id)
        if deleted:
            logger.info("Deleted schedule %s", schedule_id)
        return deleted

    async def missed_runs(self, schedule_id: str, now: Optional[datetime] = None) -> List[datetime]:
        """
        Occurrences that fell between the last run (or the schedule's start) and now
        without being executed.
        """
        schedule = await self.get_schedule(schedule_id)
        now = now or self.clock()
        since = schedule.last_run_at
        if since is None:
            since = datetime.combine(schedule.start_date, time(0), tzinfo=schedule.zone) - timedelta(seconds=1)
        return occurrences_between(schedule, since, now)

    def _prepare(self, schedule: Schedule, now: datetime) -> Schedule:
        fields: Dict[str, Any] = {"cron_expression": build_cron_expression(schedule), "current_retries": 0}
        draft = schedule.model_copy(update=fields)
        if draft.is_active:
            next_run = self._first_run(draft, now)
            fields["next_run_date"] = next_run
            if next_run is None:
                fields["status"] = ScheduleStatus.COMPLETED
        try:
            return Schedule.model_validate({**schedule.model_dump(), **fields})
        except ValidationError as e:
            raise InvalidScheduleError(str(e)) from e

    def _first_run(self, schedule: Schedule, now: datetime) -> Optional[datetime]:
        start_of_day = datetime.combine(schedule.start_date, time(0), tzinfo=schedule.zone) - timedelta(seconds=1)
        reference = max(now, start_of_day.astimezone(timezone.utc))
        return compute_next_run(schedule, reference, horizon_days=self.settings.search_horizon_days)

    async def _set_status(self, schedule_id: str, status: ScheduleStatus, extra: Dict[str, Any]) -> Schedule:
        current = await self.get_schedule(schedule_id)
        if current.is_terminal:
            raise InvalidScheduleError(f"Schedule {schedule_id} is already {current.status.value}")
        updated = await self.store.update(schedule_id, {"status": status, **extra}, expected_version=current.version)
        logger.info("Schedule %s ('%s') is now %s", updated.id, updated.title, status.value)
        return updated

    async def _remove_pending_jobs(self, schedule_id: str) -> int:
        """
        Best-effort removal of the queued jobs of a schedule. A job already running
        finishes; its outcome is discarded because the schedule is no longer active.
        """
        if self.queue is None:
            return 0
        try:
            jobs = await self.queue.list_jobs([JobState.WAITING, JobState.DELAYED])
        except Exception:
            logger.exception("Failed to list queued jobs of schedule %s", schedule_id)
            return 0

        removed = 0
        for job in jobs:
            if job.schedule_id != schedule_id or job.namespace != self.settings.namespace:
                continue
            try:
                if await self.queue.remove_job(job.id):
                    removed += 1
            except Exception as e:
                logger.warning("Failed to remove job %s of schedule %s: %s", job.id, schedule_id, e)
        if removed:
            logger.info("Removed %d queued job(s) of schedule %s", removed, schedule_id)
        return removed

    async def _enqueue_if_due(self, schedule: Schedule) -> Optional[str]:
        """
        Enqueue the run of a schedule created or rescheduled after the daily
        synchronization, when it falls before the next one. Failures are logged;
        the next synchronization catches up.
        """
        if self.queue is None or not schedule.is_active:
            return None
        now = self.clock()
        if not is_due_before(schedule, next_midnight(now, ZoneInfo(self.settings.timezone))):
            return None
        try:
            options = build_enqueue_options(schedule, now, self.settings)
            job_id = await self.queue.enqueue(schedule.action, build_job_payload(schedule, options), options)
        except Exception:
            logger.exception("Failed to enqueue the next run of schedule %s", schedule.id)
            return None
        logger.info("Enqueued the next run of schedule %s ('%s') as job %s", schedule.id, schedule.title, job_id)
        return job_id
