"""
Post-run bookkeeping on schedule records.
"""
import asyncio
import logging
import weakref
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from schedule_engine.config import EngineSettings
from schedule_engine.domain.job import EnqueueOptions, ExecutionOutcome
from schedule_engine.domain.schedule import ExecutionRecord, ExecutionStatus, Schedule, ScheduleStatus
from schedule_engine.errors import StaleScheduleError
from schedule_engine.queues.protocol import TaskQueue
from schedule_engine.recurrence import compute_next_run
from schedule_engine.storages.protocol import ScheduleStore

logger = logging.getLogger(__name__)

MAX_UPDATE_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionRecorder:
    """
    Writes the outcome of a run back to its schedule: counters, last status,
    bounded history, retry state and the next due date.

    Args:
        store: ScheduleStore holding the records.
        queue: TaskQueue used to enqueue engine-level retries. Without a queue,
            retries are counted but not enqueued.
        settings: EngineSettings (history limit, namespace, search horizon).
        clock: Callable returning the current UTC time.
    """

    def __init__(self, store: ScheduleStore, queue: Optional[TaskQueue] = None,
                 settings: Optional[EngineSettings] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.queue = queue
        self.settings = settings or EngineSettings()
        self.clock = clock
        # Held only while a record is in progress for that id.
        self._locks = weakref.WeakValueDictionary()

    def _lock_for(self, schedule_id: str) -> asyncio.Lock:
        lock = self._locks.get(schedule_id)
        if lock is None:
            lock = self._locks[schedule_id] = asyncio.Lock()
        return lock

    async def record_outcome(self, schedule_id: str, outcome: ExecutionOutcome) -> Optional[Schedule]:
        """
        Apply an execution outcome to a schedule.

        Returns the updated schedule, or None when the outcome was discarded
        (unknown or non-active schedule) or could not be stored. Store failures
        are logged and never raised, so a successful action is not turned into
        a failed job by a bookkeeping problem.
        """
        try:
            async with self._lock_for(schedule_id):
                return await self._record(schedule_id, outcome)
        except Exception:
            logger.exception("Failed to record %s outcome for schedule %s", outcome.status.value, schedule_id)
            return None

    async def _record(self, schedule_id: str, outcome: ExecutionOutcome) -> Optional[Schedule]:
        for _ in range(MAX_UPDATE_ATTEMPTS):
            schedule = await self.store.get(schedule_id)
            if schedule is None:
                logger.warning("Discarding outcome for unknown schedule %s", schedule_id)
                return None
            if not schedule.is_active:
                logger.info("Discarding outcome for schedule %s with status %s", schedule_id, schedule.status.value)
                return None

            now = self.clock()
            patch, retry_scheduled = self.apply_outcome(schedule, outcome, now)
            try:
                updated = await self.store.update(schedule_id, patch, expected_version=schedule.version)
            except StaleScheduleError:
                logger.debug("Schedule %s changed while recording, reloading", schedule_id)
                continue

            self._log(updated, outcome, retry_scheduled)
            if retry_scheduled:
                await self._enqueue_retry(updated)
            return updated

        logger.error("Giving up recording outcome for schedule %s after %d conflicting updates",
                     schedule_id, MAX_UPDATE_ATTEMPTS)
        return None

    def apply_outcome(self, schedule: Schedule, outcome: ExecutionOutcome, now: datetime) -> tuple:
        """
        Compute the patch an outcome produces on a schedule.

        Returns:
            tuple: ``(patch, retry_scheduled)``.
        """
        succeeded = outcome.status == ExecutionStatus.SUCCESS
        error_message = None if succeeded else (outcome.error_message or "Unknown error")

        history = list(schedule.execution_history)
        history.append(ExecutionRecord(executed_at=now, status=outcome.status, error_message=error_message))
        history = history[-self.settings.history_limit:]

        patch: Dict[str, Any] = {
            "execution_count": schedule.execution_count + 1,
            "success_count": schedule.success_count + (1 if succeeded else 0),
            "failure_count": schedule.failure_count + (0 if succeeded else 1),
            "last_execution_status": outcome.status,
            "last_error_message": error_message,
            "last_run_at": now,
            "execution_history": history,
        }

        if not succeeded and outcome.retryable and schedule.retry_on_failure \
                and schedule.current_retries < schedule.max_retries:
            patch["current_retries"] = schedule.current_retries + 1
            return patch, True

        patch["current_retries"] = 0
        if outcome.ends_occurrence:
            ran = schedule.model_copy(update={"last_run_at": now})
            next_run = compute_next_run(ran, now, horizon_days=self.settings.search_horizon_days)
            patch["next_run_date"] = next_run
            if next_run is None:
                patch["status"] = ScheduleStatus.COMPLETED
        return patch, False

    async def _enqueue_retry(self, schedule: Schedule) -> None:
        if self.queue is None:
            return
        options = EnqueueOptions(
            delay_ms=schedule.retry_delay_minutes * 60 * 1000,
            attempts=1,
            namespace=self.settings.namespace,
        )
        try:
            job_id = await self.queue.enqueue(schedule.action, schedule.job_payload(isRepeating=False, isRetry=True), options)
        except Exception:
            logger.exception("Failed to enqueue retry for schedule %s", schedule.id)
            return
        logger.info("Retry %d/%d for schedule %s in %d minute(s) (job %s)", schedule.current_retries,
                    schedule.max_retries, schedule.id, schedule.retry_delay_minutes, job_id)

    def _log(self, schedule: Schedule, outcome: ExecutionOutcome, retry_scheduled: bool) -> None:
        if outcome.status == ExecutionStatus.SUCCESS:
            logger.info("Schedule %s ('%s') succeeded, next run %s", schedule.id, schedule.title,
                        schedule.next_run_date.isoformat() if schedule.next_run_date else "none")
        elif not retry_scheduled:
            logger.error("Schedule %s ('%s') failed without further retries: %s", schedule.id, schedule.title,
                         schedule.last_error_message)
        if schedule.status == ScheduleStatus.COMPLETED:
            logger.info("Schedule %s ('%s') completed", schedule.id, schedule.title)
