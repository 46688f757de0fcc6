"""Dispatches due queue jobs to registered actions."""

import inspect
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from schedule_engine.actions.registry import ActionRegistry
from schedule_engine.domain.job import ExecutionOutcome, QueuedJob
from schedule_engine.recorder import ExecutionRecorder
from schedule_engine.storages.protocol import ScheduleStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobProcessor:
    """Queue consumer: resolves a job's action, runs it and reports the outcome.

    Handler exceptions are re-raised so the queue applies its own attempts and
    backoff. The recorder hears about a job once, when it reaches a terminal
    state: on success, or when the final attempt fails.

    Args:
        registry: ActionRegistry resolving action names.
        recorder: ExecutionRecorder receiving terminal outcomes.
        store: ScheduleStore used to skip jobs whose schedule is no longer active.
        clock: Callable returning the current UTC time.
    """

    def __init__(
        self,
        registry: ActionRegistry,
        recorder: ExecutionRecorder,
        store: Optional[ScheduleStore] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._registry = registry
        self._recorder = recorder
        self._store = store
        self._clock = clock

    async def process(self, job: QueuedJob) -> None:
        """Handle one attempt of a queued job."""
        data = dict(job.payload)
        schedule_id = data.get("scheduleId")
        entity_id = data.get("entityId")
        actor_id = data.get("actorId", data.get("userId"))

        logger.info("Processing job %s with action '%s' (schedule %s, attempt %d/%d)",
                    job.id, job.action, schedule_id, job.attempts_made + 1, job.options.attempts)

        handler = self._registry.get(job.action)
        if handler is None:
            logger.warning("No handler found for action '%s', job %s completed without running", job.action, job.id)
            if schedule_id:
                await self._recorder.record_outcome(schedule_id, ExecutionOutcome.failure(
                    f"No handler registered for action '{job.action}'",
                    retryable=False,
                    ends_occurrence=self._ends_occurrence(job),
                ))
            return

        if schedule_id and not await self._schedule_is_active(schedule_id):
            logger.info("Skipping job %s: schedule %s is no longer active", job.id, schedule_id)
            return

        try:
            result = handler(data, entity_id, actor_id)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            if job.is_final_attempt:
                logger.error("Job %s ('%s') failed on its final attempt: %s", job.id, job.action, e)
                if schedule_id:
                    await self._recorder.record_outcome(schedule_id, ExecutionOutcome.failure(
                        str(e) or type(e).__name__,
                        ends_occurrence=self._ends_occurrence(job),
                    ))
            else:
                logger.warning("Job %s ('%s') failed, the queue will retry: %s", job.id, job.action, e)
            raise

        logger.info("Job %s ('%s') completed successfully", job.id, job.action)
        if schedule_id:
            await self._recorder.record_outcome(
                schedule_id, ExecutionOutcome.success(ends_occurrence=self._ends_occurrence(job))
            )

    async def _schedule_is_active(self, schedule_id: str) -> bool:
        if self._store is None:
            return True
        try:
            schedule = await self._store.get(schedule_id)
        except Exception:
            # The recorder re-checks the status before writing anything.
            logger.exception("Could not load schedule %s, dispatching job anyway", schedule_id)
            return True
        return schedule is not None and schedule.is_active

    def _ends_occurrence(self, job: QueuedJob) -> bool:
        """
        A repeating job ends its occurrence on the last firing of its window.
        """
        repeat = job.options.repeat
        if repeat is None or not job.payload.get("isRepeating"):
            return True
        return self._clock() + timedelta(milliseconds=repeat.every_ms) > repeat.until
