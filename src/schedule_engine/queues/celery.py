import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from celery import Celery

from schedule_engine.domain.job import EnqueueOptions, JobState, QueuedJob
from schedule_engine.errors import JobNotRemovableError
from .protocol import JobHandler, TaskQueue

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CeleryTaskQueue(TaskQueue):
    """
    Task queue backed by Celery.

    Each job is published as one Celery task message carrying the serialized
    ``QueuedJob``. Attempts use ``Task.retry`` with the job's fixed backoff and
    repeating jobs re-publish themselves after every firing until their window
    closes. Workers are separate processes; ``start``/``stop`` only log.

    Only jobs a worker has already received are visible to ``list_jobs``
    (``inspect().scheduled/reserved/active``). Completed and failed jobs live in
    the result backend and are not listed.
    """

    app: Celery

    def __init__(self, celery_app: Celery, name: str = "schedule"):
        self.app = celery_app
        self.name = name
        self.handler: Optional[JobHandler] = None
        queue = self

        @self.app.task(bind=True, name=f"schedule_engine.{name}.run_job")
        def run_job(task, job_data: Dict[str, Any]):
            job = QueuedJob.model_validate(job_data)
            job.attempts_made = task.request.retries
            job.state = JobState.ACTIVE
            try:
                asyncio.run(queue.run(job))
            except Exception as exc:
                if not job.is_final_attempt:
                    raise task.retry(exc=exc, countdown=job.options.backoff_ms / 1000.0,
                                     max_retries=job.options.attempts - 1)
                queue.publish_follow_up(job)
                raise
            queue.publish_follow_up(job)

        self._celery_task = run_job

    def process(self, handler: JobHandler) -> None:
        self.handler = handler

    async def start(self):
        logger.info("Celery queue '%s' ready, jobs run on Celery workers", self.name)

    async def stop(self):
        pass

    async def run(self, job: QueuedJob) -> None:
        if self.handler is None:
            logger.warning("No handler registered on queue '%s', job %s dropped", self.name, job.id)
            return
        await self.handler(job)

    async def enqueue(self, action: str, payload: Dict[str, Any], options: EnqueueOptions) -> str:
        state = JobState.DELAYED if options.delay_ms > 0 else JobState.WAITING
        job = QueuedJob(action=action, payload=dict(payload), options=options, state=state)
        await asyncio.to_thread(self._publish, job)
        logger.debug("Published job %s (%s) due at %s", job.id, action, job.run_at.isoformat())
        return job.id

    async def list_jobs(self, states: List[JobState]) -> List[QueuedJob]:
        inspector = self.app.control.inspect()
        sections = {
            JobState.DELAYED: inspector.scheduled,
            JobState.WAITING: inspector.reserved,
            JobState.ACTIVE: inspector.active,
        }
        jobs: List[QueuedJob] = []
        for state in states:
            fetch = sections.get(state)
            if fetch is None:
                continue
            replies = await asyncio.to_thread(fetch) or {}
            for entries in replies.values():
                for entry in entries:
                    job = self._job_from_entry(entry)
                    if job is not None:
                        job.state = state
                        jobs.append(job)
        return jobs

    async def remove_job(self, job_id: str) -> bool:
        active = await self.list_jobs([JobState.ACTIVE])
        if any(job.id == job_id for job in active):
            raise JobNotRemovableError(job_id)
        await asyncio.to_thread(self.app.control.revoke, job_id)
        return True

    async def purge(self) -> int:
        return await asyncio.to_thread(self.app.control.purge) or 0

    def publish_follow_up(self, job: QueuedJob) -> Optional[str]:
        """
        Publish the next firing of a repeating job, if its window is still open.
        """
        repeat = job.options.repeat
        if repeat is None:
            return None
        now = _now()
        step = timedelta(milliseconds=repeat.every_ms)
        next_at = job.scheduled_for + step
        if next_at <= now:
            next_at += step * ((now - next_at) // step + 1)
        if next_at > repeat.until:
            return None
        follow_up = QueuedJob(
            action=job.action,
            payload=dict(job.payload),
            options=job.options.model_copy(update={"delay_ms": int((next_at - now).total_seconds() * 1000)}),
            state=JobState.DELAYED,
            scheduled_for=next_at,
            run_at=next_at,
        )
        self._publish(follow_up)
        return follow_up.id

    def _publish(self, job: QueuedJob) -> None:
        countdown = max(0.0, (job.run_at - _now()).total_seconds())
        self._celery_task.apply_async(args=[job.model_dump(mode="json")], task_id=job.id, countdown=countdown)

    def _job_from_entry(self, entry: Dict[str, Any]) -> Optional[QueuedJob]:
        # inspect().scheduled() nests the request, reserved() and active() do not
        request = entry.get("request", entry)
        if request.get("name") != self._celery_task.name:
            return None
        args = request.get("args")
        if not isinstance(args, (list, tuple)) or not args or not isinstance(args[0], dict):
            return None
        return QueuedJob.model_validate(args[0])
