import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from schedule_engine.domain.job import EnqueueOptions, JobState, QueuedJob
from schedule_engine.errors import JobNotRemovableError
from .protocol import JobHandler, TaskQueue

logger = logging.getLogger(__name__)

PENDING_STATES = (JobState.WAITING, JobState.DELAYED)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AsyncioTaskQueue(TaskQueue):
    """
    In-process task queue driven by asyncio timers.

    Every job gets a timer task that sleeps until the job is due and then runs
    the registered handler under a concurrency semaphore. Jobs live in memory
    only, so this queue suits tests, development and single-process deployments.
    """

    def __init__(self, concurrency: int = 4, name: str = "schedule"):
        self.name = name
        self.concurrency = concurrency
        self.jobs: Dict[str, QueuedJob] = {}
        self.timers: Dict[str, asyncio.Task] = {}
        self.handler: Optional[JobHandler] = None
        self.is_running: bool = False
        self._semaphore: Optional[asyncio.Semaphore] = None

    def process(self, handler: JobHandler) -> None:
        self.handler = handler

    async def start(self):
        """
        Start firing jobs, including the ones enqueued before the queue was started.
        """
        if self.is_running:
            return
        self.is_running = True
        self._semaphore = asyncio.Semaphore(self.concurrency)
        for job in list(self.jobs.values()):
            if job.state in PENDING_STATES:
                self._arm(job)
        logger.info("Queue '%s' started with %d pending job(s)", self.name, len(self.timers))

    async def stop(self):
        """
        Stop the queue. Jobs interrupted while running go back to waiting.
        """
        if not self.is_running:
            return
        self.is_running = False
        timers = list(self.timers.values())
        for timer in timers:
            if not timer.done():
                timer.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        self.timers.clear()
        logger.info("Queue '%s' stopped", self.name)

    async def enqueue(self, action: str, payload: Dict[str, Any], options: EnqueueOptions) -> str:
        state = JobState.DELAYED if options.delay_ms > 0 else JobState.WAITING
        job = QueuedJob(action=action, payload=dict(payload), options=options, state=state)
        self._add(job)
        logger.debug("Enqueued job %s (%s) due at %s", job.id, action, job.run_at.isoformat())
        return job.id

    async def list_jobs(self, states: List[JobState]) -> List[QueuedJob]:
        wanted = set(states)
        jobs = [job.model_copy(deep=True) for job in self.jobs.values() if job.state in wanted]
        return sorted(jobs, key=lambda job: job.run_at)

    async def remove_job(self, job_id: str) -> bool:
        job = self.jobs.get(job_id)
        if job is None:
            return False
        if job.state == JobState.ACTIVE:
            raise JobNotRemovableError(job_id)
        del self.jobs[job_id]
        timer = self.timers.pop(job_id, None)
        if timer and not timer.done():
            timer.cancel()
        return True

    async def purge(self) -> int:
        removed = 0
        for job_id, job in list(self.jobs.items()):
            if job.state != JobState.ACTIVE and await self.remove_job(job_id):
                removed += 1
        return removed

    async def drain(self, timeout: float = 5.0) -> None:
        """
        Wait until no job is running or due. Jobs delayed into the future are not waited for.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            now = _now()
            busy = [
                job for job in self.jobs.values()
                if job.state == JobState.ACTIVE or (job.state in PENDING_STATES and job.run_at <= now)
            ]
            if not busy:
                return
            if loop.time() >= deadline:
                raise asyncio.TimeoutError(f"{len(busy)} job(s) still busy on queue '{self.name}'")
            await asyncio.sleep(0.01)

    def _add(self, job: QueuedJob) -> None:
        self.jobs[job.id] = job
        if self.is_running:
            self._arm(job)

    def _arm(self, job: QueuedJob) -> None:
        delay = max(0.0, (job.run_at - _now()).total_seconds())
        self.timers[job.id] = asyncio.create_task(self._fire(job.id, delay))

    async def _fire(self, job_id: str, delay: float):
        try:
            await asyncio.sleep(delay)
            job = self.jobs.get(job_id)
            if job is None or job.state not in PENDING_STATES:
                return
            job.state = JobState.WAITING
            async with self._semaphore:
                if self.jobs.get(job_id) is job:
                    await self._run(job)
        finally:
            if self.timers.get(job_id) is asyncio.current_task():
                del self.timers[job_id]

    async def _run(self, job: QueuedJob):
        if self.handler is None:
            logger.warning("No handler registered on queue '%s', job %s stays waiting", self.name, job.id)
            return

        job.state = JobState.ACTIVE
        try:
            await self.handler(job)
        except asyncio.CancelledError:
            job.state = JobState.WAITING
            raise
        except Exception as e:
            job.attempts_made += 1
            job.failed_reason = str(e)
            if job.attempts_made < job.options.attempts:
                job.state = JobState.DELAYED
                job.run_at = _now() + timedelta(milliseconds=job.options.backoff_ms)
                logger.warning("Job %s (%s) failed attempt %d/%d: %s",
                               job.id, job.action, job.attempts_made, job.options.attempts, e)
                self._arm(job)
                return
            job.state = JobState.FAILED
            job.finished_at = _now()
            logger.error("Job %s (%s) failed after %d attempt(s): %s", job.id, job.action, job.attempts_made, e)
            self._trim_failed(job.options.remove_on_fail)
        else:
            job.attempts_made += 1
            job.state = JobState.COMPLETED
            job.finished_at = _now()
            if job.options.remove_on_complete:
                self.jobs.pop(job.id, None)

        self._schedule_repeat(job)

    def _schedule_repeat(self, job: QueuedJob) -> None:
        """
        Arm the next firing of a repeating job. The next firing is only created once
        the current one has finished, so firings of one job never overlap.
        """
        repeat = job.options.repeat
        if repeat is None:
            return
        now = _now()
        step = timedelta(milliseconds=repeat.every_ms)
        next_at = job.scheduled_for + step
        if next_at <= now:
            next_at += step * ((now - next_at) // step + 1)
        if next_at > repeat.until:
            logger.debug("Repeat window of job %s (%s) is over", job.id, job.action)
            return

        delay_ms = int((next_at - now).total_seconds() * 1000)
        follow_up = QueuedJob(
            action=job.action,
            payload=dict(job.payload),
            options=job.options.model_copy(update={"delay_ms": delay_ms}),
            state=JobState.DELAYED,
            scheduled_for=next_at,
            run_at=next_at,
        )
        self._add(follow_up)

    def _trim_failed(self, keep: int) -> None:
        if keep <= 0:
            return
        failed = sorted(
            (job for job in self.jobs.values() if job.state == JobState.FAILED),
            key=lambda job: job.finished_at,
        )
        for job in failed[:-keep]:
            self.jobs.pop(job.id, None)
