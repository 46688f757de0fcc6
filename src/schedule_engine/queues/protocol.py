from typing import Any, Awaitable, Callable, Dict, List, Protocol

from schedule_engine.domain.job import EnqueueOptions, JobState, QueuedJob

JobHandler = Callable[[QueuedJob], Awaitable[None]]


class TaskQueue(Protocol):
    """
    A durable, at-least-once delayed/repeating job queue.

    Attempts, backoff and repetition are handled by the queue itself. The handler
    registered with ``process`` raises to signal a failed attempt.
    """

    async def enqueue(self, action: str, payload: Dict[str, Any], options: EnqueueOptions) -> str:
        """Submit a job and return its ID."""
        ...

    async def list_jobs(self, states: List[JobState]) -> List[QueuedJob]:
        """List the jobs currently known in any of the given states."""
        ...

    async def remove_job(self, job_id: str) -> bool:
        """
        Remove a job that has not started yet. Return False if the job is unknown.
        Raises JobNotRemovableError for a job a worker is processing.
        """
        ...

    async def purge(self) -> int:
        """Remove every job that is not currently active and return how many were removed."""
        ...

    def process(self, handler: JobHandler) -> None:
        """Register the consumer invoked for every due job."""
        ...

    async def start(self) -> None:
        ...

    async def stop(self) -> None:
        ...
