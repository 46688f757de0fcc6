import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from .schedule import ExecutionStatus


class JobState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

class RepeatOptions(BaseModel):
    """
    Fixed-interval repetition of a job until a deadline.
    """
    every_ms: int = Field(..., gt=0)
    until: datetime

class EnqueueOptions(BaseModel):
    delay_ms: int = Field(default=0, ge=0)
    attempts: int = Field(default=1, ge=1, description="Total attempts including the first one")
    backoff_ms: int = Field(default=0, ge=0, description="Fixed delay between two attempts")
    remove_on_fail: int = Field(default=0, ge=0, description="Failed jobs to keep, 0 keeps all")
    remove_on_complete: bool = True
    repeat: Optional[RepeatOptions] = None
    namespace: Optional[str] = None

class QueuedJob(BaseModel):
    """
    A transient unit of work living in the task queue.
    """
    id: str = Field(default_factory=lambda: f"job_{uuid.uuid4().hex[:12]}", description="Unique job identifier")
    action: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    options: EnqueueOptions = Field(default_factory=EnqueueOptions)
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    scheduled_for: Optional[datetime] = Field(None, description="Instant this firing was planned for, retries keep it")
    run_at: Optional[datetime] = Field(None, description="Instant the next attempt becomes due")
    finished_at: Optional[datetime] = None
    failed_reason: Optional[str] = None

    def model_post_init(self, __context: Any) -> None:
        if self.scheduled_for is None:
            self.scheduled_for = self.created_at + timedelta(milliseconds=self.options.delay_ms)
        if self.run_at is None:
            self.run_at = self.scheduled_for

    @property
    def namespace(self) -> Optional[str]:
        return self.options.namespace

    @property
    def schedule_id(self) -> Optional[str]:
        return self.payload.get("scheduleId")

    @property
    def is_final_attempt(self) -> bool:
        """True while running the last attempt the queue will make for this job."""
        return self.attempts_made + 1 >= self.options.attempts

class ExecutionOutcome(BaseModel):
    """
    Result of one schedule run as reported to the execution recorder.
    """
    status: ExecutionStatus
    error_message: Optional[str] = None
    retryable: bool = Field(default=True, description="False for configuration errors that a retry cannot fix")
    ends_occurrence: bool = Field(default=True, description="False for intermediate firings of a repeat window")

    @classmethod
    def success(cls, ends_occurrence: bool = True) -> "ExecutionOutcome":
        return cls(status=ExecutionStatus.SUCCESS, ends_occurrence=ends_occurrence)

    @classmethod
    def failure(cls, error_message: str, retryable: bool = True, ends_occurrence: bool = True) -> "ExecutionOutcome":
        return cls(status=ExecutionStatus.FAILED, error_message=error_message,
                   retryable=retryable, ends_occurrence=ends_occurrence)
