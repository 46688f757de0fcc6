from .schedule import (
    Schedule, ScheduleStatus, Frequency, IntervalUnit, ExecutionStatus, ExecutionRecord,
)
from .job import QueuedJob, JobState, EnqueueOptions, RepeatOptions, ExecutionOutcome

__all__ = [
    "Schedule", "ScheduleStatus", "Frequency", "IntervalUnit", "ExecutionStatus", "ExecutionRecord",
    "QueuedJob", "JobState", "EnqueueOptions", "RepeatOptions", "ExecutionOutcome",
]
