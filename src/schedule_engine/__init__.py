"""
Recurring Schedule & Execution Engine

This package persists recurring schedules, enqueues the runs due each day on
a task queue and records the outcome of every run.

Core Concepts:

Schedule:
    A persisted recurrence rule (once, daily, weekly, monthly, yearly or a cron
    expression) bound to a named action and a target entity. Its
    ``next_run_date`` is the authoritative "due" field; execution counters,
    a bounded history and the retry state live on the same record.

Job:
    A transient unit of work in the task queue representing one run of a
    schedule, or a series of firings within a day for interval schedules.

Action:
    A handler registered under a name in the ActionRegistry and invoked with
    ``(data, entity_id, actor_id)`` when a job for it is processed.

Relationships:
    - The DailySynchronizer turns schedules due today into queued jobs.
    - The JobProcessor runs a job's action; the ExecutionRecorder writes the
      outcome back to the schedule and computes its next run.
"""

from .actions.registry import ActionRegistry
from .config import EngineSettings, configure_logging
from .domain import (
    Schedule, ScheduleStatus, Frequency, IntervalUnit, ExecutionStatus, ExecutionRecord,
    QueuedJob, JobState, EnqueueOptions, RepeatOptions, ExecutionOutcome,
)
from .engine import ScheduleEngine
from .errors import (
    ScheduleEngineError, InvalidScheduleError, ScheduleNotFoundError, StaleScheduleError,
    RegistryFrozenError, JobNotRemovableError,
)

__all__ = [
    "ActionRegistry", "EngineSettings", "configure_logging", "ScheduleEngine",
    "Schedule", "ScheduleStatus", "Frequency", "IntervalUnit", "ExecutionStatus", "ExecutionRecord",
    "QueuedJob", "JobState", "EnqueueOptions", "RepeatOptions", "ExecutionOutcome",
    "ScheduleEngineError", "InvalidScheduleError", "ScheduleNotFoundError", "StaleScheduleError",
    "RegistryFrozenError", "JobNotRemovableError",
]
