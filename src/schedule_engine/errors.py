class ScheduleEngineError(Exception):
    """Base class for all errors raised by the schedule engine."""


class InvalidScheduleError(ScheduleEngineError, ValueError):
    """A schedule's recurrence or retry configuration is malformed."""


class ScheduleNotFoundError(ScheduleEngineError, KeyError):
    def __init__(self, schedule_id: str):
        super().__init__(f"Schedule '{schedule_id}' not found")
        self.schedule_id = schedule_id


class StaleScheduleError(ScheduleEngineError):
    """
    Raised by a store when an update was based on an outdated version of the record.
    """
    def __init__(self, schedule_id: str, expected_version: int):
        super().__init__(f"Schedule '{schedule_id}' was modified concurrently (expected version {expected_version})")
        self.schedule_id = schedule_id
        self.expected_version = expected_version


class RegistryFrozenError(ScheduleEngineError, RuntimeError):
    pass


class JobNotRemovableError(ScheduleEngineError, RuntimeError):
    """Raised when removing a job that a worker is currently processing."""
    def __init__(self, job_id: str):
        super().__init__(f"Job '{job_id}' is active and cannot be removed")
        self.job_id = job_id
