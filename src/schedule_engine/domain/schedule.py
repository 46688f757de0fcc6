import uuid
import logging
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator, model_validator

from schedule_engine.errors import InvalidScheduleError

logger = logging.getLogger(__name__)


class Frequency(str, Enum):
    ONCE = "ONCE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"
    CUSTOM = "CUSTOM"

class ScheduleStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

class IntervalUnit(str, Enum):
    MINUTES = "minutes"
    HOURS = "hours"

class ExecutionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


# Fields whose change invalidates the derived cron expression and next run date.
RECURRENCE_FIELDS = frozenset({
    "frequency", "start_date", "end_date", "time_of_day", "end_time",
    "interval_value", "interval_unit", "interval", "week_days",
    "month_days", "months", "timezone", "cron_expression",
})


def parse_time_of_day(value: str) -> tuple:
    """
    Split an ``HH:MM`` string into ``(hour, minute)``.

    Raises:
        InvalidScheduleError: If the string is not a valid wall-clock time.
    """
    try:
        hour_str, minute_str = value.split(":")
        hour, minute = int(hour_str), int(minute_str)
    except (AttributeError, ValueError):
        raise InvalidScheduleError(f"Invalid time '{value}', expected HH:MM")
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise InvalidScheduleError(f"Invalid time '{value}', expected HH:MM between 00:00 and 23:59")
    return hour, minute


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        # SQLite drops tzinfo; every stored instant is written in UTC.
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ExecutionRecord(BaseModel):
    """
    One entry of a schedule's bounded execution history.
    """
    executed_at: datetime
    status: ExecutionStatus
    error_message: Optional[str] = None

    @field_validator("executed_at")
    def check_timezone(cls, v: datetime) -> datetime:
        return _as_utc(v)


class Schedule(BaseModel):
    """
    A persisted recurrence rule bound to an action and a target entity,
    together with the bookkeeping of its past executions.
    """
    id: str = Field(default_factory=lambda: f"sch_{uuid.uuid4().hex[:12]}", description="Unique schedule identifier")
    title: str = Field(default="Schedule")

    # Recurrence
    frequency: Frequency = Frequency.ONCE
    start_date: date
    end_date: Optional[date] = Field(None, description="Last day (inclusive, in the schedule's timezone) the schedule may run")
    time_of_day: str = Field(default="00:00", description="Local wall-clock time, HH:MM")
    end_time: Optional[str] = Field(None, description="Local end of the repeat window, HH:MM")
    interval_value: Optional[int] = Field(None, gt=0)
    interval_unit: Optional[IntervalUnit] = None
    interval: Optional[int] = Field(None, gt=0, description="Legacy repeat interval in minutes")
    week_days: List[int] = Field(default_factory=list, description="0=Sunday ... 6=Saturday, 7 is accepted as Sunday")
    month_days: List[int] = Field(default_factory=list)
    months: List[int] = Field(default_factory=list)
    timezone: str = Field(default="UTC")
    cron_expression: Optional[str] = None

    # Target
    action: str
    entity_id: Optional[str] = None
    actor_id: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    # Status
    status: ScheduleStatus = ScheduleStatus.ACTIVE
    next_run_date: Optional[datetime] = None
    last_run_at: Optional[datetime] = None

    # Bookkeeping
    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_execution_status: Optional[ExecutionStatus] = None
    last_error_message: Optional[str] = None
    execution_history: List[ExecutionRecord] = Field(default_factory=list)

    # Retry policy
    retry_on_failure: bool = True
    max_retries: int = Field(default=1, ge=0)
    current_retries: int = Field(default=0, ge=0)
    retry_delay_minutes: int = Field(default=15, ge=0)

    version: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None

    @field_validator("entity_id", "actor_id", mode="before")
    def coerce_identifier(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v

    @field_validator("next_run_date", "last_run_at", "created_at", "updated_at")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @field_validator("time_of_day", "end_time")
    def check_time(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        hour, minute = parse_time_of_day(v)
        return f"{hour:02d}:{minute:02d}"

    @field_validator("week_days")
    def check_week_days(cls, v: List[int]) -> List[int]:
        if any(day < 0 or day > 7 for day in v):
            raise InvalidScheduleError(f"week_days must be between 0 and 7, got {v}")
        return sorted({day % 7 for day in v})

    @field_validator("month_days")
    def check_month_days(cls, v: List[int]) -> List[int]:
        if any(day < 1 or day > 31 for day in v):
            raise InvalidScheduleError(f"month_days must be between 1 and 31, got {v}")
        return sorted(set(v))

    @field_validator("months")
    def check_months(cls, v: List[int]) -> List[int]:
        if any(month < 1 or month > 12 for month in v):
            raise InvalidScheduleError(f"months must be between 1 and 12, got {v}")
        return sorted(set(v))

    @field_validator("timezone")
    def check_zone(cls, v: Optional[str]) -> str:
        if not v:
            return "UTC"
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise InvalidScheduleError(f"Unknown timezone '{v}'")
        return v

    @model_validator(mode="after")
    def check_consistency(self) -> "Schedule":
        if self.end_date is not None and self.end_date < self.start_date:
            raise InvalidScheduleError("end_date must not be before start_date")
        if self.interval_value is not None and self.interval_unit is None:
            raise InvalidScheduleError("interval_unit is required when interval_value is set")
        return self

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def is_active(self) -> bool:
        return self.status == ScheduleStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status in (ScheduleStatus.COMPLETED, ScheduleStatus.CANCELLED)

    @property
    def interval_minutes(self) -> Optional[int]:
        """
        Repeat interval within a day, in minutes. ``interval_value``/``interval_unit``
        take precedence over the legacy ``interval`` column.
        """
        if self.interval_value:
            if self.interval_unit == IntervalUnit.HOURS:
                return self.interval_value * 60
            return self.interval_value
        return self.interval

    @property
    def is_repeating(self) -> bool:
        return bool(self.interval_minutes)

    def job_payload(self, **extra: Any) -> Dict[str, Any]:
        """
        Payload of a queued run: the schedule's data plus the keys the job processor routes on.
        """
        payload = dict(self.data)
        payload.update(
            scheduleId=self.id,
            entityId=self.entity_id,
            actorId=self.actor_id,
            isRepeating=self.is_repeating,
        )
        payload.update(extra)
        return payload

    def format_schedule(self) -> str:
        text = f"{self.frequency.value} at {self.time_of_day} ({self.timezone})"
        if self.is_repeating:
            text += f", every {self.interval_minutes} min until {self.end_time or '23:59'}"
        if self.week_days:
            text += f", week days {self.week_days}"
        if self.month_days:
            text += f", month days {self.month_days}"
        if self.months:
            text += f", months {self.months}"
        text += f", from {self.start_date.isoformat()}"
        if self.end_date:
            text += f" to {self.end_date.isoformat()}"
        return text

    @property
    def readable_string(self) -> str:
        summary = f"Schedule '{self.title}' ({self.id}) -> action '{self.action}'"
        if self.entity_id:
            summary += f" for entity {self.entity_id}"
        next_run = self.next_run_date.isoformat() if self.next_run_date else "none"
        return f"{summary}\n{self.format_schedule()}\nStatus: {self.status.value}, next run: {next_run}"
