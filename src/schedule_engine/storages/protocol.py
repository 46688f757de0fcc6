from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from schedule_engine.domain.schedule import Schedule, ScheduleStatus, Frequency


class ScheduleCriteria(BaseModel):
    """
    Filter for ``ScheduleStore.find``. Unset fields do not filter.
    """
    status: Optional[ScheduleStatus] = None
    frequency: Optional[Frequency] = None
    action: Optional[str] = None
    entity_id: Optional[str] = None
    next_run_before: Optional[datetime] = Field(None, description="Exclusive upper bound on next_run_date")
    next_run_after: Optional[datetime] = Field(None, description="Inclusive lower bound on next_run_date")
    limit: Optional[int] = Field(None, gt=0)
    offset: int = Field(default=0, ge=0)


class ScheduleStore(Protocol):
    async def create(self, schedule: Schedule) -> Schedule:
        """Persist a new schedule and return it as stored."""
        ...

    async def get(self, schedule_id: str) -> Optional[Schedule]:
        """Retrieve a schedule by its ID."""
        ...

    async def find(self, criteria: ScheduleCriteria) -> List[Schedule]:
        """List schedules matching the criteria, ordered by next_run_date then time_of_day."""
        ...

    async def update(self, schedule_id: str, patch: Dict[str, Any],
                     expected_version: Optional[int] = None) -> Schedule:
        """
        Apply a partial update and return the stored schedule with its version incremented.
        Raises ScheduleNotFoundError if the schedule does not exist and StaleScheduleError
        if ``expected_version`` no longer matches.
        """
        ...

    async def delete(self, schedule_id: str) -> bool:
        """Delete a schedule by its ID. Return True if successful, False otherwise."""
        ...
