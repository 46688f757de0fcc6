import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, String, Date, DateTime, Boolean, Integer, Text, JSON, update
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.future import select
from sqlalchemy.pool import StaticPool

from schedule_engine.domain.schedule import Schedule
from schedule_engine.errors import ScheduleNotFoundError, StaleScheduleError
from schedule_engine.storages.protocol import ScheduleCriteria, ScheduleStore

logger = logging.getLogger(__name__)

Base = declarative_base()

class ScheduleModel(Base):
    __tablename__ = 'schedules'

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False, default="Schedule")

    frequency = Column(String, nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date)
    time_of_day = Column(String, nullable=False)
    end_time = Column(String)
    interval_value = Column(Integer)
    interval_unit = Column(String)
    interval = Column(Integer)
    week_days = Column(JSON, nullable=False, default=list)
    month_days = Column(JSON, nullable=False, default=list)
    months = Column(JSON, nullable=False, default=list)
    timezone = Column(String, nullable=False, default="UTC")
    cron_expression = Column(String)

    action = Column(String, nullable=False)
    entity_id = Column(String, index=True)
    actor_id = Column(String)
    data = Column(JSON, nullable=False, default=dict)

    status = Column(String, nullable=False, index=True)
    next_run_date = Column(DateTime(timezone=True), index=True)
    last_run_at = Column(DateTime(timezone=True))

    execution_count = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    failure_count = Column(Integer, nullable=False, default=0)
    last_execution_status = Column(String)
    last_error_message = Column(Text)
    execution_history = Column(JSON, nullable=False, default=list)

    retry_on_failure = Column(Boolean, nullable=False, default=True)
    max_retries = Column(Integer, nullable=False, default=1)
    current_retries = Column(Integer, nullable=False, default=0)
    retry_delay_minutes = Column(Integer, nullable=False, default=15)

    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True))


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    return value.astimezone(timezone.utc) if value is not None else None


class SqlAlchemyScheduleStore(ScheduleStore):
    def __init__(self, db_url: str, **engine_kwargs: Any):
        self.engine = create_async_engine(db_url, **engine_kwargs)
        self.async_session = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    async def create(self, schedule: Schedule) -> Schedule:
        async with self.async_session() as session:
            session.add(ScheduleModel(**self._schedule_to_columns(schedule)))
            await session.commit()
            logger.debug("Stored schedule %s", schedule.id)
            return schedule

    async def get(self, schedule_id: str) -> Optional[Schedule]:
        async with self.async_session() as session:
            result = await session.execute(select(ScheduleModel).filter_by(id=schedule_id))
            db_schedule = result.scalar_one_or_none()
            if db_schedule:
                return self._db_to_schedule(db_schedule)
            return None

    async def find(self, criteria: ScheduleCriteria) -> List[Schedule]:
        query = select(ScheduleModel)
        if criteria.status is not None:
            query = query.filter(ScheduleModel.status == criteria.status.value)
        if criteria.frequency is not None:
            query = query.filter(ScheduleModel.frequency == criteria.frequency.value)
        if criteria.action is not None:
            query = query.filter(ScheduleModel.action == criteria.action)
        if criteria.entity_id is not None:
            query = query.filter(ScheduleModel.entity_id == criteria.entity_id)
        if criteria.next_run_before is not None:
            query = query.filter(ScheduleModel.next_run_date < _utc(criteria.next_run_before))
        if criteria.next_run_after is not None:
            query = query.filter(ScheduleModel.next_run_date >= _utc(criteria.next_run_after))

        query = query.order_by(ScheduleModel.next_run_date.asc(), ScheduleModel.time_of_day.asc())
        query = query.offset(criteria.offset)
        if criteria.limit is not None:
            query = query.limit(criteria.limit)

        async with self.async_session() as session:
            result = await session.execute(query)
            return [self._db_to_schedule(db_schedule) for db_schedule in result.scalars()]

    async def update(self, schedule_id: str, patch: Dict[str, Any],
                     expected_version: Optional[int] = None) -> Schedule:
        async with self.async_session() as session:
            result = await session.execute(select(ScheduleModel).filter_by(id=schedule_id))
            db_schedule = result.scalar_one_or_none()
            if db_schedule is None:
                raise ScheduleNotFoundError(schedule_id)

            current = self._db_to_schedule(db_schedule)
            if expected_version is not None and current.version != expected_version:
                raise StaleScheduleError(schedule_id, expected_version)

            merged = current.model_dump()
            merged.update(patch)
            merged["version"] = current.version + 1
            merged["updated_at"] = datetime.now(timezone.utc)
            updated = Schedule.model_validate(merged)

            values = self._schedule_to_columns(updated)
            values.pop("id")
            statement = (
                update(ScheduleModel)
                .where(ScheduleModel.id == schedule_id, ScheduleModel.version == current.version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(statement)
            if result.rowcount == 0:
                await session.rollback()
                raise StaleScheduleError(schedule_id, current.version)
            await session.commit()
            return updated

    async def delete(self, schedule_id: str) -> bool:
        async with self.async_session() as session:
            result = await session.execute(select(ScheduleModel).filter_by(id=schedule_id))
            db_schedule = result.scalar_one_or_none()
            if db_schedule:
                await session.delete(db_schedule)
                await session.commit()
                return True
            return False

    def _schedule_to_columns(self, schedule: Schedule) -> Dict[str, Any]:
        return dict(
            id=schedule.id,
            title=schedule.title,
            frequency=schedule.frequency.value,
            start_date=schedule.start_date,
            end_date=schedule.end_date,
            time_of_day=schedule.time_of_day,
            end_time=schedule.end_time,
            interval_value=schedule.interval_value,
            interval_unit=schedule.interval_unit.value if schedule.interval_unit else None,
            interval=schedule.interval,
            week_days=list(schedule.week_days),
            month_days=list(schedule.month_days),
            months=list(schedule.months),
            timezone=schedule.timezone,
            cron_expression=schedule.cron_expression,
            action=schedule.action,
            entity_id=schedule.entity_id,
            actor_id=schedule.actor_id,
            data=schedule.data,
            status=schedule.status.value,
            next_run_date=_utc(schedule.next_run_date),
            last_run_at=_utc(schedule.last_run_at),
            execution_count=schedule.execution_count,
            success_count=schedule.success_count,
            failure_count=schedule.failure_count,
            last_execution_status=schedule.last_execution_status.value if schedule.last_execution_status else None,
            last_error_message=schedule.last_error_message,
            execution_history=[record.model_dump(mode="json") for record in schedule.execution_history],
            retry_on_failure=schedule.retry_on_failure,
            max_retries=schedule.max_retries,
            current_retries=schedule.current_retries,
            retry_delay_minutes=schedule.retry_delay_minutes,
            version=schedule.version,
            created_at=_utc(schedule.created_at),
            updated_at=_utc(schedule.updated_at),
        )

    def _db_to_schedule(self, db_schedule: ScheduleModel) -> Schedule:
        return Schedule.model_validate({
            column.key: getattr(db_schedule, column.key)
            for column in ScheduleModel.__table__.columns
        })


class InMemoryScheduleStore(SqlAlchemyScheduleStore):
    def __init__(self):
        super().__init__("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
