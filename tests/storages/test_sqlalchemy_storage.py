import pytest
import pytest_asyncio
from datetime import date, datetime, timedelta, timezone

from schedule_engine.domain.schedule import (
    Schedule, ScheduleStatus, Frequency, ExecutionRecord, ExecutionStatus,
)
from schedule_engine.errors import ScheduleNotFoundError, StaleScheduleError
from schedule_engine.storages.protocol import ScheduleCriteria
from schedule_engine.storages.sqlalchemy import InMemoryScheduleStore, SqlAlchemyScheduleStore


@pytest_asyncio.fixture(scope="function")
async def sqlite_store():
    store = InMemoryScheduleStore()
    await store.create_tables()
    yield store
    await store.dispose()


def make_schedule(**kwargs) -> Schedule:
    fields = dict(
        title="Morning report",
        action="send_report",
        frequency=Frequency.WEEKLY,
        start_date=date(2024, 1, 1),
        time_of_day="09:00",
        week_days=[1, 3, 5],
        timezone="Europe/Paris",
        entity_id="42",
        actor_id="7",
        data={"channel": "email"},
        next_run_date=datetime(2024, 1, 3, 8, 0, tzinfo=timezone.utc),
    )
    fields.update(kwargs)
    return Schedule(**fields)


@pytest.mark.asyncio
async def test_create_and_get_schedule(sqlite_store: SqlAlchemyScheduleStore):
    schedule = make_schedule(id="sch_create")
    await sqlite_store.create(schedule)

    retrieved = await sqlite_store.get("sch_create")
    assert retrieved is not None
    assert retrieved.title == schedule.title
    assert retrieved.frequency == Frequency.WEEKLY
    assert retrieved.week_days == [1, 3, 5]
    assert retrieved.timezone == "Europe/Paris"
    assert retrieved.data == {"channel": "email"}
    assert retrieved.next_run_date == schedule.next_run_date
    assert retrieved.next_run_date.tzinfo is not None
    assert retrieved.version == 0


@pytest.mark.asyncio
async def test_get_missing_schedule(sqlite_store: SqlAlchemyScheduleStore):
    assert await sqlite_store.get("sch_missing") is None


@pytest.mark.asyncio
async def test_update_increments_version(sqlite_store: SqlAlchemyScheduleStore):
    schedule = await sqlite_store.create(make_schedule(id="sch_update"))
    record = ExecutionRecord(executed_at=datetime(2024, 1, 3, 8, 0, tzinfo=timezone.utc), status=ExecutionStatus.SUCCESS)

    updated = await sqlite_store.update(schedule.id, {
        "execution_count": 1,
        "success_count": 1,
        "last_execution_status": ExecutionStatus.SUCCESS,
        "execution_history": [record],
    }, expected_version=0)

    assert updated.version == 1
    assert updated.updated_at is not None

    retrieved = await sqlite_store.get(schedule.id)
    assert retrieved.version == 1
    assert retrieved.execution_count == 1
    assert retrieved.last_execution_status == ExecutionStatus.SUCCESS
    assert retrieved.execution_history == [record]


@pytest.mark.asyncio
async def test_update_with_stale_version_fails(sqlite_store: SqlAlchemyScheduleStore):
    schedule = await sqlite_store.create(make_schedule(id="sch_stale"))
    await sqlite_store.update(schedule.id, {"title": "First"}, expected_version=0)

    with pytest.raises(StaleScheduleError):
        await sqlite_store.update(schedule.id, {"title": "Second"}, expected_version=0)

    retrieved = await sqlite_store.get(schedule.id)
    assert retrieved.title == "First"


@pytest.mark.asyncio
async def test_update_missing_schedule(sqlite_store: SqlAlchemyScheduleStore):
    with pytest.raises(ScheduleNotFoundError):
        await sqlite_store.update("sch_missing", {"title": "Nope"})


@pytest.mark.asyncio
async def test_find_filters_and_orders(sqlite_store: SqlAlchemyScheduleStore):
    base = datetime(2024, 1, 3, 8, 0, tzinfo=timezone.utc)
    await sqlite_store.create(make_schedule(id="sch_late", next_run_date=base + timedelta(hours=5)))
    await sqlite_store.create(make_schedule(id="sch_early", next_run_date=base))
    await sqlite_store.create(make_schedule(id="sch_paused", next_run_date=base, status=ScheduleStatus.PAUSED))
    await sqlite_store.create(make_schedule(id="sch_other", next_run_date=base, action="other"))

    active = await sqlite_store.find(ScheduleCriteria(status=ScheduleStatus.ACTIVE, action="send_report"))
    assert [s.id for s in active] == ["sch_early", "sch_late"]

    window = await sqlite_store.find(ScheduleCriteria(
        status=ScheduleStatus.ACTIVE,
        next_run_after=base + timedelta(hours=1),
        next_run_before=base + timedelta(days=1),
    ))
    assert [s.id for s in window] == ["sch_late"]

    page = await sqlite_store.find(ScheduleCriteria(limit=2, offset=1))
    assert len(page) == 2


@pytest.mark.asyncio
async def test_delete_schedule(sqlite_store: SqlAlchemyScheduleStore):
    await sqlite_store.create(make_schedule(id="sch_delete"))

    assert await sqlite_store.delete("sch_delete") is True
    assert await sqlite_store.get("sch_delete") is None
    assert await sqlite_store.delete("sch_delete") is False
