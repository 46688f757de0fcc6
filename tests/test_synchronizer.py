import asyncio
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio

from schedule_engine.config import EngineSettings
from schedule_engine.domain.job import EnqueueOptions, JobState
from schedule_engine.domain.schedule import Schedule, ScheduleStatus, Frequency, IntervalUnit
from schedule_engine.queues.in_memory import AsyncioTaskQueue
from schedule_engine.storages.sqlalchemy import InMemoryScheduleStore
from schedule_engine.synchronizer import (
    DailySynchronizer, build_enqueue_options, build_job_payload, next_midnight, seconds_until_midnight,
)

UTC = timezone.utc
NOW = datetime(2024, 1, 2, 0, 0, 30, tzinfo=UTC)
TODAY_9AM = datetime(2024, 1, 2, 9, 0, tzinfo=UTC)


def clock() -> datetime:
    return NOW


@pytest_asyncio.fixture(scope="function")
async def store():
    store = InMemoryScheduleStore()
    await store.create_tables()
    yield store
    await store.dispose()


@pytest.fixture(scope="function")
def queue():
    return AsyncioTaskQueue(name="test")


@pytest.fixture(scope="function")
def settings():
    return EngineSettings(namespace="schedule", retry_backoff_seconds=30, failed_jobs_to_keep=50)


@pytest.fixture(scope="function")
def synchronizer(store, queue, settings):
    return DailySynchronizer(store, queue, settings, clock)


def make_schedule(**kwargs) -> Schedule:
    fields = dict(
        action="send_report",
        frequency=Frequency.DAILY,
        start_date=date(2024, 1, 1),
        time_of_day="09:00",
        next_run_date=TODAY_9AM,
    )
    fields.update(kwargs)
    return Schedule(**fields)


async def pending_jobs(queue: AsyncioTaskQueue):
    return await queue.list_jobs([JobState.WAITING, JobState.DELAYED])


@pytest.mark.asyncio
async def test_run_enqueues_schedules_due_today(synchronizer, store, queue):
    due = await store.create(make_schedule(id="sch_due", entity_id="42"))
    await store.create(make_schedule(id="sch_tomorrow", next_run_date=TODAY_9AM + timedelta(days=1)))
    await store.create(make_schedule(id="sch_paused", status=ScheduleStatus.PAUSED))

    report = await synchronizer.run()

    assert report.enqueued == 1
    jobs = await pending_jobs(queue)
    assert len(jobs) == 1
    job = jobs[0]
    assert job.schedule_id == due.id
    assert job.action == "send_report"
    assert job.payload["entityId"] == "42"
    assert job.namespace == "schedule"
    assert job.options.delay_ms == int((TODAY_9AM - NOW).total_seconds() * 1000)
    assert job.options.attempts == 1
    assert job.options.backoff_ms == 30_000
    assert job.options.remove_on_fail == 50
    assert job.options.repeat is None


@pytest.mark.asyncio
async def test_run_enqueues_at_next_run_date_in_other_timezones(synchronizer, store, queue):
    # 08:00 in Los Angeles is 16:00 UTC, still the previous local day there at NOW
    await store.create(make_schedule(id="sch_la", timezone="America/Los_Angeles",
                                     time_of_day="08:00", next_run_date=datetime(2024, 1, 2, 16, 0, tzinfo=UTC)))
    # 08:00 in Tokyo tomorrow is 23:00 UTC today
    await store.create(make_schedule(id="sch_tokyo", timezone="Asia/Tokyo",
                                     time_of_day="08:00", next_run_date=datetime(2024, 1, 2, 23, 0, tzinfo=UTC)))
    await store.create(make_schedule(id="sch_later", timezone="Asia/Tokyo",
                                     time_of_day="10:00", next_run_date=datetime(2024, 1, 3, 1, 0, tzinfo=UTC)))

    report = await synchronizer.run()

    assert report.enqueued == 2
    delays = {job.schedule_id: job.options.delay_ms for job in await pending_jobs(queue)}
    assert delays == {
        "sch_la": int((datetime(2024, 1, 2, 16, 0, tzinfo=UTC) - NOW).total_seconds() * 1000),
        "sch_tokyo": int((datetime(2024, 1, 2, 23, 0, tzinfo=UTC) - NOW).total_seconds() * 1000),
    }


@pytest.mark.asyncio
async def test_window_ends_at_midnight_of_the_engine_timezone(store, queue):
    settings = EngineSettings(timezone="America/Los_Angeles")
    synchronizer = DailySynchronizer(store, queue, settings, clock)
    # next Los Angeles midnight is 08:00 UTC
    await store.create(make_schedule(id="sch_early", time_of_day="07:00",
                                     next_run_date=datetime(2024, 1, 2, 7, 0, tzinfo=UTC)))
    await store.create(make_schedule(id="sch_late"))

    report = await synchronizer.run()

    assert report.enqueued == 1
    assert [job.schedule_id for job in await pending_jobs(queue)] == ["sch_early"]


@pytest.mark.asyncio
async def test_run_is_idempotent(synchronizer, store, queue):
    await store.create(make_schedule(id="sch_a"))
    await store.create(make_schedule(id="sch_b", time_of_day="10:00",
                                     next_run_date=TODAY_9AM + timedelta(hours=1)))

    await synchronizer.run()
    second = await synchronizer.run()

    assert second.purged == 2
    jobs = await pending_jobs(queue)
    assert sorted(job.schedule_id for job in jobs) == ["sch_a", "sch_b"]


@pytest.mark.asyncio
async def test_purge_only_touches_own_finished_or_pending_jobs(synchronizer, store, queue):
    await store.create(make_schedule(id="sch_running"))
    foreign_id = await queue.enqueue("other", {}, EnqueueOptions(namespace="billing"))
    running_id = await queue.enqueue("send_report", {"scheduleId": "sch_running"},
                                     EnqueueOptions(namespace="schedule"))
    queue.jobs[running_id].state = JobState.ACTIVE

    report = await synchronizer.run()

    assert report.purged == 0
    assert report.skipped_active == 1
    assert report.enqueued == 0
    assert foreign_id in queue.jobs
    assert running_id in queue.jobs


@pytest.mark.asyncio
async def test_expired_schedule_is_completed(synchronizer, store, queue):
    await store.create(make_schedule(id="sch_expired", end_date=date(2024, 1, 1),
                                     next_run_date=datetime(2024, 1, 1, 9, 0, tzinfo=UTC)))

    report = await synchronizer.run()

    assert report.completed == 1
    stored = await store.get("sch_expired")
    assert stored.status == ScheduleStatus.COMPLETED
    assert stored.next_run_date is None
    assert await pending_jobs(queue) == []


@pytest.mark.asyncio
async def test_overdue_schedule_is_advanced_and_enqueued(synchronizer, store, queue):
    await store.create(make_schedule(id="sch_overdue", current_retries=1,
                                     next_run_date=datetime(2023, 12, 30, 9, 0, tzinfo=UTC)))

    report = await synchronizer.run()

    assert report.advanced == 1
    assert report.enqueued == 1
    stored = await store.get("sch_overdue")
    assert stored.next_run_date == TODAY_9AM
    assert stored.current_retries == 0
    assert [job.schedule_id for job in await pending_jobs(queue)] == ["sch_overdue"]


@pytest.mark.asyncio
async def test_overdue_once_schedule_is_completed(synchronizer, store, queue):
    await store.create(make_schedule(id="sch_once", frequency=Frequency.ONCE, start_date=date(2023, 12, 30),
                                     next_run_date=datetime(2023, 12, 30, 9, 0, tzinfo=UTC)))

    report = await synchronizer.run()

    assert report.completed == 1
    assert (await store.get("sch_once")).status == ScheduleStatus.COMPLETED
    assert await pending_jobs(queue) == []


@pytest.mark.asyncio
async def test_failing_enqueue_does_not_stop_the_run(synchronizer, store, queue, monkeypatch):
    await store.create(make_schedule(id="sch_bad", action="bad"))
    await store.create(make_schedule(id="sch_good", time_of_day="10:00",
                                     next_run_date=TODAY_9AM + timedelta(hours=1)))
    enqueue = queue.enqueue

    async def flaky_enqueue(action, payload, options):
        if action == "bad":
            raise ConnectionError("broker unavailable")
        return await enqueue(action, payload, options)

    monkeypatch.setattr(queue, "enqueue", flaky_enqueue)

    report = await synchronizer.run()

    assert report.enqueue_failures == 1
    assert report.enqueued == 1
    assert [job.schedule_id for job in await pending_jobs(queue)] == ["sch_good"]


@pytest.mark.asyncio
async def test_concurrent_runs_are_single_flight(synchronizer, store, queue, monkeypatch):
    await store.create(make_schedule(id="sch_a"))
    list_jobs = queue.list_jobs

    async def slow_list_jobs(states):
        await asyncio.sleep(0.05)
        return await list_jobs(states)

    monkeypatch.setattr(queue, "list_jobs", slow_list_jobs)

    first, second = await asyncio.gather(synchronizer.run(), synchronizer.run())

    assert (first is None) != (second is None)
    assert len(queue.jobs) == 1
    assert not synchronizer.running


@pytest.mark.asyncio
async def test_start_runs_immediately_and_stop_cancels_loop(synchronizer, store, queue):
    await store.create(make_schedule(id="sch_a"))

    await synchronizer.start()
    assert len(queue.jobs) == 1
    assert synchronizer._loop_task is not None

    await synchronizer.stop()
    assert synchronizer._loop_task is None


def test_repeat_window_for_interval_schedules(settings):
    schedule = make_schedule(interval_value=2, interval_unit=IntervalUnit.HOURS, end_time="18:00")
    options = build_enqueue_options(schedule, NOW, settings)

    assert options.repeat.every_ms == 2 * 60 * 60 * 1000
    assert options.repeat.until == datetime(2024, 1, 2, 18, 0, tzinfo=UTC)


def test_repeat_window_follows_the_local_day_of_the_run(settings):
    schedule = make_schedule(interval=30, timezone="America/Los_Angeles", time_of_day="08:00", end_time="12:00",
                             next_run_date=datetime(2024, 1, 2, 16, 0, tzinfo=UTC))
    options = build_enqueue_options(schedule, NOW, settings)

    assert options.delay_ms == int((datetime(2024, 1, 2, 16, 0, tzinfo=UTC) - NOW).total_seconds() * 1000)
    assert options.repeat.until == datetime(2024, 1, 2, 20, 0, tzinfo=UTC)


def test_repeat_window_rolls_over_when_already_closed(settings):
    schedule = make_schedule(interval=15, time_of_day="00:00", end_time="00:00",
                             next_run_date=datetime(2024, 1, 2, 0, 0, tzinfo=UTC))
    options = build_enqueue_options(schedule, NOW, settings)

    assert options.delay_ms == 0
    assert options.repeat.until == datetime(2024, 1, 3, 0, 0, tzinfo=UTC)


def test_repeat_window_defaults_to_end_of_day(settings):
    schedule = make_schedule(interval=30, timezone="Europe/Paris")
    options = build_enqueue_options(schedule, NOW, settings)

    assert options.repeat.until == datetime(2024, 1, 2, 23, 59, tzinfo=ZoneInfo("Europe/Paris"))


def test_attempts_follow_retry_policy(settings):
    with_retries = build_enqueue_options(make_schedule(max_retries=3), NOW, settings)
    assert with_retries.attempts == 3
    assert with_retries.remove_on_fail == 50

    without_retries = build_enqueue_options(make_schedule(retry_on_failure=False, max_retries=3), NOW, settings)
    assert without_retries.attempts == 1
    assert without_retries.remove_on_fail == 0

    no_retry_budget = build_enqueue_options(make_schedule(max_retries=0), NOW, settings)
    assert no_retry_budget.attempts == 1


def test_repeating_job_payload_carries_window(settings):
    schedule = make_schedule(interval=15, end_time="18:00", data={"report": "daily"})
    payload = build_job_payload(schedule, build_enqueue_options(schedule, NOW, settings))

    assert payload["report"] == "daily"
    assert payload["scheduleId"] == schedule.id
    assert payload["repeatEveryMs"] == 15 * 60 * 1000
    assert payload["repeatUntil"] == "2024-01-02T18:00:00+00:00"

    single = make_schedule()
    assert "repeatEveryMs" not in build_job_payload(single, build_enqueue_options(single, NOW, settings))


def test_seconds_until_midnight():
    zone = ZoneInfo("America/New_York")
    # 23:00 in New York, EST
    assert seconds_until_midnight(datetime(2024, 1, 3, 4, 0, tzinfo=UTC), zone) == 3600


def test_next_midnight_is_in_utc():
    assert next_midnight(NOW, ZoneInfo("UTC")) == datetime(2024, 1, 3, 0, 0, tzinfo=UTC)
    # NOW is 16:00:30 on Jan 1st in Los Angeles
    assert next_midnight(NOW, ZoneInfo("America/Los_Angeles")) == datetime(2024, 1, 2, 8, 0, tzinfo=UTC)
