import pytest
from datetime import date, datetime, timedelta, timezone

from schedule_engine.domain.schedule import Schedule, ScheduleStatus, Frequency, IntervalUnit
from schedule_engine.domain.job import EnqueueOptions, QueuedJob, RepeatOptions


def test_schedule_defaults():
    schedule = Schedule(action="noop", start_date=date(2024, 1, 1))
    assert schedule.id.startswith("sch_")
    assert schedule.title == "Schedule"
    assert schedule.frequency == Frequency.ONCE
    assert schedule.status == ScheduleStatus.ACTIVE
    assert schedule.time_of_day == "00:00"
    assert schedule.timezone == "UTC"
    assert schedule.retry_on_failure is True
    assert schedule.max_retries == 1
    assert schedule.retry_delay_minutes == 15
    assert schedule.execution_history == []


@pytest.mark.parametrize("value", ["24:00", "9h30", "12:60", ""])
def test_invalid_time_of_day_is_rejected(value):
    with pytest.raises(ValueError):
        Schedule(action="noop", start_date=date(2024, 1, 1), time_of_day=value)


def test_time_of_day_is_normalized():
    schedule = Schedule(action="noop", start_date=date(2024, 1, 1), time_of_day="9:05")
    assert schedule.time_of_day == "09:05"


def test_end_date_before_start_date_is_rejected():
    with pytest.raises(ValueError):
        Schedule(action="noop", start_date=date(2024, 2, 1), end_date=date(2024, 1, 1))


def test_unknown_timezone_is_rejected():
    with pytest.raises(ValueError):
        Schedule(action="noop", start_date=date(2024, 1, 1), timezone="Mars/Olympus")


def test_out_of_range_patterns_are_rejected():
    with pytest.raises(ValueError):
        Schedule(action="noop", start_date=date(2024, 1, 1), month_days=[32])
    with pytest.raises(ValueError):
        Schedule(action="noop", start_date=date(2024, 1, 1), months=[0])
    with pytest.raises(ValueError):
        Schedule(action="noop", start_date=date(2024, 1, 1), week_days=[8])


def test_interval_value_requires_unit():
    with pytest.raises(ValueError):
        Schedule(action="noop", start_date=date(2024, 1, 1), interval_value=5)


def test_interval_minutes_prefers_value_and_unit():
    schedule = Schedule(action="noop", start_date=date(2024, 1, 1), interval_value=15,
                        interval_unit=IntervalUnit.MINUTES, interval=60)
    assert schedule.interval_minutes == 15
    assert Schedule(action="noop", start_date=date(2024, 1, 1), interval=60).interval_minutes == 60
    assert not Schedule(action="noop", start_date=date(2024, 1, 1)).is_repeating


def test_naive_datetimes_are_read_as_utc():
    schedule = Schedule(action="noop", start_date=date(2024, 1, 1), next_run_date=datetime(2024, 1, 2, 9, 0))
    assert schedule.next_run_date == datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc)


def test_numeric_identifiers_are_coerced():
    schedule = Schedule(action="noop", start_date=date(2024, 1, 1), entity_id=42, actor_id=7)
    assert schedule.entity_id == "42"
    assert schedule.actor_id == "7"


def test_job_payload_carries_routing_keys():
    schedule = Schedule(action="noop", start_date=date(2024, 1, 1), entity_id="e1", actor_id="u1",
                        data={"message": "hello"})
    payload = schedule.job_payload(isRetry=True)
    assert payload == {
        "message": "hello",
        "scheduleId": schedule.id,
        "entityId": "e1",
        "actorId": "u1",
        "isRepeating": False,
        "isRetry": True,
    }


def test_queued_job_run_at_follows_delay():
    options = EnqueueOptions(delay_ms=60_000, attempts=2)
    job = QueuedJob(action="noop", options=options, payload={"scheduleId": "sch_1"})
    assert job.run_at == job.created_at + timedelta(minutes=1)
    assert job.schedule_id == "sch_1"
    assert not job.is_final_attempt
    job.attempts_made = 1
    assert job.is_final_attempt


def test_repeat_interval_must_be_positive():
    with pytest.raises(ValueError):
        RepeatOptions(every_ms=0, until=datetime.now(timezone.utc))
