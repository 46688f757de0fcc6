import asyncio
import logging
from datetime import datetime, timedelta, timezone

from schedule_engine import ScheduleEngine, EngineSettings, Schedule, Frequency, IntervalUnit
from schedule_engine.actions.http import HttpCallAction
from schedule_engine.queues.in_memory import AsyncioTaskQueue
from schedule_engine.storages.sqlalchemy import InMemoryScheduleStore

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

settings = EngineSettings(retry_backoff_seconds=5)
engine = ScheduleEngine(
    store=InMemoryScheduleStore(),
    queue=AsyncioTaskQueue(concurrency=settings.queue_concurrency),
    settings=settings,
)
engine.registry.register_action(HttpCallAction())


@engine.registry.action("print_message")
async def print_message(data, entity_id, actor_id):
    print(f"[{datetime.now().strftime('%H:%M:%S')}] {data.get('message')} (entity {entity_id}, actor {actor_id})")


async def main():
    await engine.start()

    first_run = datetime.now(timezone.utc) + timedelta(minutes=1)
    schedule = await engine.service.create_schedule(Schedule(
        title="Hydration reminder",
        action="print_message",
        frequency=Frequency.DAILY,
        start_date=first_run.date(),
        time_of_day=first_run.strftime("%H:%M"),
        interval_value=1,
        interval_unit=IntervalUnit.MINUTES,
        entity_id="42",
        actor_id="7",
        data={"message": "Drink a glass of water"},
    ))
    print(schedule.readable_string)

    try:
        await asyncio.sleep(150)
    finally:
        stored = await engine.service.get_schedule(schedule.id)
        print(f"Executions: {stored.execution_count}, last status: {stored.last_execution_status}")
        await engine.stop()

if __name__ == "__main__":
    asyncio.run(main())
