import asyncio
import logging
from datetime import date

from celery import Celery
from sqlalchemy.pool import NullPool

from schedule_engine import ScheduleEngine, EngineSettings, Schedule, Frequency
from schedule_engine.queues.celery import CeleryTaskQueue
from schedule_engine.storages.sqlalchemy import SqlAlchemyScheduleStore

logging.basicConfig(level=logging.INFO)

settings = EngineSettings(broker_url="redis://localhost:6379/2")

celery_app = Celery('schedule_engine_app', broker=settings.broker_url, backend='redis://localhost:6379/3')
celery_app.conf.update(
    task_always_eager=False,
    task_eager_propagates=False,
)

# Each Celery task runs its own event loop, so connections must not be pooled across tasks
store = SqlAlchemyScheduleStore(db_url="sqlite+aiosqlite:///./schedules.db", poolclass=NullPool)
queue = CeleryTaskQueue(celery_app, name=settings.namespace)
engine = ScheduleEngine(store=store, queue=queue, settings=settings)


@engine.registry.action("send_digest")
def send_digest(data, entity_id, actor_id):
    print(f"Sending {data.get('kind', 'weekly')} digest to user {actor_id}")


# Workers process jobs without starting the engine
queue.process(engine.processor.process)


async def main() -> None:
    await engine.start()
    schedule = await engine.service.create_schedule(Schedule(
        title="Weekly digest",
        action="send_digest",
        frequency=Frequency.WEEKLY,
        week_days=[1],
        start_date=date.today(),
        time_of_day="08:30",
        timezone="Europe/Paris",
        actor_id="7",
        data={"kind": "weekly"},
    ))
    print(schedule.readable_string)
    # Keeps the daily synchronizer running
    await asyncio.Event().wait()

if __name__ == "__main__":
    # create worker in other thread
    import threading
    def start_worker() -> None:
        import os
        os.system("celery -A examples.celery_queue.celery_app worker -P solo --loglevel=info")

    worker_thread = threading.Thread(target=start_worker)
    worker_thread.start()

    asyncio.run(main())

    worker_thread.join()
