"""Composition root wiring the store, queue, registry and workers together."""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from schedule_engine.actions.registry import ActionRegistry
from schedule_engine.config import EngineSettings
from schedule_engine.processor import JobProcessor
from schedule_engine.queues.in_memory import AsyncioTaskQueue
from schedule_engine.queues.protocol import TaskQueue
from schedule_engine.recorder import ExecutionRecorder
from schedule_engine.service import ScheduleService
from schedule_engine.storages.protocol import ScheduleStore
from schedule_engine.storages.sqlalchemy import SqlAlchemyScheduleStore
from schedule_engine.synchronizer import DailySynchronizer, SyncReport

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScheduleEngine:
    """Composition root of the schedule engine.

    Register actions on ``registry`` before calling ``start``; the registry is
    frozen once the engine runs. Schedules are managed through ``service``.

    Args:
        store: ScheduleStore; defaults to a SqlAlchemyScheduleStore on ``settings.database_url``.
        queue: TaskQueue; defaults to an in-process AsyncioTaskQueue.
        registry: ActionRegistry; a new empty one by default.
        settings: EngineSettings; read from the environment by default.
        clock: Callable returning the current UTC time.
    """

    def __init__(
        self,
        store: Optional[ScheduleStore] = None,
        queue: Optional[TaskQueue] = None,
        registry: Optional[ActionRegistry] = None,
        settings: Optional[EngineSettings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.store = store or SqlAlchemyScheduleStore(self.settings.database_url)
        self.queue = queue or AsyncioTaskQueue(concurrency=self.settings.queue_concurrency,
                                               name=self.settings.namespace)
        self.registry = registry or ActionRegistry()

        self.recorder = ExecutionRecorder(self.store, self.queue, self.settings, clock)
        self.processor = JobProcessor(self.registry, self.recorder, self.store, clock)
        self.synchronizer = DailySynchronizer(self.store, self.queue, self.settings, clock)
        self.service = ScheduleService(self.store, self.queue, self.settings, clock)
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Freeze the registry, start consuming jobs and run the first synchronization."""
        if self._running:
            return
        create_tables = getattr(self.store, "create_tables", None)
        if create_tables is not None:
            await create_tables()

        self.registry.freeze()
        self.queue.process(self.processor.process)
        await self.queue.start()
        await self.synchronizer.start()
        self._running = True
        logger.info("Schedule engine started with %d action(s)", len(self.registry))

    async def stop(self) -> None:
        if not self._running:
            return
        await self.synchronizer.stop()
        await self.queue.stop()
        self._running = False
        logger.info("Schedule engine stopped")

    async def sync_now(self) -> Optional[SyncReport]:
        """Run a synchronization outside the midnight cycle, e.g. after bulk changes."""
        return await self.synchronizer.run()
