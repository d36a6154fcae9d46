"""Service container wiring queues, workers and the event layer together.

Usage:
    async with KitchenJobs(collaborators=collaborators) as jobs:
        await jobs.start_workers()
        result = await jobs.recipe_import.add_job(url, recipe_id, ctx)
        ...
        await jobs.stop_workers()
"""

import asyncio
import logging
from typing import Optional

import redis.asyncio as redis

from kitchen_jobs.config import Settings, get_settings
from kitchen_jobs.events.bus import EventBus
from kitchen_jobs.events.router import PolicyRouter
from kitchen_jobs.handlers import (
    CalendarSyncHandler,
    Collaborators,
    ImageImportHandler,
    JobHandler,
    MaintenanceHandler,
    NutritionHandler,
    PasteImportHandler,
    RecipeImportHandler,
)
from kitchen_jobs.policy import PolicyProvider, SettingsPolicyProvider
from kitchen_jobs.queue.job_queue import ALL_QUEUES, JobQueue
from kitchen_jobs.queue.scheduler import JobScheduler
from kitchen_jobs.queue.worker import WorkerPool

logger = logging.getLogger(__name__)


class KitchenJobs:
    """Owns the Redis connections and every queue, pool and handler."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        collaborators: Optional[Collaborators] = None,
        policy_provider: Optional[PolicyProvider] = None,
        redis_client: Optional[redis.Redis] = None,
        bus: Optional[EventBus] = None,
    ):
        self.settings = settings or get_settings()
        self.collaborators = collaborators or Collaborators()
        self.policy_provider = policy_provider or SettingsPolicyProvider()
        self._redis = redis_client
        self._owns_client = redis_client is None
        self.bus = bus or EventBus(redis_url=self.settings.redis_url, prefix=self.settings.key_prefix)
        self.router = PolicyRouter(self.bus, self.policy_provider)

        self.queues: dict[str, JobQueue] = {}
        self.pools: list[WorkerPool] = []
        self.scheduler: Optional[JobScheduler] = None
        self._scheduler_stop = asyncio.Event()
        self._scheduler_task: Optional[asyncio.Task] = None

        self.recipe_import: Optional[RecipeImportHandler] = None
        self.image_import: Optional[ImageImportHandler] = None
        self.paste_import: Optional[PasteImportHandler] = None
        self.nutrition: Optional[NutritionHandler] = None
        self.calendar_sync: Optional[CalendarSyncHandler] = None
        self.maintenance: Optional[MaintenanceHandler] = None

    @property
    def is_open(self) -> bool:
        return self._redis is not None and bool(self.queues)

    def client(self) -> redis.Redis:
        if self._redis is None:
            raise RuntimeError("KitchenJobs is not open")
        return self._redis

    async def open(self) -> None:
        """Connect to Redis and build the queues and handlers."""
        if self.is_open:
            return

        if self._redis is None:
            self._redis = redis.from_url(self.settings.redis_url, encoding="utf-8", decode_responses=True)
            self._owns_client = True

        for name in ALL_QUEUES:
            self.queues[name] = JobQueue(name, redis_client=self._redis, key_prefix=self.settings.key_prefix)

        await self.bus.open()

        self.recipe_import = RecipeImportHandler(self.queues[RecipeImportHandler.queue_name], self.router, self.collaborators)
        self.image_import = ImageImportHandler(self.queues[ImageImportHandler.queue_name], self.router, self.collaborators)
        self.paste_import = PasteImportHandler(self.queues[PasteImportHandler.queue_name], self.router, self.collaborators)
        self.nutrition = NutritionHandler(self.queues[NutritionHandler.queue_name], self.router, self.collaborators)
        self.calendar_sync = CalendarSyncHandler(self.queues[CalendarSyncHandler.queue_name], self.router, self.collaborators)
        self.maintenance = MaintenanceHandler(self.queues[MaintenanceHandler.queue_name], self.router, self.collaborators)
        self.scheduler = JobScheduler(self.maintenance.queue)

        logger.info(f"Kitchen jobs opened with {len(self.queues)} queues")

    def handlers(self) -> list[tuple[JobHandler, int]]:
        """Every handler with its configured concurrency."""
        s = self.settings
        return [
            (self.recipe_import, s.url_import_concurrency),
            (self.image_import, s.image_import_concurrency),
            (self.paste_import, s.paste_import_concurrency),
            (self.nutrition, s.nutrition_concurrency),
            (self.calendar_sync, s.calendar_sync_concurrency),
            (self.maintenance, s.maintenance_concurrency),
        ]

    async def start_workers(self, with_scheduler: bool = True) -> None:
        """Recover stalled jobs, start one pool per queue, register schedules."""
        if not self.is_open:
            await self.open()
        if self.pools:
            logger.warning("Workers already running")
            return

        for queue in self.queues.values():
            await queue.recover_stalled()

        for handler, concurrency in self.handlers():
            pool = handler.build_pool(concurrency=concurrency)
            pool.start()
            self.pools.append(pool)

        if with_scheduler:
            await self.maintenance.initialize_schedules(self.scheduler)
            self._scheduler_stop.clear()
            self._scheduler_task = asyncio.create_task(
                self.scheduler.run(self._scheduler_stop, interval=self.settings.scheduler_tick_seconds),
                name="scheduler",
            )

        logger.info(f"Started {len(self.pools)} worker pools")

    async def stop_workers(self) -> None:
        """Stop the scheduler and every pool; in-flight jobs get the grace period."""
        if self._scheduler_task is not None:
            self._scheduler_stop.set()
            await self._scheduler_task
            self._scheduler_task = None

        pools, self.pools = self.pools, []
        await asyncio.gather(*(pool.stop() for pool in pools))
        if pools:
            logger.info(f"Stopped {len(pools)} worker pools")

    async def close(self) -> None:
        await self.stop_workers()
        await self.bus.close()
        self.queues.clear()
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
        self._redis = None
        logger.info("Kitchen jobs closed")

    async def __aenter__(self) -> "KitchenJobs":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def queue_counts(self) -> dict[str, dict[str, int]]:
        return {name: await queue.counts() for name, queue in self.queues.items()}

    async def ping(self) -> bool:
        return bool(await self.client().ping())
