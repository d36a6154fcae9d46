"""Repeating job schedules.

Schedules live in a Redis hash next to the queue they feed. Registration on
process start replaces every existing schedule of the queue, so restarts
never accumulate duplicates.

Times are naive server-local wall-clock times, as an RRULE like "daily at
midnight" means local midnight. Run ids use the wall-clock value, never an
epoch timestamp.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from dateutil.rrule import rrulestr
from pydantic import BaseModel, model_validator

from .job_queue import AddStatus, JobQueue, validate_job_id

logger = logging.getLogger(__name__)


def run_job_id(key: str, run_at: datetime) -> str:
    """Job id of one scheduled run, e.g. ``image-cleanup_20240502T000000``."""
    return f"{key}_{run_at:%Y%m%dT%H%M%S}"


class RepeatSpec(BaseModel):
    """Either an RRULE (``FREQ=DAILY;BYHOUR=0;...``) or a fixed interval."""
    rrule: Optional[str] = None
    every_seconds: Optional[float] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "RepeatSpec":
        if (self.rrule is None) == (self.every_seconds is None):
            raise ValueError("set exactly one of rrule or every_seconds")
        return self

    def next_run(self, after: datetime) -> datetime:
        """First occurrence strictly after ``after``."""
        if self.every_seconds is not None:
            return after + timedelta(seconds=self.every_seconds)
        occurrence = rrulestr(self.rrule, dtstart=after.replace(microsecond=0)).after(after)
        if occurrence is None:
            raise ValueError(f"rrule has no future occurrence: {self.rrule}")
        return occurrence


class ScheduleEntry(BaseModel):
    key: str
    name: str
    payload: dict
    repeat: RepeatSpec
    next_run_at: Optional[datetime] = None


class JobScheduler:
    """Produces jobs on a queue according to registered schedules."""

    def __init__(self, queue: JobQueue):
        self.queue = queue

    @property
    def schedulers_key(self) -> str:
        return self.queue.key("schedulers")

    async def entries(self) -> list[ScheduleEntry]:
        raw = await self.queue.client().hgetall(self.schedulers_key)
        return [ScheduleEntry.model_validate_json(value) for value in raw.values()]

    async def register(
        self,
        key: str,
        name: str,
        payload: dict,
        repeat: RepeatSpec,
        now: Optional[datetime] = None,
    ) -> ScheduleEntry:
        """Create or overwrite one schedule."""
        validate_job_id(key)
        now = now or datetime.now()
        entry = ScheduleEntry(key=key, name=name, payload=payload, repeat=repeat, next_run_at=repeat.next_run(now))
        await self.queue.client().hset(self.schedulers_key, key, entry.model_dump_json())
        logger.info(f"Registered schedule {key} on {self.queue.name}, next run {entry.next_run_at.isoformat()}")
        return entry

    async def remove(self, key: str) -> bool:
        return bool(await self.queue.client().hdel(self.schedulers_key, key))

    async def clear(self) -> int:
        """Remove every schedule of this queue. Returns count removed."""
        existing = await self.entries()
        for entry in existing:
            await self.remove(entry.key)
        return len(existing)

    async def replace_all(self, entries: list[ScheduleEntry], now: Optional[datetime] = None) -> None:
        """Clear stale schedules, then register the given ones."""
        removed = await self.clear()
        for entry in entries:
            await self.register(entry.key, entry.name, entry.payload, entry.repeat, now=now)
        logger.info(f"Schedules for {self.queue.name} re-initialized ({removed} removed, {len(entries)} registered)")

    async def tick(self, now: Optional[datetime] = None) -> int:
        """
        Enqueue every schedule that is due.

        The job id embeds the run timestamp, so two processes ticking the same
        run collide on dedup instead of running it twice.

        Returns:
            Number of jobs queued
        """
        now = now or datetime.now()
        queued = 0

        for entry in await self.entries():
            if entry.next_run_at is None or entry.next_run_at > now:
                continue

            job_id = run_job_id(entry.key, entry.next_run_at)
            result = await self.queue.add(entry.name, entry.payload, job_id, repeat_key=entry.key)
            if result.status == AddStatus.QUEUED:
                queued += 1

            entry.next_run_at = entry.repeat.next_run(now)
            await self.queue.client().hset(self.schedulers_key, entry.key, entry.model_dump_json())

        return queued

    async def run(self, stop_event: asyncio.Event, interval: float = 30.0) -> None:
        """Tick until ``stop_event`` is set."""
        logger.info(f"Scheduler for {self.queue.name} started")
        while not stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.exception(f"Scheduler tick failed for {self.queue.name}: {e}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
        logger.info(f"Scheduler for {self.queue.name} stopped")
