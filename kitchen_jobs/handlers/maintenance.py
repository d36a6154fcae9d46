"""Periodic housekeeping jobs."""

import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from kitchen_jobs.config import get_settings
from kitchen_jobs.errors import TerminalWorkError
from kitchen_jobs.lib.json_logger import job_logger
from kitchen_jobs.queue.job_queue import QUEUE_SCHEDULED_TASKS, Job
from kitchen_jobs.queue.scheduler import JobScheduler, RepeatSpec, ScheduleEntry
from .base import JobHandler

logger = logging.getLogger(__name__)

TASK_TYPES = [
    "recurring-grocery-check",
    "image-cleanup",
    "calendar-cleanup",
    "groceries-cleanup",
    "video-temp-cleanup",
]


class MaintenanceJobData(BaseModel):
    task_type: str


def maintenance_schedule(rrule: Optional[str] = None) -> list[ScheduleEntry]:
    """One repeating entry per task type, all on the same rule."""
    repeat = RepeatSpec(rrule=rrule or get_settings().maintenance_schedule)
    return [
        ScheduleEntry(
            key=task_type,
            name=task_type,
            payload=MaintenanceJobData(task_type=task_type).model_dump(),
            repeat=repeat,
        )
        for task_type in TASK_TYPES
    ]


class MaintenanceHandler(JobHandler):
    queue_name = QUEUE_SCHEDULED_TASKS
    job_name = "maintenance"

    async def initialize_schedules(self, scheduler: JobScheduler, now: Optional[datetime] = None) -> None:
        """Drop stale schedules, then register every task."""
        await scheduler.replace_all(maintenance_schedule(), now=now)

    async def process(self, job: Job) -> None:
        data = MaintenanceJobData.model_validate(job.payload)
        log = job_logger(job)
        log.info(f"Processing scheduled task {data.task_type}")

        task = self.collaborators.maintenance_tasks.get(data.task_type)
        if task is None:
            if data.task_type in TASK_TYPES:
                log.warning(f"No implementation configured for {data.task_type}, skipping")
                return
            raise TerminalWorkError(f"Unknown scheduled task type: {data.task_type}")

        result = await task()
        log.info(f"Scheduled task {data.task_type} completed", extra={"result": result})

    async def on_failed(self, job: Job, error: Exception, is_final: bool) -> None:
        logger.error(
            f"Scheduled task failed: {error}",
            extra={"job_id": job.id, "queue": self.queue_name, "attempts": job.attempts_made},
        )
