"""Push planned meals and notes to the user's external calendar.

One job per (calendar server, item). Editing an item again while its sync
is still waiting replaces the queued job, so only the latest state is sent.
"""

import logging
from datetime import date
from typing import Literal, Optional

from pydantic import BaseModel

from kitchen_jobs.config import get_settings
from kitchen_jobs.events.types import ItemType
from kitchen_jobs.lib.json_logger import job_logger
from kitchen_jobs.queue.dedup import EnqueueResult, sanitize_for_job_id
from kitchen_jobs.queue.job_queue import QUEUE_CALDAV_SYNC, BackoffPolicy, Job, JobOptions, JobQueue
from kitchen_jobs.events.router import PolicyRouter
from kitchen_jobs.sync.tracker import InMemorySyncStatusStore, SyncJobRef, SyncStateTracker
from .base import JobHandler
from .collaborators import Collaborators

logger = logging.getLogger(__name__)


class CalendarSyncJobData(BaseModel):
    user_id: str
    item_id: str
    item_type: ItemType
    planned_item_id: Optional[str] = None
    event_title: str = ""
    operation: Literal["sync", "delete"] = "sync"
    caldav_server_url: str
    day: Optional[date] = None
    slot: Optional[str] = None
    recipe_id: Optional[str] = None

    def ref(self) -> SyncJobRef:
        return SyncJobRef(
            user_id=self.user_id,
            item_id=self.item_id,
            item_type=self.item_type,
            event_title=self.event_title,
            planned_item_id=self.planned_item_id,
        )


def calendar_sync_job_id(caldav_server_url: str, item_id: str) -> str:
    return f"caldav_{sanitize_for_job_id(caldav_server_url)}_{sanitize_for_job_id(item_id)}"


def calendar_sync_options() -> JobOptions:
    settings = get_settings()
    return JobOptions(
        max_attempts=settings.calendar_sync_max_attempts,
        backoff=BackoffPolicy(
            base_delay_seconds=settings.calendar_sync_backoff_seconds,
            max_delay_seconds=settings.backoff_max_seconds,
        ),
    )


class CalendarSyncHandler(JobHandler):
    queue_name = QUEUE_CALDAV_SYNC
    job_name = "sync"

    def __init__(
        self,
        queue: JobQueue,
        router: PolicyRouter,
        collaborators: Collaborators,
        tracker: Optional[SyncStateTracker] = None,
    ):
        super().__init__(queue, router, collaborators)
        store = collaborators.sync_store or InMemorySyncStatusStore()
        self.tracker = tracker or SyncStateTracker(store, router)

    async def add_job(self, data: CalendarSyncJobData) -> EnqueueResult:
        """Queue a sync, superseding a waiting or delayed one for the same item."""
        job_id = calendar_sync_job_id(data.caldav_server_url, data.item_id)
        result = await self.gate.enqueue(
            self.job_name,
            job_id,
            data.model_dump(mode="json"),
            options=calendar_sync_options(),
            supersede=True,
        )
        logger.info(
            f"Calendar sync job {result.status.value} ({data.operation})",
            extra={"job_id": job_id, "user_id": data.user_id, "item_id": data.item_id},
        )
        return result

    async def process(self, job: Job) -> Optional[str]:
        data = CalendarSyncJobData.model_validate(job.payload)
        log = job_logger(job).with_context(user_id=data.user_id, item_id=data.item_id)
        log.info(f"Processing calendar sync job: {data.operation} (attempt {self.attempt_label(job)})")

        ref = data.ref()
        await self.tracker.mark_attempt(ref, job.attempts_made)

        calendar = self.collaborators.require("calendar")

        if data.operation == "delete":
            await calendar.delete_item(data.user_id, data.item_id)
            await self.tracker.record_removed(ref)
            return None

        external_id = await calendar.sync_item(
            data.user_id, data.item_id, data.event_title, data.day, data.slot, data.recipe_id
        )
        await self.tracker.record_success(ref, external_id, job.attempts_made)
        return external_id

    async def on_failed(self, job: Job, error: Exception, is_final: bool) -> None:
        data = CalendarSyncJobData.model_validate(job.payload)
        await self.tracker.record_failure(
            data.ref(),
            self.failure_reason(error, type(error).__name__),
            job.attempts_made,
            is_final,
        )
