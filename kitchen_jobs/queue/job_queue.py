"""Redis-backed durable job queue.

Features:
- FIFO wait list (sorted set scored by a per-queue sequence)
- Deterministic job ids: re-adding a logically identical job collides
  with the existing one instead of creating a duplicate
- Retry with exponential backoff via a delayed set
- Stalled job recovery (visibility timeout) for at-least-once delivery
- Finished jobs removed by default, optionally retained with a TTL
"""

import asyncio
import random
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError
from pydantic import BaseModel, Field
import logging

from kitchen_jobs.config import get_settings
from kitchen_jobs.errors import InvalidJobIdError, QueueUnavailableError

logger = logging.getLogger(__name__)

KEY_DELIMITER = ":"

# Queue names
QUEUE_RECIPE_IMPORT = "recipe-import"
QUEUE_IMAGE_IMPORT = "image-recipe-import"
QUEUE_PASTE_IMPORT = "paste-recipe-import"
QUEUE_NUTRITION = "nutrition-estimation"
QUEUE_CALDAV_SYNC = "caldav-sync"
QUEUE_SCHEDULED_TASKS = "scheduled-tasks"

ALL_QUEUES = [
    QUEUE_RECIPE_IMPORT,
    QUEUE_IMAGE_IMPORT,
    QUEUE_PASTE_IMPORT,
    QUEUE_NUTRITION,
    QUEUE_CALDAV_SYNC,
    QUEUE_SCHEDULED_TASKS,
]


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class BackoffPolicy(BaseModel):
    """Maps the number of failed attempts to a retry delay."""
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 3600.0
    exponential_base: float = 2.0
    jitter: bool = False  # Up to +50%, breaks the non-decreasing guarantee

    @classmethod
    def fixed(cls, delay_seconds: float) -> "BackoffPolicy":
        return cls(base_delay_seconds=delay_seconds, max_delay_seconds=delay_seconds, exponential_base=1.0)

    def get_delay(self, attempts_made: int) -> float:
        """Calculate delay after the given number of failed attempts (1-based)."""
        exponent = max(attempts_made - 1, 0)
        delay = min(
            self.base_delay_seconds * (self.exponential_base ** exponent),
            self.max_delay_seconds,
        )
        if self.jitter:
            delay *= (1 + random.random() * 0.5)
        return delay


class JobOptions(BaseModel):
    """Per-job retry and retention settings."""
    max_attempts: int = 3
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    remove_on_complete: bool = True
    remove_on_fail: bool = True


# Default options per queue
DEFAULT_JOB_OPTIONS: dict[str, JobOptions] = {
    QUEUE_RECIPE_IMPORT: JobOptions(max_attempts=3, backoff=BackoffPolicy(base_delay_seconds=1)),
    QUEUE_IMAGE_IMPORT: JobOptions(max_attempts=1),  # OCR/vision output is deterministic
    QUEUE_PASTE_IMPORT: JobOptions(max_attempts=3, backoff=BackoffPolicy(base_delay_seconds=1)),
    QUEUE_NUTRITION: JobOptions(max_attempts=3, backoff=BackoffPolicy(base_delay_seconds=2)),
    QUEUE_CALDAV_SYNC: JobOptions(max_attempts=10, backoff=BackoffPolicy(base_delay_seconds=60)),
    QUEUE_SCHEDULED_TASKS: JobOptions(max_attempts=3, backoff=BackoffPolicy(base_delay_seconds=5)),
}


class JobState(str, Enum):
    """Job lifecycle states."""
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


NON_TERMINAL_STATES = frozenset({JobState.WAITING, JobState.ACTIVE, JobState.DELAYED})


class Job(BaseModel):
    """A job in the queue."""
    queue_name: str
    id: str
    name: str
    payload: dict
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    max_attempts: int = 3
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    remove_on_complete: bool = True
    remove_on_fail: bool = True
    created_at: str
    processed_at: Optional[str] = None
    finished_at: Optional[str] = None
    error: Optional[str] = None
    error_history: list[str] = []
    repeat_key: Optional[str] = None


class AddStatus(str, Enum):
    QUEUED = "queued"
    DUPLICATE = "duplicate"


class AddResult(BaseModel):
    status: AddStatus
    job: Optional[Job] = None


class FailOutcome(BaseModel):
    """Result of recording a failed attempt."""
    final: bool
    delay_seconds: Optional[float] = None


def validate_job_id(job_id: str) -> str:
    """Reject ids that would break key layout or dedup."""
    if not job_id or not job_id.strip():
        raise InvalidJobIdError("job id must not be empty")
    if KEY_DELIMITER in job_id:
        raise InvalidJobIdError(f"job id must not contain '{KEY_DELIMITER}': {job_id}")
    return job_id


class JobQueue:
    """One named durable queue of jobs stored in Redis."""

    def __init__(
        self,
        name: str,
        options: Optional[JobOptions] = None,
        redis_client: Optional[redis.Redis] = None,
        redis_url: Optional[str] = None,
        key_prefix: Optional[str] = None,
    ):
        settings = get_settings()
        self.name = name
        self.options = options or DEFAULT_JOB_OPTIONS.get(name, JobOptions())
        self.redis_url = redis_url or settings.redis_url
        self.key_prefix = key_prefix or settings.key_prefix
        self.retention_seconds = settings.job_retention_seconds
        self.visibility_timeout = 300  # seconds before an active job counts as stalled
        self._redis: Optional[redis.Redis] = redis_client
        self._owns_client = redis_client is None

    @property
    def is_connected(self) -> bool:
        return self._redis is not None

    async def open(self) -> None:
        """Create the Redis client if one was not injected."""
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, encoding="utf-8", decode_responses=True)
            self._owns_client = True
            logger.info(f"Queue {self.name} connected to Redis")

    async def close(self) -> None:
        """Release the Redis client if this queue created it."""
        if self._redis is not None and self._owns_client:
            await self._redis.aclose()
            logger.info(f"Queue {self.name} closed")
        self._redis = None

    async def __aenter__(self) -> "JobQueue":
        await self.open()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ==================== Keys ====================

    def key(self, *parts: str) -> str:
        return KEY_DELIMITER.join([self.key_prefix, "queue", self.name, *parts])

    def _job_key(self, job_id: str) -> str:
        return self.key("job", job_id)

    @property
    def wait_key(self) -> str:
        return self.key("wait")

    @property
    def delayed_key(self) -> str:
        return self.key("delayed")

    @property
    def active_key(self) -> str:
        return self.key("active")

    @property
    def seq_key(self) -> str:
        return self.key("seq")

    def client(self) -> redis.Redis:
        if self._redis is None:
            raise QueueUnavailableError(f"Queue {self.name} is not open")
        return self._redis

    # ==================== Admission ====================

    async def add(
        self,
        name: str,
        payload: dict,
        job_id: str,
        options: Optional[JobOptions] = None,
        supersede: bool = False,
        repeat_key: Optional[str] = None,
    ) -> AddResult:
        """
        Insert a job unless a non-terminal job with the same id exists.

        Args:
            name: Job name (handler-level label)
            payload: Job data
            job_id: Deterministic id; the dedup key
            options: Overrides the queue defaults
            supersede: Replace an existing waiting/delayed job with this payload
            repeat_key: Scheduler that produced this job, if any

        Returns:
            AddResult with status queued or duplicate
        """
        validate_job_id(job_id)
        opts = options or self.options
        r = self.client()
        job_key = self._job_key(job_id)

        job = Job(
            queue_name=self.name,
            id=job_id,
            name=name,
            payload=payload,
            max_attempts=opts.max_attempts,
            backoff=opts.backoff,
            remove_on_complete=opts.remove_on_complete,
            remove_on_fail=opts.remove_on_fail,
            created_at=utcnow_iso(),
            repeat_key=repeat_key,
        )

        try:
            for _ in range(3):
                async with r.pipeline(transaction=True) as pipe:
                    try:
                        await pipe.watch(job_key)
                        raw = await pipe.get(job_key)
                        existing = Job.model_validate_json(raw) if raw else None

                        if existing and existing.state in NON_TERMINAL_STATES:
                            replaceable = existing.state in (JobState.WAITING, JobState.DELAYED)
                            if not (supersede and replaceable):
                                logger.info(
                                    f"Duplicate job {job_id} rejected ({existing.state.value})",
                                    extra={"job_id": job_id, "queue": self.name},
                                )
                                return AddResult(status=AddStatus.DUPLICATE, job=existing)

                        seq = await r.incr(self.seq_key)

                        pipe.multi()
                        if existing:
                            pipe.zrem(self.wait_key, job_id)
                            pipe.zrem(self.delayed_key, job_id)
                        pipe.set(job_key, job.model_dump_json())
                        pipe.zadd(self.wait_key, {job_id: seq})
                        await pipe.execute()
                    except WatchError:
                        logger.debug(f"Job {job_id} changed during add, retrying")
                        continue

                if existing and existing.state in NON_TERMINAL_STATES:
                    logger.info(f"Superseded job {job_id} in {self.name}", extra={"job_id": job_id, "queue": self.name})
                else:
                    logger.info(f"Enqueued job {job_id} to {self.name}", extra={"job_id": job_id, "queue": self.name})
                return AddResult(status=AddStatus.QUEUED, job=job)
        except RedisError as e:
            raise QueueUnavailableError(f"Redis unavailable - cannot enqueue to {self.name}: {e}") from e

        # Lost every optimistic-lock round: somebody else is writing this id right now
        return AddResult(status=AddStatus.DUPLICATE, job=await self.get_job(job_id))

    # ==================== Consumption ====================

    async def promote_delayed(self) -> int:
        """Move due delayed jobs back to the wait list. Returns count moved.

        Each move is one MULTI/EXEC, so a job is always in exactly one of the
        delayed set or the wait list.
        """
        r = self.client()
        due = await r.zrangebyscore(self.delayed_key, "-inf", time.time())
        moved = 0

        for job_id in due:
            job_key = self._job_key(job_id)
            async with r.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(self.delayed_key, job_key)
                    # Only the process that still sees the entry promotes it
                    if await pipe.zscore(self.delayed_key, job_id) is None:
                        continue
                    raw = await pipe.get(job_key)
                    seq = await r.incr(self.seq_key)

                    pipe.multi()
                    pipe.zrem(self.delayed_key, job_id)
                    if raw:
                        job = Job.model_validate_json(raw)
                        job.state = JobState.WAITING
                        pipe.set(job_key, job.model_dump_json())
                        pipe.zadd(self.wait_key, {job_id: seq})
                    await pipe.execute()
                except WatchError:
                    continue
            if raw:
                moved += 1

        if moved:
            logger.debug(f"Promoted {moved} delayed job(s) in {self.name}")
        return moved

    async def fetch_next(self) -> Optional[Job]:
        """
        Claim the next waiting job.

        Removing the id from the wait list, marking the record active and
        adding it to the active set happen in one MULTI/EXEC: a connection
        error leaves the job waiting, never orphaned.

        Returns:
            The job, now active, or None if the queue is empty
        """
        r = self.client()
        await self.promote_delayed()

        while True:
            async with r.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(self.wait_key)
                    head = await pipe.zrange(self.wait_key, 0, 0)
                    if not head:
                        return None

                    job_id = head[0]
                    job_key = self._job_key(job_id)
                    await pipe.watch(job_key)
                    raw = await pipe.get(job_key)

                    pipe.multi()
                    pipe.zrem(self.wait_key, job_id)
                    if raw:
                        job = Job.model_validate_json(raw)
                        job.state = JobState.ACTIVE
                        job.processed_at = utcnow_iso()
                        pipe.set(job_key, job.model_dump_json())
                        pipe.sadd(self.active_key, job_id)
                    await pipe.execute()
                except WatchError:
                    # Another worker claimed the head first
                    continue

            if not raw:
                logger.warning(f"Job {job_id} not found in storage", extra={"job_id": job_id, "queue": self.name})
                continue

            logger.debug(f"Dequeued job {job_id} from {self.name}", extra={"job_id": job_id, "queue": self.name})
            return job

    async def complete(self, job: Job) -> None:
        """Mark a job as completed successfully."""
        r = self.client()
        job.state = JobState.COMPLETED
        job.finished_at = utcnow_iso()

        async with r.pipeline(transaction=True) as pipe:
            pipe.srem(self.active_key, job.id)
            if job.remove_on_complete:
                pipe.delete(self._job_key(job.id))
            else:
                pipe.set(self._job_key(job.id), job.model_dump_json(), ex=self.retention_seconds)
            await pipe.execute()

        logger.info(f"Job {job.id} completed", extra={"job_id": job.id, "queue": self.name})

    async def fail(self, job: Job, error: str, final: bool = False) -> FailOutcome:
        """
        Record a failed attempt.

        If attempts remain (and final is not forced), the job moves to the
        delayed set with exponential backoff. Otherwise it is terminally failed.
        """
        r = self.client()
        job.attempts_made += 1
        job.error = error
        job.error_history.append(f"[{utcnow_iso()}] {error}")

        if not final and job.attempts_made < job.max_attempts:
            delay = job.backoff.get_delay(job.attempts_made)
            job.state = JobState.DELAYED

            async with r.pipeline(transaction=True) as pipe:
                pipe.set(self._job_key(job.id), job.model_dump_json())
                pipe.srem(self.active_key, job.id)
                pipe.zadd(self.delayed_key, {job.id: time.time() + delay})
                await pipe.execute()

            logger.warning(
                f"Job {job.id} failed, retry {job.attempts_made}/{job.max_attempts} in {delay:.1f}s: {error}",
                extra={"job_id": job.id, "queue": self.name, "attempts": job.attempts_made},
            )
            return FailOutcome(final=False, delay_seconds=delay)

        job.state = JobState.FAILED
        job.finished_at = utcnow_iso()

        async with r.pipeline(transaction=True) as pipe:
            pipe.srem(self.active_key, job.id)
            if job.remove_on_fail:
                pipe.delete(self._job_key(job.id))
            else:
                pipe.set(self._job_key(job.id), job.model_dump_json(), ex=self.retention_seconds)
            await pipe.execute()

        logger.error(
            f"Job {job.id} failed after {job.attempts_made} attempt(s): {error}",
            extra={"job_id": job.id, "queue": self.name, "attempts": job.attempts_made},
        )
        return FailOutcome(final=True)

    async def requeue_active(self, job: Job) -> None:
        """Return an abandoned active job to the head of the wait list.

        Does not consume an attempt.
        """
        r = self.client()
        job.state = JobState.WAITING
        job.processed_at = None

        async with r.pipeline(transaction=True) as pipe:
            pipe.set(self._job_key(job.id), job.model_dump_json())
            pipe.srem(self.active_key, job.id)
            pipe.zadd(self.wait_key, {job.id: 0})
            await pipe.execute()

        logger.warning(f"Job {job.id} returned to {self.name}", extra={"job_id": job.id, "queue": self.name})

    async def recover_stalled(self, visibility_timeout: Optional[float] = None) -> int:
        """
        Requeue active jobs whose worker stopped reporting.

        A job counts as stalled once it has been active for longer than the
        visibility timeout; this covers processes that crashed mid-job.

        Returns:
            Number of jobs requeued
        """
        r = self.client()
        timeout = self.visibility_timeout if visibility_timeout is None else visibility_timeout
        now = datetime.now(timezone.utc)
        recovered = 0

        for job_id in await r.smembers(self.active_key):
            job = await self.get_job(job_id)
            if job is None or job.state != JobState.ACTIVE:
                await r.srem(self.active_key, job_id)
                continue
            started = datetime.fromisoformat(job.processed_at) if job.processed_at else now
            if (now - started).total_seconds() >= timeout:
                await self.requeue_active(job)
                recovered += 1

        if recovered:
            logger.warning(f"Recovered {recovered} stalled job(s) in {self.name}", extra={"queue": self.name})
        return recovered

    # ==================== Inspection ====================

    async def get_job(self, job_id: str) -> Optional[Job]:
        """Get the stored job, if any."""
        raw = await self.client().get(self._job_key(job_id))
        if not raw:
            return None
        return Job.model_validate_json(raw)

    async def get_state(self, job_id: str) -> Optional[JobState]:
        job = await self.get_job(job_id)
        return job.state if job else None

    async def is_job_in_queue(self, job_id: str) -> bool:
        """True if the job is waiting, active or delayed."""
        return await self.get_state(job_id) in NON_TERMINAL_STATES

    async def remove(self, job_id: str) -> bool:
        """Remove a waiting or delayed job. Active jobs are left alone."""
        job = await self.get_job(job_id)
        if job is None or job.state == JobState.ACTIVE:
            return False

        async with self.client().pipeline(transaction=True) as pipe:
            pipe.zrem(self.wait_key, job_id)
            pipe.zrem(self.delayed_key, job_id)
            pipe.delete(self._job_key(job_id))
            await pipe.execute()
        return True

    async def counts(self) -> dict[str, int]:
        """Number of jobs per non-terminal state."""
        r = self.client()
        return {
            "waiting": await r.zcard(self.wait_key),
            "active": await r.scard(self.active_key),
            "delayed": await r.zcard(self.delayed_key),
        }

    async def wait_until_idle(self, timeout: float = 5.0, interval: float = 0.02) -> bool:
        """Poll until no job is waiting, active or delayed."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if sum((await self.counts()).values()) == 0:
                return True
            await asyncio.sleep(interval)
        return False
