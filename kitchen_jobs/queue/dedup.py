"""Dedup / existence gate in front of the job queues.

Two checks run before a job is admitted:
1. Does the result already exist? (domain lookup, e.g. a recipe with this URL
   visible under the current policy) -> ``exists``, no job is created.
2. Is an equivalent job already waiting, active or delayed? -> ``duplicate``.

The deterministic job id is the only lock; Redis' insert-if-absent on the
job key decides races between concurrent requests.
"""

import logging
import re
from enum import Enum
from typing import Awaitable, Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import BaseModel

from kitchen_jobs.policy import PolicyContext, PolicyLevel
from .job_queue import AddStatus, Job, JobOptions, JobQueue, KEY_DELIMITER

logger = logging.getLogger(__name__)

TRACKING_PARAMS = {"fbclid", "gclid", "mc_cid", "mc_eid", "ref"}
DEFAULT_PORTS = {"http": 80, "https": 443}

ExistsCheck = Callable[[], Awaitable[Optional[str]]]


class EnqueueStatus(str, Enum):
    QUEUED = "queued"
    DUPLICATE = "duplicate"
    EXISTS = "exists"


class EnqueueResult(BaseModel):
    """Outcome of a gated enqueue."""
    status: EnqueueStatus
    job_id: str
    job: Optional[Job] = None
    result_id: Optional[str] = None


def normalize_url(url: str) -> str:
    """
    Normalize a URL so equivalent links produce the same dedup key.

    Lowercases scheme and host, drops default ports, fragments, tracking
    parameters and trailing slashes, and sorts the query string.
    """
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()

    if parts.port and parts.port != DEFAULT_PORTS.get(scheme):
        host = f"{host}:{parts.port}"

    query = [
        (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if not k.lower().startswith("utm_") and k.lower() not in TRACKING_PARAMS
    ]
    query.sort()

    path = parts.path.rstrip("/")
    return urlunsplit((scheme, host, path, urlencode(query), ""))


def sanitize_for_job_id(value: str) -> str:
    """Replace the key delimiter so the value can be embedded in a job id."""
    sanitized = value.replace(KEY_DELIMITER, "_")
    return re.sub(r"\s+", "_", sanitized)


def generate_import_job_id(url: str, ctx: PolicyContext, policy: PolicyLevel) -> str:
    """
    Build the dedup key for a URL import.

    - everyone: ``import_{url}`` (one job per URL across the deployment)
    - household: ``import_{household_key}_{url}``
    - owner: ``import_{user_id}_{url}``
    """
    target = sanitize_for_job_id(normalize_url(url))

    if policy == PolicyLevel.HOUSEHOLD:
        return f"import_{sanitize_for_job_id(ctx.household_key)}_{target}"
    if policy == PolicyLevel.OWNER:
        return f"import_{sanitize_for_job_id(ctx.user_id)}_{target}"
    return f"import_{target}"


class DedupGate:
    """Admits jobs into one queue after the existence and in-queue checks."""

    def __init__(self, queue: JobQueue):
        self.queue = queue

    async def enqueue(
        self,
        name: str,
        job_id: str,
        payload: dict,
        exists_check: Optional[ExistsCheck] = None,
        options: Optional[JobOptions] = None,
        supersede: bool = False,
    ) -> EnqueueResult:
        """
        Enqueue a job unless its result exists or it is already in flight.

        Args:
            name: Job name
            job_id: Deterministic dedup key
            payload: Job data
            exists_check: Returns the id of an existing result, or None
            options: Per-job overrides of the queue defaults
            supersede: Replace a waiting/delayed job with the same id

        Returns:
            EnqueueResult with status queued, duplicate or exists
        """
        if exists_check is not None:
            existing_id = await exists_check()
            if existing_id:
                logger.info(
                    f"Result already exists for {job_id}, skipping queue",
                    extra={"job_id": job_id, "queue": self.queue.name},
                )
                return EnqueueResult(status=EnqueueStatus.EXISTS, job_id=job_id, result_id=existing_id)

        added = await self.queue.add(name, payload, job_id, options=options, supersede=supersede)

        if added.status == AddStatus.DUPLICATE:
            return EnqueueResult(status=EnqueueStatus.DUPLICATE, job_id=job_id, job=added.job)

        return EnqueueResult(status=EnqueueStatus.QUEUED, job_id=job_id, job=added.job)
