"""Common shape of a job category: admission, processing, failure reporting."""

import logging
from typing import Any

from kitchen_jobs.events.router import PolicyRouter
from kitchen_jobs.queue.dedup import DedupGate
from kitchen_jobs.queue.job_queue import Job, JobQueue
from kitchen_jobs.queue.worker import WorkerPool
from .collaborators import Collaborators

logger = logging.getLogger(__name__)


class JobHandler:
    """
    One job category bound to its queue.

    Subclasses set ``queue_name`` and ``job_name`` and implement ``process``;
    ``on_failed`` is optional.
    """

    queue_name: str = ""
    job_name: str = ""

    def __init__(self, queue: JobQueue, router: PolicyRouter, collaborators: Collaborators):
        if queue.name != self.queue_name:
            raise ValueError(f"{type(self).__name__} expects queue '{self.queue_name}', got '{queue.name}'")
        self.queue = queue
        self.gate = DedupGate(queue)
        self.router = router
        self.collaborators = collaborators

    async def process(self, job: Job) -> Any:
        raise NotImplementedError

    async def on_failed(self, job: Job, error: Exception, is_final: bool) -> None:
        pass

    def build_pool(self, concurrency: int = 1, **kwargs: Any) -> WorkerPool:
        return WorkerPool(
            self.queue,
            self.process,
            concurrency=concurrency,
            on_failed=self.on_failed,
            **kwargs,
        )

    @staticmethod
    def failure_reason(error: Exception, default: str) -> str:
        return str(error) or default

    def attempt_label(self, job: Job) -> str:
        return f"{job.attempts_made + 1}/{job.max_attempts}"

