"""Bounded-concurrency worker pool consuming one job queue.

Each pool owns a fetch loop and at most ``concurrency`` in-flight handler
tasks. Handler failures are caught per job and drive the retry / terminal
failure path; they never stop the pool.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from kitchen_jobs.config import get_settings
from kitchen_jobs.errors import TerminalWorkError
from kitchen_jobs.lib.json_logger import job_logger
from .job_queue import Job, JobQueue

logger = logging.getLogger(__name__)

Handler = Callable[[Job], Awaitable[Any]]
CompletedCallback = Callable[[Job], Awaitable[None]]
FailedCallback = Callable[[Job, Exception, bool], Awaitable[None]]


class WorkerPool:
    """Pulls jobs from one queue and runs them through a handler."""

    def __init__(
        self,
        queue: JobQueue,
        handler: Handler,
        concurrency: int = 1,
        on_completed: Optional[CompletedCallback] = None,
        on_failed: Optional[FailedCallback] = None,
        poll_interval: Optional[float] = None,
        shutdown_grace: Optional[float] = None,
        short_circuit_terminal: bool = False,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        settings = get_settings()
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.on_completed = on_completed
        self.on_failed = on_failed
        self.poll_interval = poll_interval if poll_interval is not None else settings.worker_poll_timeout_seconds
        self.shutdown_grace = shutdown_grace if shutdown_grace is not None else settings.worker_shutdown_grace_seconds
        self.short_circuit_terminal = short_circuit_terminal

        self._semaphore = asyncio.Semaphore(concurrency)
        self._stop_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._tasks: dict[str, asyncio.Task] = {}
        self._jobs: dict[str, Job] = {}

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def start(self) -> None:
        """Start the fetch loop."""
        if self.running:
            logger.warning(f"Worker for {self.queue.name} already running")
            return

        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._run(), name=f"worker:{self.queue.name}")
        logger.info(
            f"Worker for {self.queue.name} started (concurrency {self.concurrency})",
            extra={"queue": self.queue.name},
        )

    async def stop(self) -> None:
        """
        Stop fetching, let in-flight jobs finish within the grace period,
        then cancel and requeue whatever is still running.
        """
        if self._loop_task is None:
            return

        self._stop_event.set()
        await self._loop_task
        self._loop_task = None

        pending = dict(self._tasks)
        if pending:
            logger.info(
                f"Waiting up to {self.shutdown_grace:.0f}s for {len(pending)} job(s) in {self.queue.name}",
                extra={"queue": self.queue.name},
            )
            _, still_running = await asyncio.wait(pending.values(), timeout=self.shutdown_grace)

            abandoned = [job_id for job_id, task in pending.items() if task in still_running]
            for task in still_running:
                task.cancel()
            await asyncio.gather(*still_running, return_exceptions=True)

            for job_id in abandoned:
                job = self._jobs.pop(job_id, None)
                if job is not None:
                    await self.queue.requeue_active(job)

        logger.info(f"Worker for {self.queue.name} stopped", extra={"queue": self.queue.name})

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            if not await self._acquire_slot():
                break

            try:
                job = await self.queue.fetch_next()
            except asyncio.CancelledError:
                self._semaphore.release()
                raise
            except Exception as e:
                self._semaphore.release()
                logger.exception(f"Queue processor error in {self.queue.name}: {e}")
                await self._idle(1.0)
                continue

            if job is None:
                self._semaphore.release()
                await self._idle(self.poll_interval)
                continue

            task = asyncio.create_task(self._process(job), name=f"job:{job.id}")
            self._tasks[job.id] = task
            self._jobs[job.id] = job
            task.add_done_callback(lambda t, job_id=job.id: self._finished(job_id, t))

    async def _acquire_slot(self) -> bool:
        """Wait for a free slot. False if the pool started stopping meanwhile."""
        acquire = asyncio.ensure_future(self._semaphore.acquire())
        stopping = asyncio.ensure_future(self._stop_event.wait())
        try:
            await asyncio.wait({acquire, stopping}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopping.cancel()
            if not acquire.done():
                acquire.cancel()
            await asyncio.gather(acquire, stopping, return_exceptions=True)

        acquired = not acquire.cancelled() and acquire.exception() is None
        if acquired and self._stop_event.is_set():
            self._semaphore.release()
            return False
        return acquired

    async def _idle(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def _finished(self, job_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]
            if not task.cancelled():
                self._jobs.pop(job_id, None)
        self._semaphore.release()

    async def _process(self, job: Job) -> None:
        log = job_logger(job)
        started = time.monotonic()
        log.info(f"Processing job {job.id} (attempt {job.attempts_made + 1}/{job.max_attempts})")

        try:
            await self.handler(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._handle_failure(job, e)
            return

        duration_ms = int((time.monotonic() - started) * 1000)
        try:
            await self.queue.complete(job)
        except Exception:
            log.exception(f"Could not mark job {job.id} completed")
            return
        # Finished: a cancel during the callback must not requeue it
        self._jobs.pop(job.id, None)

        log.debug(f"Job {job.id} finished", extra={"duration_ms": duration_ms, "status": "completed"})
        if self.on_completed is not None:
            try:
                await self.on_completed(job)
            except Exception:
                log.exception(f"on_completed callback failed for job {job.id}")

    async def _handle_failure(self, job: Job, error: Exception) -> None:
        log = job_logger(job)
        force_final = self.short_circuit_terminal and isinstance(error, TerminalWorkError)
        message = str(error) or type(error).__name__

        try:
            outcome = await self.queue.fail(job, message, final=force_final)
        except Exception:
            log.exception(f"Could not record failure of job {job.id}")
            return
        self._jobs.pop(job.id, None)

        if self.on_failed is not None:
            try:
                await self.on_failed(job, error, outcome.final)
            except Exception:
                log.exception(f"on_failed callback failed for job {job.id}")
