"""Tests for the bounded-concurrency worker pool."""

import asyncio

import pytest
from unittest.mock import AsyncMock

from kitchen_jobs.errors import TerminalWorkError, TransientWorkError
from kitchen_jobs.queue import BackoffPolicy, JobOptions, JobQueue, WorkerPool, QUEUE_RECIPE_IMPORT


FAST_RETRY = JobOptions(max_attempts=3, backoff=BackoffPolicy(base_delay_seconds=0.01, max_delay_seconds=0.05))


def make_pool(queue, handler, **kwargs):
    kwargs.setdefault("poll_interval", 0.01)
    kwargs.setdefault("shutdown_grace", 0.5)
    return WorkerPool(queue, handler, **kwargs)


@pytest.mark.asyncio
async def test_fails_twice_then_succeeds(redis_client, eventually):
    """Zwei Fehlschläge, dann Erfolg: Handler läuft dreimal, kein finaler Fehler."""
    queue = JobQueue(QUEUE_RECIPE_IMPORT, options=FAST_RETRY, redis_client=redis_client)
    handler = AsyncMock(side_effect=[TransientWorkError("timeout"), TransientWorkError("timeout"), None])
    on_failed = AsyncMock()
    on_completed = AsyncMock()
    pool = make_pool(queue, handler, on_failed=on_failed, on_completed=on_completed)

    await queue.add("import", {"url": "https://x.test/r1"}, "import_r1")
    pool.start()
    try:
        await eventually(lambda: on_completed.await_count == 1)
    finally:
        await pool.stop()

    assert handler.await_count == 3
    assert [call.args[2] for call in on_failed.await_args_list] == [False, False]
    completed_job = on_completed.await_args.args[0]
    assert completed_job.attempts_made == 2
    assert await queue.get_job("import_r1") is None


@pytest.mark.asyncio
async def test_retry_exhaustion_reports_final_failure_once(redis_client, eventually):
    queue = JobQueue(QUEUE_RECIPE_IMPORT, options=FAST_RETRY, redis_client=redis_client)
    handler = AsyncMock(side_effect=TransientWorkError("site down"))
    on_failed = AsyncMock()
    pool = make_pool(queue, handler, on_failed=on_failed)

    await queue.add("import", {}, "import_r1")
    pool.start()
    try:
        await eventually(lambda: on_failed.await_count == 3)
        await asyncio.sleep(0.05)
    finally:
        await pool.stop()

    assert handler.await_count == 3
    finals = [call.args[2] for call in on_failed.await_args_list]
    assert finals == [False, False, True]
    job, error, _ = on_failed.await_args.args
    assert job.attempts_made == 3
    assert str(error) == "site down"
    assert sum((await queue.counts()).values()) == 0


@pytest.mark.asyncio
async def test_terminal_error_is_retried_by_default(redis_client, eventually):
    queue = JobQueue(QUEUE_RECIPE_IMPORT, options=FAST_RETRY, redis_client=redis_client)
    handler = AsyncMock(side_effect=TerminalWorkError("no such recipe"))
    on_failed = AsyncMock()
    pool = make_pool(queue, handler, on_failed=on_failed)

    await queue.add("import", {}, "import_r1")
    pool.start()
    try:
        await eventually(lambda: on_failed.await_count == 3)
    finally:
        await pool.stop()

    assert handler.await_count == 3


@pytest.mark.asyncio
async def test_terminal_error_short_circuit(redis_client, eventually):
    queue = JobQueue(QUEUE_RECIPE_IMPORT, options=FAST_RETRY, redis_client=redis_client)
    handler = AsyncMock(side_effect=TerminalWorkError("no such recipe"))
    on_failed = AsyncMock()
    pool = make_pool(queue, handler, on_failed=on_failed, short_circuit_terminal=True)

    await queue.add("import", {}, "import_r1")
    pool.start()
    try:
        await eventually(lambda: on_failed.await_count == 1)
        await asyncio.sleep(0.05)
    finally:
        await pool.stop()

    assert handler.await_count == 1
    assert on_failed.await_args.args[2] is True


@pytest.mark.asyncio
async def test_concurrency_is_bounded(redis_client, eventually):
    queue = JobQueue(QUEUE_RECIPE_IMPORT, redis_client=redis_client)
    running = 0
    peak = 0
    done = 0

    async def handler(job):
        nonlocal running, peak, done
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.02)
        running -= 1
        done += 1

    for i in range(8):
        await queue.add("import", {}, f"job_{i}")

    pool = make_pool(queue, handler, concurrency=2)
    pool.start()
    try:
        await eventually(lambda: done == 8)
    finally:
        await pool.stop()

    assert peak == 2


@pytest.mark.asyncio
async def test_concurrency_one_preserves_admission_order(redis_client, eventually):
    queue = JobQueue(QUEUE_RECIPE_IMPORT, redis_client=redis_client)
    seen = []

    async def handler(job):
        seen.append(job.id)

    for i in range(5):
        await queue.add("import", {}, f"job_{i}")

    pool = make_pool(queue, handler, concurrency=1)
    pool.start()
    try:
        await eventually(lambda: len(seen) == 5)
    finally:
        await pool.stop()

    assert seen == [f"job_{i}" for i in range(5)]


@pytest.mark.asyncio
async def test_handler_error_does_not_stop_pool(redis_client, eventually):
    queue = JobQueue(QUEUE_RECIPE_IMPORT, options=JobOptions(max_attempts=1), redis_client=redis_client)
    processed = []

    async def handler(job):
        if job.id == "bad":
            raise ValueError("unexpected")
        processed.append(job.id)

    await queue.add("import", {}, "bad")
    await queue.add("import", {}, "good")

    pool = make_pool(queue, handler)
    pool.start()
    try:
        await eventually(lambda: processed == ["good"])
    finally:
        await pool.stop()


@pytest.mark.asyncio
async def test_failing_callback_is_isolated(redis_client, eventually):
    queue = JobQueue(QUEUE_RECIPE_IMPORT, redis_client=redis_client)
    on_completed = AsyncMock(side_effect=RuntimeError("listener broke"))
    pool = make_pool(queue, AsyncMock(), on_completed=on_completed)

    await queue.add("import", {}, "job_1")
    await queue.add("import", {}, "job_2")
    pool.start()
    try:
        await eventually(lambda: on_completed.await_count == 2)
    finally:
        await pool.stop()

    assert pool.running is False


@pytest.mark.asyncio
async def test_stop_requeues_unfinished_job(redis_client, eventually):
    queue = JobQueue(QUEUE_RECIPE_IMPORT, redis_client=redis_client)
    started = asyncio.Event()

    async def handler(job):
        started.set()
        await asyncio.sleep(10)

    await queue.add("import", {}, "slow")
    pool = make_pool(queue, handler, shutdown_grace=0.05)
    pool.start()
    await asyncio.wait_for(started.wait(), timeout=2)

    await pool.stop()

    job = await queue.get_job("slow")
    assert job is not None
    assert job.attempts_made == 0
    assert (await queue.counts())["waiting"] == 1
    assert pool.in_flight == 0


@pytest.mark.asyncio
async def test_stop_during_completed_callback_does_not_requeue(redis_client):
    """Ein abgeschlossener Job läuft nach dem Stoppen nicht noch einmal."""
    queue = JobQueue(QUEUE_RECIPE_IMPORT, redis_client=redis_client)
    in_callback = asyncio.Event()

    async def on_completed(job):
        in_callback.set()
        await asyncio.sleep(10)

    await queue.add("import", {}, "done")
    pool = make_pool(queue, AsyncMock(), on_completed=on_completed, shutdown_grace=0.05)
    pool.start()
    await asyncio.wait_for(in_callback.wait(), timeout=2)

    await pool.stop()

    assert await queue.get_job("done") is None
    assert sum((await queue.counts()).values()) == 0


def test_concurrency_must_be_positive():
    with pytest.raises(ValueError):
        WorkerPool(JobQueue(QUEUE_RECIPE_IMPORT), AsyncMock(), concurrency=0)
