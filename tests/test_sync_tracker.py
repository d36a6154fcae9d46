"""Tests for calendar sync state tracking."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from kitchen_jobs.events import ItemStatusUpdated, PolicyRouter, SyncCompleted, SyncFailed
from kitchen_jobs.sync import (
    InMemorySyncStatusStore,
    SyncJobRef,
    SyncStateTracker,
    SyncStatus,
    truncate_error_message,
)


REF = SyncJobRef(user_id="u1", item_id="item-1", item_type="recipe", event_title="Lasagne")


def mock_router():
    router = MagicMock(spec=PolicyRouter)
    router.emit_to_user = AsyncMock(return_value=True)
    return router


def emitted(router, event):
    return [call.args[2] for call in router.emit_to_user.await_args_list if call.args[1] == event]


def test_truncate_error_message():
    assert truncate_error_message("short") == "short"
    assert truncate_error_message("x" * 500) == "x" * 500

    truncated = truncate_error_message("x" * 600)
    assert len(truncated) == 500
    assert truncated.endswith("...")
    assert truncated[:497] == "x" * 497


@pytest.mark.asyncio
async def test_first_attempt_is_silent_retry_is_pending():
    router = mock_router()
    tracker = SyncStateTracker(InMemorySyncStatusStore(), router)

    await tracker.mark_attempt(REF, 0)
    router.emit_to_user.assert_not_awaited()

    await tracker.mark_attempt(REF, 2)
    status = emitted(router, "itemStatusUpdated")[0]
    assert status.sync_status == "pending"


@pytest.mark.asyncio
async def test_success_after_failures():
    store = InMemorySyncStatusStore()
    router = mock_router()
    tracker = SyncStateTracker(store, router)

    await tracker.record_failure(REF, "503 Service Unavailable", attempts_made=1, is_final=False)
    record = await store.load("u1", "item-1")
    assert record.sync_status == SyncStatus.PENDING
    assert record.error_message == "503 Service Unavailable"

    await tracker.record_success(REF, "uid-123", attempts_made=1)
    record = await store.load("u1", "item-1")
    assert record.sync_status == SyncStatus.SYNCED
    assert record.external_id == "uid-123"
    assert record.retry_count == 1
    assert record.error_message is None
    assert record.last_sync_at is not None

    assert emitted(router, "syncCompleted") == [SyncCompleted(item_id="item-1", external_id="uid-123")]
    assert emitted(router, "syncFailed") == []


@pytest.mark.asyncio
async def test_final_failure_emits_sync_failed_once():
    store = InMemorySyncStatusStore()
    router = mock_router()
    tracker = SyncStateTracker(store, router)

    for attempt in range(1, 11):
        await tracker.record_failure(REF, "auth failed", attempts_made=attempt, is_final=attempt == 10)

    record = await store.load("u1", "item-1")
    assert record.sync_status == SyncStatus.FAILED
    assert record.retry_count == 10

    assert emitted(router, "syncFailed") == [SyncFailed(item_id="item-1", error_message="auth failed", retry_count=10)]
    statuses = [e.sync_status for e in emitted(router, "itemStatusUpdated")]
    assert statuses == ["pending"] * 9 + ["failed"]


@pytest.mark.asyncio
async def test_stored_error_is_truncated():
    store = InMemorySyncStatusStore()
    tracker = SyncStateTracker(store, mock_router(), max_error_length=20)

    await tracker.record_failure(REF, "e" * 100, attempts_made=1, is_final=True)

    record = await store.load("u1", "item-1")
    assert record.error_message == "e" * 17 + "..."


@pytest.mark.asyncio
async def test_reset_for_retry_only_from_failed():
    store = InMemorySyncStatusStore()
    router = mock_router()
    tracker = SyncStateTracker(store, router)

    assert await tracker.reset_for_retry("u1", "item-1") is None

    await tracker.record_failure(REF, "boom", attempts_made=10, is_final=True)
    record = await tracker.reset_for_retry("u1", "item-1")

    assert record.sync_status == SyncStatus.PENDING
    assert record.retry_count == 0
    assert emitted(router, "itemStatusUpdated")[-1] == ItemStatusUpdated(
        item_id="item-1", item_type="recipe", sync_status="pending"
    )


@pytest.mark.asyncio
async def test_removed_and_forget():
    store = InMemorySyncStatusStore()
    tracker = SyncStateTracker(store, mock_router())

    await tracker.record_success(REF, "uid-1", attempts_made=0)
    record = await tracker.record_removed(REF)
    assert record.sync_status == SyncStatus.REMOVED

    assert await tracker.forget("u1", "item-1") is True
    assert await store.load("u1", "item-1") is None
