"""Per-item external calendar sync state.

One record per (user, calendar item). The calendar sync worker drives it:
an attempt on a retry flips the item back to ``pending``, success stores the
external id, failures store a truncated error and count retries. Every
transition is announced to the owning user only.
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Protocol

from pydantic import BaseModel

from kitchen_jobs.config import get_settings
from kitchen_jobs.events.router import PolicyRouter
from kitchen_jobs.events.types import ItemStatusUpdated, ItemType, SyncCompleted, SyncFailed

logger = logging.getLogger(__name__)

TRUNCATION_SUFFIX = "..."


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    FAILED = "failed"
    REMOVED = "removed"


class SyncStatusRecord(BaseModel):
    """Stored sync state of one calendar item for one user."""
    user_id: str
    item_id: str
    item_type: ItemType
    sync_status: SyncStatus = SyncStatus.PENDING
    retry_count: int = 0
    error_message: Optional[str] = None
    external_id: Optional[str] = None
    event_title: Optional[str] = None
    planned_item_id: Optional[str] = None
    last_sync_at: Optional[datetime] = None


class SyncJobRef(BaseModel):
    """The part of a sync job the tracker needs."""
    user_id: str
    item_id: str
    item_type: ItemType
    event_title: Optional[str] = None
    planned_item_id: Optional[str] = None


class SyncStatusStore(Protocol):
    async def load(self, user_id: str, item_id: str) -> Optional[SyncStatusRecord]: ...

    async def save(self, record: SyncStatusRecord) -> None: ...

    async def delete(self, user_id: str, item_id: str) -> bool: ...


class InMemorySyncStatusStore:
    """Dict-backed store for single-process deployments and tests."""

    def __init__(self):
        self._records: dict[tuple[str, str], SyncStatusRecord] = {}

    async def load(self, user_id: str, item_id: str) -> Optional[SyncStatusRecord]:
        record = self._records.get((user_id, item_id))
        return record.model_copy() if record else None

    async def save(self, record: SyncStatusRecord) -> None:
        self._records[(record.user_id, record.item_id)] = record.model_copy()

    async def delete(self, user_id: str, item_id: str) -> bool:
        return self._records.pop((user_id, item_id), None) is not None


def truncate_error_message(message: str, max_length: int = 500) -> str:
    """Cap an error message for storage, marking the cut with '...'."""
    if len(message) <= max_length:
        return message
    return message[: max_length - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SyncStateTracker:
    """Keeps sync records and their user-scoped status events in step."""

    def __init__(
        self,
        store: SyncStatusStore,
        router: PolicyRouter,
        max_error_length: Optional[int] = None,
    ):
        self.store = store
        self.router = router
        self.max_error_length = max_error_length or get_settings().error_message_max_length

    async def mark_attempt(self, ref: SyncJobRef, attempts_made: int) -> None:
        """Announce a retry as pending again. First attempts stay silent."""
        if attempts_made == 0:
            return

        await self.router.emit_to_user(
            ref.user_id,
            "itemStatusUpdated",
            ItemStatusUpdated(item_id=ref.item_id, item_type=ref.item_type, sync_status=SyncStatus.PENDING.value),
        )

    async def record_success(self, ref: SyncJobRef, external_id: str, attempts_made: int) -> SyncStatusRecord:
        """
        Store the item as synced and tell the user.

        ``retry_count`` keeps the number of failed attempts before this one.
        """
        record = await self.store.load(ref.user_id, ref.item_id) or self._new_record(ref)
        record.sync_status = SyncStatus.SYNCED
        record.external_id = external_id
        record.retry_count = attempts_made
        record.error_message = None
        record.event_title = ref.event_title or record.event_title
        record.last_sync_at = _now()
        await self.store.save(record)

        logger.info(
            f"Item {ref.item_id} synced as {external_id}",
            extra={"user_id": ref.user_id, "item_id": ref.item_id, "status": "synced"},
        )

        await self.router.emit_to_user(
            ref.user_id,
            "itemStatusUpdated",
            ItemStatusUpdated(
                item_id=ref.item_id,
                item_type=ref.item_type,
                sync_status=SyncStatus.SYNCED.value,
                external_id=external_id,
            ),
        )
        await self.router.emit_to_user(ref.user_id, "syncCompleted", SyncCompleted(item_id=ref.item_id, external_id=external_id))
        return record

    async def record_failure(
        self,
        ref: SyncJobRef,
        error: str,
        attempts_made: int,
        is_final: bool,
    ) -> SyncStatusRecord:
        """
        Store a failed attempt.

        Non-final failures leave the item ``pending`` because the queue will
        retry it; the final one marks it ``failed`` and emits ``syncFailed``.
        """
        error_message = truncate_error_message(error, self.max_error_length)
        status = SyncStatus.FAILED if is_final else SyncStatus.PENDING

        record = await self.store.load(ref.user_id, ref.item_id) or self._new_record(ref)
        record.sync_status = status
        record.retry_count = attempts_made
        record.error_message = error_message
        record.event_title = ref.event_title or record.event_title
        record.last_sync_at = _now()
        await self.store.save(record)

        log_extra = {"user_id": ref.user_id, "item_id": ref.item_id, "attempts": attempts_made, "status": status.value}
        if is_final:
            logger.error(f"Sync of item {ref.item_id} failed permanently: {error_message}", extra=log_extra)
        else:
            logger.warning(f"Sync of item {ref.item_id} failed, will retry: {error_message}", extra=log_extra)

        await self.router.emit_to_user(
            ref.user_id,
            "itemStatusUpdated",
            ItemStatusUpdated(
                item_id=ref.item_id,
                item_type=ref.item_type,
                sync_status=status.value,
                error_message=error_message,
            ),
        )

        if is_final:
            await self.router.emit_to_user(
                ref.user_id,
                "syncFailed",
                SyncFailed(item_id=ref.item_id, error_message=error_message, retry_count=attempts_made),
            )
        return record

    async def record_removed(self, ref: SyncJobRef) -> Optional[SyncStatusRecord]:
        """Mark the external event as deleted."""
        record = await self.store.load(ref.user_id, ref.item_id)
        if record is None:
            return None

        record.sync_status = SyncStatus.REMOVED
        record.error_message = None
        record.last_sync_at = _now()
        await self.store.save(record)

        await self.router.emit_to_user(
            ref.user_id,
            "itemStatusUpdated",
            ItemStatusUpdated(
                item_id=ref.item_id,
                item_type=ref.item_type,
                sync_status=SyncStatus.REMOVED.value,
                external_id=record.external_id,
            ),
        )
        return record

    async def reset_for_retry(self, user_id: str, item_id: str) -> Optional[SyncStatusRecord]:
        """Move a failed item back to pending before a manual retry."""
        record = await self.store.load(user_id, item_id)
        if record is None or record.sync_status != SyncStatus.FAILED:
            return None

        record.sync_status = SyncStatus.PENDING
        record.retry_count = 0
        record.error_message = None
        await self.store.save(record)

        await self.router.emit_to_user(
            user_id,
            "itemStatusUpdated",
            ItemStatusUpdated(item_id=item_id, item_type=record.item_type, sync_status=SyncStatus.PENDING.value),
        )
        return record

    async def forget(self, user_id: str, item_id: str) -> bool:
        """Drop the record. Only for items deleted at the source."""
        return await self.store.delete(user_id, item_id)

    def _new_record(self, ref: SyncJobRef) -> SyncStatusRecord:
        return SyncStatusRecord(
            user_id=ref.user_id,
            item_id=ref.item_id,
            item_type=ref.item_type,
            event_title=ref.event_title,
            planned_item_id=ref.planned_item_id,
        )
