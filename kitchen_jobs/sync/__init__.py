from .tracker import (
    SyncStatus,
    SyncStatusRecord,
    SyncJobRef,
    SyncStatusStore,
    InMemorySyncStatusStore,
    SyncStateTracker,
    truncate_error_message,
)

__all__ = [
    "SyncStatus",
    "SyncStatusRecord",
    "SyncJobRef",
    "SyncStatusStore",
    "InMemorySyncStatusStore",
    "SyncStateTracker",
    "truncate_error_message",
]
