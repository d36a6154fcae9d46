"""Queue module for background job processing.

Features:
- Durable FIFO queues in Redis with deterministic, deduplicating job ids
- Retry with exponential backoff
- Existence gate in front of enqueue
- Bounded-concurrency worker pools
- Repeating schedules
"""

from .job_queue import (
    JobQueue,
    Job,
    JobState,
    JobOptions,
    BackoffPolicy,
    AddStatus,
    AddResult,
    FailOutcome,
    NON_TERMINAL_STATES,
    DEFAULT_JOB_OPTIONS,
    ALL_QUEUES,
    QUEUE_RECIPE_IMPORT,
    QUEUE_IMAGE_IMPORT,
    QUEUE_PASTE_IMPORT,
    QUEUE_NUTRITION,
    QUEUE_CALDAV_SYNC,
    QUEUE_SCHEDULED_TASKS,
    validate_job_id,
)
from .dedup import (
    DedupGate,
    EnqueueResult,
    EnqueueStatus,
    generate_import_job_id,
    normalize_url,
    sanitize_for_job_id,
)
from .worker import WorkerPool
from .scheduler import JobScheduler, RepeatSpec, ScheduleEntry

__all__ = [
    'JobQueue',
    'Job',
    'JobState',
    'JobOptions',
    'BackoffPolicy',
    'AddStatus',
    'AddResult',
    'FailOutcome',
    'NON_TERMINAL_STATES',
    'DEFAULT_JOB_OPTIONS',
    'ALL_QUEUES',
    'QUEUE_RECIPE_IMPORT',
    'QUEUE_IMAGE_IMPORT',
    'QUEUE_PASTE_IMPORT',
    'QUEUE_NUTRITION',
    'QUEUE_CALDAV_SYNC',
    'QUEUE_SCHEDULED_TASKS',
    'validate_job_id',
    'DedupGate',
    'EnqueueResult',
    'EnqueueStatus',
    'generate_import_job_id',
    'normalize_url',
    'sanitize_for_job_id',
    'WorkerPool',
    'JobScheduler',
    'RepeatSpec',
    'ScheduleEntry',
]
