"""Exception types shared by the queue, worker and event layers."""


class KitchenJobsError(Exception):
    """Base class for all service errors."""


class WorkError(KitchenJobsError):
    """Raised by a job handler to signal a failed attempt."""


class TransientWorkError(WorkError):
    """Network errors, timeouts, rate limits. Retried per backoff policy."""


class TerminalWorkError(WorkError):
    """Validation failures, missing records.

    Still retried up to max_attempts unless the pool is configured to
    short-circuit terminal errors.
    """


class InvalidJobIdError(KitchenJobsError, ValueError):
    """Job id is empty or contains the internal key delimiter."""


class QueueUnavailableError(KitchenJobsError, ConnectionError):
    """Redis could not be reached while talking to a queue."""


class SubscriptionTransportError(KitchenJobsError, ConnectionError):
    """The subscriber connection dropped.

    Raised after the subscription has released its connection; callers
    are expected to re-subscribe.
    """

    def __init__(self, channel: str, message: str = "subscription connection lost"):
        super().__init__(f"{message} ({channel})")
        self.channel = channel
