"""Structured JSON logging.

Outputs logs in JSON format for easy parsing by log aggregation tools.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from .redactor import SecretRedactor

if TYPE_CHECKING:
    from kitchen_jobs.queue.job_queue import Job


STANDARD_FIELDS = [
    "job_id", "queue", "attempts", "max_attempts",
    "channel", "event", "policy", "user_id", "household_key",
    "item_id", "duration_ms", "status",
]

_RECORD_ATTRIBUTES = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName',
    'levelname', 'levelno', 'lineno', 'module', 'msecs',
    'pathname', 'process', 'processName', 'relativeCreated',
    'stack_info', 'exc_info', 'exc_text', 'thread', 'threadName',
    'message', 'asctime', 'taskName',
}


class JSONFormatter(logging.Formatter):
    """Format log records as JSON with structured fields."""

    def __init__(self, redact_secrets: bool = True):
        super().__init__()
        self.redact_secrets = redact_secrets

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON."""
        log_obj = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": self._redact(record.getMessage()),
        }

        for field in STANDARD_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_obj[field] = self._redact(value)

        if record.exc_info:
            log_obj["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": self._redact(str(record.exc_info[1])) if record.exc_info[1] else None,
                "traceback": self._redact(self.formatException(record.exc_info)),
            }

        for key, value in record.__dict__.items():
            if key in _RECORD_ATTRIBUTES or key in STANDARD_FIELDS or key.startswith('_'):
                continue
            log_obj[key] = self._redact(value)

        return json.dumps(log_obj, default=str, ensure_ascii=False)

    def _redact(self, text: Any) -> Any:
        if not self.redact_secrets or not isinstance(text, str):
            return text
        return SecretRedactor.redact_for_logging(text)


class StructuredLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds structured context to all log messages."""

    def __init__(self, logger: logging.Logger, extra: Optional[dict] = None):
        super().__init__(logger, extra or {})

    def process(self, msg, kwargs):
        extra = kwargs.get('extra', {})
        extra.update(self.extra)
        kwargs['extra'] = extra
        return msg, kwargs

    def with_context(self, **context) -> 'StructuredLoggerAdapter':
        """Create a new adapter with additional context."""
        return StructuredLoggerAdapter(self.logger, {**self.extra, **context})


def setup_json_logging(level: str = "INFO", redact_secrets: bool = True):
    """
    Configure root logger for JSON output.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        redact_secrets: Whether to redact credentials from logs
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter(redact_secrets=redact_secrets))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_structured_logger(name: str, **context) -> StructuredLoggerAdapter:
    """
    Get a structured logger with optional context.

    Args:
        name: Logger name
        **context: Default context fields (job_id, queue, etc.)
    """
    return StructuredLoggerAdapter(logging.getLogger(name), context)


def job_logger(job: "Job") -> StructuredLoggerAdapter:
    """Create a logger pre-configured for a specific job."""
    return get_structured_logger(
        f"worker.{job.queue_name}",
        job_id=job.id,
        queue=job.queue_name,
        attempts=job.attempts_made,
        max_attempts=job.max_attempts,
    )
