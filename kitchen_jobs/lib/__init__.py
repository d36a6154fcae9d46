"""Library utilities shared across the service."""

from .redactor import SecretRedactor
from .json_logger import (
    JSONFormatter,
    StructuredLoggerAdapter,
    setup_json_logging,
    get_structured_logger,
    job_logger,
)

__all__ = [
    "SecretRedactor",
    "JSONFormatter",
    "StructuredLoggerAdapter",
    "setup_json_logging",
    "get_structured_logger",
    "job_logger",
]
