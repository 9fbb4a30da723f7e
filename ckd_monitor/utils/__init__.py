"""
Utilities Package - Logging, Exception Handling, Retry and Clock Helpers
"""
from datetime import datetime, timezone

from .logging import get_logger, setup_logging
from .exceptions import (
    CKDMonitorError,
    ValidationError,
    NotFoundError,
    StateConflictError,
    DataIntegrityError,
    TransientStorageError,
)
from .retry import retry_transient


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation used throughout the store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


__all__ = [
    "get_logger",
    "setup_logging",
    "utcnow",
    "retry_transient",
    "CKDMonitorError",
    "ValidationError",
    "NotFoundError",
    "StateConflictError",
    "DataIntegrityError",
    "TransientStorageError",
]
