"""
Retry helper for per-patient units of work.
"""
import time
from typing import Callable, Sequence, TypeVar

from .exceptions import TransientStorageError
from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def retry_transient(
    fn: Callable[[], T],
    max_retries: int,
    backoff: Sequence[float],
    label: str,
) -> T:
    """
    Call ``fn``, retrying on TransientStorageError.

    Sleeps ``backoff[attempt]`` before each retry (last value reused once
    the list runs out). Re-raises after ``max_retries`` retries; every other
    exception propagates on the first failure.

    Args:
        fn:          zero-argument unit of work
        max_retries: retries after the first attempt
        backoff:     delays in seconds
        label:       log prefix, e.g. ``"ProgressionMonitor [patient-1]"``
    """
    attempt = 0
    while True:
        try:
            return fn()
        except TransientStorageError as e:
            if attempt >= max_retries:
                raise
            delay = backoff[min(attempt, len(backoff) - 1)] if backoff else 0
            attempt += 1
            logger.warning(f"{label}: {e.message}; retry {attempt}/{max_retries} in {delay:.1f}s")
            time.sleep(delay)
