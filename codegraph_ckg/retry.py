"""Exponential backoff for transient store / embedder failures."""

from __future__ import annotations

import logging
import time
from typing import Callable, Tuple, Type, TypeVar

from .errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float = 30.0) -> float:
    """Delay before retry number *attempt* (1-based): base, 2·base, 4·base, ..."""
    return min(max_delay, base_delay * (2 ** max(0, attempt - 1)))


def with_backoff(
    fn: Callable[[], T],
    attempts: int = 3,
    base_delay: float = 0.2,
    retry_on: Tuple[Type[BaseException], ...] = (TransientError,),
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Call *fn*, retrying on *retry_on* errors with exponential backoff.

    The last error is re-raised once *attempts* calls have failed.
    """
    attempt = 1
    while True:
        try:
            return fn()
        except retry_on as exc:
            if attempt >= attempts:
                logger.warning("%s failed after %d attempts: %s", label, attempt, exc)
                raise
            delay = backoff_delay(attempt, base_delay)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                label, attempt, attempts, exc, delay,
            )
            sleep(delay)
            attempt += 1
