"""Retry with exponential backoff for remote calls."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryOptions:
    """Backoff parameters; delays are in seconds."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0


DEFAULT_RETRY = RetryOptions()


def backoff_delay(attempt: int, options: RetryOptions) -> float:
    """Return the wait before the retry following ``attempt`` (zero-based)."""
    return min(options.base_delay * (2**attempt), options.max_delay)


def with_retry(
    operation: Callable[[], T],
    options: Optional[RetryOptions] = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Invoke ``operation`` until it succeeds or the attempts run out.

    The exception raised by the final attempt propagates unchanged.
    """
    opts = options or DEFAULT_RETRY
    max_attempts = max(1, opts.max_attempts)

    for attempt in range(max_attempts):
        try:
            return operation()
        except Exception as exc:
            if attempt >= max_attempts - 1:
                logger.debug("Giving up after %d attempt(s): %s", max_attempts, exc)
                raise
            delay = backoff_delay(attempt, opts)
            logger.warning(
                "Attempt %d/%d failed (%s); retrying in %.2fs",
                attempt + 1,
                max_attempts,
                exc,
                delay,
            )
            sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover
