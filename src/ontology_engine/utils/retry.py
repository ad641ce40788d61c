"""
Retry helpers with exponential backoff and jitter
"""
from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from .errors import MaxRetriesExceededError, is_retryable
from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Backoff schedule: initial_delay * multiplier**attempt, capped, +/- jitter"""
    max_retries: int = 3
    initial_delay: float = 0.1
    max_delay: float = 5.0
    multiplier: float = 2.0
    jitter: float = 0.1

    def delay_for(self, attempt: int) -> float:
        delay = min(self.initial_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter > 0 and delay > 0:
            delay += delay * self.jitter * (random.random() * 2 - 1)
        return max(delay, 0.0)


def retry_call(
    fn: Callable[[], T],
    policy: Optional[RetryPolicy] = None,
    should_retry: Callable[[BaseException], bool] = is_retryable,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
    cancel_event: Optional[threading.Event] = None,
    operation: str = "operation",
) -> T:
    """
    Call ``fn`` until it succeeds or the retry budget is spent.

    Non-retryable errors propagate immediately. When the budget is exhausted a
    MaxRetriesExceededError wrapping the last error is raised. A set
    ``cancel_event`` stops waiting between attempts and re-raises the last error.
    """
    policy = policy or RetryPolicy()
    last_error: Optional[BaseException] = None

    for attempt in range(policy.max_retries + 1):
        try:
            return fn()
        except Exception as e:
            last_error = e
            if not should_retry(e) or attempt >= policy.max_retries:
                if attempt >= policy.max_retries and should_retry(e) and policy.max_retries > 0:
                    raise MaxRetriesExceededError(
                        message=f"{operation} failed after {attempt + 1} attempts: {e}",
                        max_retries=policy.max_retries,
                        last_error=e,
                    ) from e
                raise

            delay = policy.delay_for(attempt)
            logger.warning(
                f"{operation} failed, retrying in {delay:.2f}s",
                extra={"extra_fields": {
                    "attempt": attempt + 1,
                    "max_retries": policy.max_retries,
                    "error": str(e),
                }}
            )
            if on_retry is not None:
                on_retry(attempt + 1, e)
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise
            elif delay > 0:
                time.sleep(delay)

    # Unreachable: the loop either returns or raises
    raise MaxRetriesExceededError(
        message=f"{operation} failed",
        max_retries=policy.max_retries,
        last_error=last_error if isinstance(last_error, Exception) else None,
    )
