"""Retry helpers for network calls.

Exponential backoff for transient failures; everything else is raised on
the first attempt.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_none,
)

from ..errors import NetworkTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts (including the first)
        backoff_seconds: Multiplier for the exponential wait; 0 disables waiting
        max_wait_seconds: Upper bound for a single wait
    """

    max_attempts: int = 3
    backoff_seconds: float = 1.0
    max_wait_seconds: float = 30.0

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, config.MAX_RETRIES),
            backoff_seconds=config.RETRY_BACKOFF_SECONDS,
        )


# No waiting between attempts, for tests
IMMEDIATE_RETRY = RetryPolicy(max_attempts=3, backoff_seconds=0)


def log_retry_attempt(retry_state: RetryCallState) -> None:
    """Log retry attempts before tenacity sleeps."""
    if retry_state.outcome and retry_state.outcome.failed:
        exception = retry_state.outcome.exception()
        logger.warning(
            f"Attempt {retry_state.attempt_number} failed: {type(exception).__name__}: {exception}"
        )


def call_with_retry(
    func: Callable[[], T],
    policy: RetryPolicy,
    retry_on: Tuple[Type[BaseException], ...] = (NetworkTransientError,),
) -> T:
    """Call `func` until it succeeds, raises a non-retryable error, or attempts run out.

    The last exception is re-raised unchanged once attempts are exhausted.
    """
    if policy.backoff_seconds > 0:
        wait = wait_exponential(multiplier=policy.backoff_seconds, max=policy.max_wait_seconds)
    else:
        wait = wait_none()

    retrying = Retrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait,
        retry=retry_if_exception_type(retry_on),
        before_sleep=log_retry_attempt,
        reraise=True,
    )
    return retrying(func)
