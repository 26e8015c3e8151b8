"""
Retry with exponential backoff for outbound calls.

    policy = RetryPolicy(max_attempts=4, base_delay=0.5, backoff_multiplier=2)
    domains = execute(lambda: client.list_domains(), policy)

Attempt 1 runs immediately; attempt k (k >= 2) waits
base_delay * backoff_multiplier ** (k - 2) seconds first. Errors classified as
non-retryable propagate after the attempt that raised them. When every
attempt fails with a retryable error, RetryExhausted is raised with the last
error chained as its cause.

Environment variables (read by RetryPolicy.from_env)
---------------------
RETRY_MAX_ATTEMPTS         Default 3.
RETRY_BASE_DELAY_SECONDS   Default 1.0.
RETRY_BACKOFF_MULTIPLIER   Default 2.0.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from mailhook.services.dispatch import TerminalHandlerError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Client errors that are still worth retrying: request timeout, rate limited.
_RETRYABLE_CLIENT_STATUSES = {408, 429}


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt budget and backoff schedule for execute()."""

    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    def delay(self, attempt: int) -> float:
        """Seconds to wait before `attempt` (1-based). The first attempt never waits."""
        if attempt < 2:
            return 0.0
        return self.base_delay * self.backoff_multiplier ** (attempt - 2)

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        return cls(
            max_attempts=int(os.getenv("RETRY_MAX_ATTEMPTS", "3")),
            base_delay=float(os.getenv("RETRY_BASE_DELAY_SECONDS", "1.0")),
            backoff_multiplier=float(os.getenv("RETRY_BACKOFF_MULTIPLIER", "2.0")),
        )


class RetryExhausted(Exception):
    """Every attempt allowed by the policy failed with a retryable error."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")


def is_retryable(error: BaseException) -> bool:
    """
    Default error classification.

    4xx responses (other than 408 and 429) are the caller's fault and will not
    change on retry; neither will handler errors flagged terminal or an open
    circuit (which fails fast until its cooldown ends). Everything else,
    including transport errors and 5xx responses, is assumed transient.
    """
    from mailhook.services.circuit_breaker import CircuitOpenError

    if isinstance(error, (TerminalHandlerError, CircuitOpenError)):
        return False

    status_code: Optional[int] = None
    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
    else:
        status_code = getattr(error, "status_code", None)

    if status_code is not None and 400 <= status_code < 500:
        return status_code in _RETRYABLE_CLIENT_STATUSES
    return True


def execute(
    operation: Callable[[], T],
    policy: RetryPolicy,
    is_retryable: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call operation until it succeeds, a non-retryable error occurs, or attempts run out."""
    last_error: Optional[BaseException] = None

    for attempt in range(1, policy.max_attempts + 1):
        if attempt > 1:
            sleep(policy.delay(attempt))
        try:
            return operation()
        except Exception as exc:
            if not is_retryable(exc):
                raise
            last_error = exc
            if attempt < policy.max_attempts:
                logger.warning(
                    f"Attempt {attempt}/{policy.max_attempts} failed: {exc}; "
                    f"retrying in {policy.delay(attempt + 1)}s"
                )

    logger.error(f"Operation failed after {policy.max_attempts} attempt(s): {last_error}")
    raise RetryExhausted(policy.max_attempts, last_error) from last_error


async def execute_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    is_retryable: Callable[[BaseException], bool] = is_retryable,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Async variant of execute(); operation is a zero-argument coroutine function."""
    last_error: Optional[BaseException] = None

    for attempt in range(1, policy.max_attempts + 1):
        if attempt > 1:
            await sleep(policy.delay(attempt))
        try:
            return await operation()
        except Exception as exc:
            if not is_retryable(exc):
                raise
            last_error = exc
            if attempt < policy.max_attempts:
                logger.warning(
                    f"Attempt {attempt}/{policy.max_attempts} failed: {exc}; "
                    f"retrying in {policy.delay(attempt + 1)}s"
                )

    logger.error(f"Operation failed after {policy.max_attempts} attempt(s): {last_error}")
    raise RetryExhausted(policy.max_attempts, last_error) from last_error
