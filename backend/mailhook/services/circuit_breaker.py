"""Circuit breaker for outbound calls to the remote API.

Stops hammering a failing dependency: after `failure_threshold` consecutive
failures the circuit opens and calls fail fast with CircuitOpenError. Once
`cooldown_seconds` have passed a single trial call is let through; its
success closes the circuit, its failure opens it again.

    CLOSED --threshold failures--> OPEN --cooldown--> HALF_OPEN
    HALF_OPEN --trial succeeds--> CLOSED
    HALF_OPEN --trial fails-----> OPEN
"""

import logging
import threading
import time
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from mailhook.services.retry import is_retryable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"        # Normal operation, calls pass through
    OPEN = "open"            # Failing, calls are blocked
    HALF_OPEN = "half_open"  # One trial call decides


class CircuitOpenError(Exception):
    """Raised when the circuit is open and blocking calls."""

    def __init__(self, name: str, retry_in: float):
        self.name = name
        self.retry_in = retry_in
        super().__init__(f"Circuit '{name}' is open; retry in {retry_in:.1f}s")


class CircuitBreaker:
    """Consecutive-failure circuit breaker.

    Only errors that `counts_as_failure` accepts trip the circuit. By default
    that is the retry classifier, so a 4xx from a healthy service does not
    open the circuit.

    Example:
        >>> breaker = CircuitBreaker("mail-api", failure_threshold=5, cooldown_seconds=30)
        >>> domains = breaker.call(client.list_domains)
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        counts_as_failure: Callable[[BaseException], bool] = is_retryable,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize circuit breaker.

        Args:
            name: Identifier used in logs and errors.
            failure_threshold: Consecutive failures before opening.
            cooldown_seconds: Time spent open before a trial call is allowed.
            counts_as_failure: Decides whether an exception trips the circuit.
            clock: Monotonic time source.
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._counts_as_failure = counts_as_failure
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        self._trial_in_flight = False
        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
        elif new_state == CircuitState.CLOSED:
            self._consecutive_failures = 0
            self._opened_at = None
        logger.warning(f"Circuit '{self.name}': {old_state.value} -> {new_state.value}")

    def allow_request(self) -> None:
        """Admit a call or raise CircuitOpenError."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return

            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - self._opened_at
                if elapsed < self.cooldown_seconds:
                    raise CircuitOpenError(self.name, self.cooldown_seconds - elapsed)
                self._transition_to(CircuitState.HALF_OPEN)

            # Half-open: exactly one trial call at a time
            if self._trial_in_flight:
                raise CircuitOpenError(self.name, 0.0)
            self._trial_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.CLOSED)
            else:
                self._consecutive_failures = 0

    def record_failure(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
                return
            self._consecutive_failures += 1
            if (
                self._state == CircuitState.CLOSED
                and self._consecutive_failures >= self.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)

    def _record_error(self, exc: BaseException) -> None:
        if self._counts_as_failure(exc):
            self.record_failure()
        else:
            self.record_success()

    def _release_trial(self) -> None:
        # Cancelled or interrupted trial: let the next caller try instead.
        with self._lock:
            self._trial_in_flight = False

    def call(self, operation: Callable[[], T]) -> T:
        """Run operation under the breaker."""
        self.allow_request()
        try:
            result = operation()
        except Exception as exc:
            self._record_error(exc)
            raise
        except BaseException:
            self._release_trial()
            raise
        self.record_success()
        return result

    async def call_async(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run a zero-argument coroutine function under the breaker."""
        self.allow_request()
        try:
            result = await operation()
        except Exception as exc:
            self._record_error(exc)
            raise
        except BaseException:
            self._release_trial()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        """Manually reset the circuit to closed state."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
