"""
Unit tests for the circuit breaker.
"""

from unittest.mock import Mock

import httpx
import pytest

from mailhook.services.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState
from mailhook.services.retry import RetryPolicy, execute


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class _Interrupted(BaseException):
    pass


def _breaker(threshold: int = 3, cooldown: float = 30.0):
    clock = FakeClock()
    return CircuitBreaker("mail-api", failure_threshold=threshold, cooldown_seconds=cooldown, clock=clock), clock


def _fail(breaker: CircuitBreaker, times: int) -> None:
    for _ in range(times):
        with pytest.raises(ConnectionError):
            breaker.call(Mock(side_effect=ConnectionError("down")))


class TestClosed:

    def test_successful_calls_pass_through(self):
        breaker, _ = _breaker()
        assert breaker.call(lambda: 42) == 42
        assert breaker.state == CircuitState.CLOSED

    def test_opens_after_threshold_consecutive_failures(self):
        breaker, _ = _breaker(threshold=3)
        _fail(breaker, 2)
        assert breaker.state == CircuitState.CLOSED

        _fail(breaker, 1)
        assert breaker.state == CircuitState.OPEN

    def test_success_resets_consecutive_count(self):
        breaker, _ = _breaker(threshold=3)
        _fail(breaker, 2)
        breaker.call(lambda: "ok")
        _fail(breaker, 2)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 2

    def test_client_errors_do_not_trip_the_circuit(self):
        breaker, _ = _breaker(threshold=1)
        request = httpx.Request("GET", "https://api.example.test/webhooks")
        not_found = httpx.HTTPStatusError(
            "404", request=request, response=httpx.Response(404, request=request)
        )

        with pytest.raises(httpx.HTTPStatusError):
            breaker.call(Mock(side_effect=not_found))
        assert breaker.state == CircuitState.CLOSED

    def test_invalid_threshold_rejected(self):
        with pytest.raises(ValueError):
            CircuitBreaker("x", failure_threshold=0)


class TestOpenAndHalfOpen:

    def test_open_circuit_fails_fast_without_calling(self):
        breaker, clock = _breaker(threshold=1, cooldown=30)
        _fail(breaker, 1)

        clock.now = 10
        operation = Mock()
        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.call(operation)

        operation.assert_not_called()
        assert exc_info.value.retry_in == pytest.approx(20)

    def test_trial_success_after_cooldown_closes_circuit(self):
        breaker, clock = _breaker(threshold=1, cooldown=30)
        _fail(breaker, 1)

        clock.now = 30
        assert breaker.call(lambda: "recovered") == "recovered"
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0

    def test_trial_failure_reopens_circuit(self):
        breaker, clock = _breaker(threshold=1, cooldown=30)
        _fail(breaker, 1)

        clock.now = 31
        _fail(breaker, 1)
        assert breaker.state == CircuitState.OPEN

        # Cooldown restarts from the failed trial
        clock.now = 40
        with pytest.raises(CircuitOpenError):
            breaker.call(lambda: "too early")

    def test_only_one_trial_call_at_a_time(self):
        breaker, clock = _breaker(threshold=1, cooldown=5)
        _fail(breaker, 1)
        clock.now = 5

        breaker.allow_request()  # trial admitted
        assert breaker.state == CircuitState.HALF_OPEN
        with pytest.raises(CircuitOpenError):
            breaker.allow_request()

        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_interrupted_trial_frees_the_slot(self):
        breaker, clock = _breaker(threshold=1, cooldown=5)
        _fail(breaker, 1)
        clock.now = 5

        with pytest.raises(_Interrupted):
            breaker.call(Mock(side_effect=_Interrupted))
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.call(lambda: "ok") == "ok"

    def test_reset_closes_circuit(self):
        breaker, _ = _breaker(threshold=1)
        _fail(breaker, 1)
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED


class TestAsyncAndRetryIntegration:

    @pytest.mark.asyncio
    async def test_call_async_records_failures(self):
        breaker, _ = _breaker(threshold=2)

        async def failing():
            raise ConnectionError("down")

        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call_async(failing)
        assert breaker.state == CircuitState.OPEN

        async def ok():
            return "ok"

        with pytest.raises(CircuitOpenError):
            await breaker.call_async(ok)

    def test_open_circuit_stops_retry_loop(self):
        """Once the breaker opens, execute() stops instead of burning attempts."""
        breaker, _ = _breaker(threshold=2)
        operation = Mock(side_effect=ConnectionError("down"))

        with pytest.raises(CircuitOpenError):
            execute(
                lambda: breaker.call(operation),
                RetryPolicy(max_attempts=5, base_delay=0),
                sleep=Mock(),
            )
        assert operation.call_count == 2
