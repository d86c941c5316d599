from __future__ import annotations

import asyncio
import errno

import asyncpg
import pytest

from postgres_db_fork.application.services.error_handler import (
    CircuitBreaker,
    ErrorHandler,
    classify,
)
from postgres_db_fork.domain.errors import (
    ErrorSeverity,
    ErrorType,
    ForkError,
    ForkInterruptedError,
    RetryConfig,
    fatal_error,
    recoverable_error,
)

FAST_RETRY = RetryConfig(
    max_attempts=3,
    initial_delay_seconds=0.001,
    max_delay_seconds=0.01,
    jitter_ratio=0.0,
)


class SqlStateError(Exception):
    def __init__(self, sqlstate: str, message: str = "driver error") -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_unique_violation_is_fatal_data_integrity() -> None:
    error = asyncpg.exceptions.UniqueViolationError("duplicate key value")

    classification = classify(error)

    assert classification.error_type == ErrorType.DATA_INTEGRITY
    assert classification.severity == ErrorSeverity.FATAL
    assert classification.retryable is False


@pytest.mark.parametrize(
    ("sqlstate", "error_type", "retryable", "retry_after"),
    [
        ("08006", ErrorType.CONNECTION, True, 5.0),
        ("28P01", ErrorType.PERMISSIONS, False, 0.0),
        ("53300", ErrorType.RESOURCE_LIMITS, True, 30.0),
        ("55P03", ErrorType.TIMEOUT, True, 10.0),
        ("58030", ErrorType.RESOURCE_LIMITS, True, 60.0),
        ("XX000", ErrorType.UNKNOWN, False, 0.0),
    ],
)
def test_sqlstate_table(
    sqlstate: str,
    error_type: ErrorType,
    retryable: bool,
    retry_after: float,
) -> None:
    classification = classify(SqlStateError(sqlstate))

    assert classification.error_type == error_type
    assert classification.retryable is retryable
    assert classification.retry_after == retry_after


def test_sqlstate_wins_over_message_text() -> None:
    error = SqlStateError("23505", "connection refused while checking duplicates")

    assert classify(error).error_type == ErrorType.DATA_INTEGRITY


def test_python_exception_types_are_classified() -> None:
    assert classify(ConnectionRefusedError()).error_type == ErrorType.CONNECTION
    assert classify(TimeoutError()).retry_after == 10.0
    assert classify(PermissionError("nope")).error_type == ErrorType.PERMISSIONS


def test_connection_refused_text_is_retryable() -> None:
    classification = classify(RuntimeError("could not connect: Connection refused"))

    assert classification.error_type == ErrorType.CONNECTION
    assert classification.retryable is True
    assert classification.retry_after == 5.0


def test_other_connection_text_is_fatal() -> None:
    classification = classify(RuntimeError("connection closed by peer"))

    assert classification.error_type == ErrorType.CONNECTION
    assert classification.retryable is False


def test_database_in_use_message_is_not_a_permission_error() -> None:
    error = RuntimeError('source database "app_prod" is being accessed by other users')

    classification = classify(error)

    assert classification.error_type == ErrorType.RESOURCE_LIMITS
    assert classification.retryable is True


def test_permission_denied_text_is_fatal() -> None:
    classification = classify(RuntimeError("permission denied for table users"))

    assert classification.error_type == ErrorType.PERMISSIONS
    assert classification.severity == ErrorSeverity.FATAL


@pytest.mark.parametrize(
    ("message", "error_type", "retryable"),
    [
        ("insufficient permissions to create database", ErrorType.PERMISSIONS, False),
        ("access denied for user app", ErrorType.PERMISSIONS, False),
        ("configuration file missing host", ErrorType.CONFIGURATION, False),
        ("parsing failed at line 3", ErrorType.CONFIGURATION, False),
        ("invalidated snapshot identifier", ErrorType.CONFIGURATION, False),
        ("read timeouts exceeded", ErrorType.TIMEOUT, True),
        ("sorry, too many connections for role app", ErrorType.RESOURCE_LIMITS, True),
        ("connections dropped by server", ErrorType.CONNECTION, False),
    ],
)
def test_text_rules_match_inflected_keywords(
    message: str,
    error_type: ErrorType,
    retryable: bool,
) -> None:
    classification = classify(RuntimeError(message))

    assert classification.error_type == error_type
    assert classification.retryable is retryable


def test_aggregated_connect_failure_is_retryable_connection_error() -> None:
    error = OSError(
        "Multiple exceptions: [Errno 111] Connect call failed ('::1', 5432, 0, 0), "
        "[Errno 111] Connect call failed ('127.0.0.1', 5432)"
    )

    classification = classify(error)

    assert classification.error_type == ErrorType.CONNECTION
    assert classification.retryable is True
    assert classification.retry_after == 5.0


def test_os_error_with_connection_errno_is_retryable() -> None:
    classification = classify(OSError(errno.EHOSTUNREACH, "No route to host"))

    assert classification.error_type == ErrorType.CONNECTION
    assert classification.retryable is True


def test_other_os_errors_fall_through_to_text_rules() -> None:
    classification = classify(OSError(errno.ENOSPC, "No space left on device"))

    assert classification.error_type == ErrorType.RESOURCE_LIMITS


def test_unmatched_error_is_unknown_fatal() -> None:
    classification = classify(RuntimeError("something odd happened"))

    assert classification.error_type == ErrorType.UNKNOWN
    assert classification.retryable is False


def test_classification_is_stable() -> None:
    error = RuntimeError("disk full on /var/lib/postgresql")

    assert classify(error) == classify(error)


def test_wrap_error_keeps_existing_classification() -> None:
    handler = ErrorHandler(FAST_RETRY)
    original = recoverable_error(ErrorType.TIMEOUT, "lock wait", retry_after=3.0)

    wrapped = handler.wrap_error(original, "schema transfer failed", "table users")

    assert wrapped.error_type == ErrorType.TIMEOUT
    assert wrapped.retry_after == 3.0
    assert wrapped.is_retryable()
    assert wrapped.message == "schema transfer failed: lock wait"
    assert "table users" in wrapped.context


def test_wrap_error_counts_classified_errors() -> None:
    handler = ErrorHandler(FAST_RETRY, context="job j1")

    wrapped = handler.wrap_error(ConnectionResetError("reset"), "copy failed")

    assert wrapped.error_type == ErrorType.CONNECTION
    assert wrapped.context == ["job j1"]
    assert handler.error_summary() == {"connection": 1}
    assert str(wrapped) == "[connection] copy failed: reset (context: job j1)"


def test_should_retry_stops_at_max_attempts() -> None:
    handler = ErrorHandler(FAST_RETRY)
    error = recoverable_error(ErrorType.CONNECTION, "lost")

    assert handler.should_retry(error, 1)[0] is True
    assert handler.should_retry(error, 2)[0] is True
    assert handler.should_retry(error, 3) == (False, 0.0)


def test_should_retry_rejects_types_outside_policy() -> None:
    handler = ErrorHandler(FAST_RETRY)
    error = recoverable_error(ErrorType.DATA_INTEGRITY, "odd but retryable")

    assert handler.should_retry(error, 1) == (False, 0.0)


def test_backoff_uses_suggested_delay() -> None:
    handler = ErrorHandler(RetryConfig(jitter_ratio=0.0))

    assert handler.backoff(1, suggested_delay=7.5) == 7.5


def test_backoff_grows_and_is_capped() -> None:
    handler = ErrorHandler(
        RetryConfig(
            initial_delay_seconds=1.0,
            backoff_factor=2.0,
            max_delay_seconds=5.0,
            jitter_ratio=0.0,
        )
    )

    assert handler.backoff(1) == 2.0
    assert handler.backoff(2) == 4.0
    assert handler.backoff(3) == 5.0


def test_backoff_jitter_stays_within_ratio() -> None:
    handler = ErrorHandler(
        RetryConfig(initial_delay_seconds=1.0, backoff_factor=2.0, jitter_ratio=0.1)
    )

    for _ in range(20):
        assert 2.0 <= handler.backoff(1) <= 2.2


def test_retry_with_backoff_succeeds_after_transient_failures() -> None:
    handler = ErrorHandler(FAST_RETRY)
    calls = 0

    async def operation() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise recoverable_error(ErrorType.CONNECTION, "reset by peer")
        return "ok"

    result = asyncio.run(handler.retry_with_backoff(operation, "copy"))

    assert result == "ok"
    assert calls == 3


def test_retry_with_backoff_does_not_retry_fatal_errors() -> None:
    handler = ErrorHandler(FAST_RETRY)
    calls = 0

    async def operation() -> None:
        nonlocal calls
        calls += 1
        raise SqlStateError("42501", "permission denied")

    with pytest.raises(ForkError) as exc_info:
        asyncio.run(handler.retry_with_backoff(operation, "create database"))

    assert calls == 1
    assert exc_info.value.error_type == ErrorType.PERMISSIONS
    assert exc_info.value.severity == ErrorSeverity.FATAL


def test_retry_with_backoff_exhaustion_is_fatal_with_history() -> None:
    handler = ErrorHandler(FAST_RETRY)

    async def operation() -> None:
        raise recoverable_error(ErrorType.CONNECTION, "reset by peer")

    with pytest.raises(ForkError) as exc_info:
        asyncio.run(handler.retry_with_backoff(operation, "copy"))

    error = exc_info.value
    assert error.severity == ErrorSeverity.FATAL
    assert error.retryable is False
    assert "after 3 attempts" in error.message
    assert sum("attempt" in item for item in error.context) == 3


def test_retry_sleep_is_interrupted_by_cancel_event() -> None:
    async def scenario() -> int:
        cancel_event = asyncio.Event()
        handler = ErrorHandler(
            RetryConfig(max_attempts=5, initial_delay_seconds=30.0, max_delay_seconds=30.0),
            cancel_event=cancel_event,
        )
        calls = 0

        async def operation() -> None:
            nonlocal calls
            calls += 1
            raise ConnectionResetError("reset")

        asyncio.get_running_loop().call_later(0.05, cancel_event.set)
        with pytest.raises(ForkInterruptedError):
            await asyncio.wait_for(handler.retry_with_backoff(operation, "copy"), timeout=5)
        return calls

    assert asyncio.run(scenario()) == 1


def test_circuit_breaker_opens_after_threshold_and_half_opens() -> None:
    clock = FakeClock()
    breaker = CircuitBreaker(failure_threshold=3, reset_timeout_seconds=30.0, clock=clock)

    assert breaker.record_failure() is False
    assert breaker.record_failure() is False
    assert breaker.record_failure() is True
    assert breaker.is_open is True

    clock.now = 31.0
    assert breaker.is_open is False

    breaker.record_success()
    assert breaker.consecutive_failures == 0


def test_retry_with_circuit_breaker_stops_when_breaker_opens() -> None:
    breaker = CircuitBreaker(failure_threshold=2, reset_timeout_seconds=60.0)
    handler = ErrorHandler(
        RetryConfig(max_attempts=10, initial_delay_seconds=0.001, jitter_ratio=0.0),
        circuit_breaker=breaker,
    )
    calls = 0

    async def connect() -> None:
        nonlocal calls
        calls += 1
        raise recoverable_error(ErrorType.CONNECTION, "refused")

    with pytest.raises(ForkError) as first:
        asyncio.run(handler.retry_with_circuit_breaker(connect, "connect"))
    assert calls == 2
    assert "circuit breaker opened" in first.value.context

    with pytest.raises(ForkError) as second:
        asyncio.run(handler.retry_with_circuit_breaker(connect, "connect"))
    assert calls == 2
    assert second.value.details == "circuit breaker is open"


def test_fork_interrupted_error_passes_through_retry() -> None:
    handler = ErrorHandler(FAST_RETRY)

    async def operation() -> None:
        raise ForkInterruptedError()

    with pytest.raises(ForkInterruptedError):
        asyncio.run(handler.retry_with_backoff(operation, "copy"))


def test_fatal_fork_error_is_not_retried() -> None:
    handler = ErrorHandler(FAST_RETRY)
    calls = 0

    async def operation() -> None:
        nonlocal calls
        calls += 1
        raise fatal_error(ErrorType.CONFIGURATION, "bad config")

    with pytest.raises(ForkError):
        asyncio.run(handler.retry_with_backoff(operation, "validate"))
    assert calls == 1
