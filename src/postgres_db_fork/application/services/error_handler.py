"""Error classification, retry with backoff, and circuit breaking."""

from __future__ import annotations

import asyncio
import errno
import logging
import random
import re
import time
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from postgres_db_fork.domain.errors import (
    ErrorSeverity,
    ErrorType,
    ForkError,
    ForkInterruptedError,
    RetryConfig,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class Classification:
    """Outcome of classifying one raw error."""

    error_type: ErrorType
    severity: ErrorSeverity
    retryable: bool
    retry_after: float = 0.0
    rule: str = "default"


def _retryable(error_type: ErrorType, retry_after: float, rule: str) -> Classification:
    return Classification(error_type, ErrorSeverity.RETRYABLE, True, retry_after, rule)


def _fatal(error_type: ErrorType, rule: str) -> Classification:
    return Classification(error_type, ErrorSeverity.FATAL, False, 0.0, rule)


UNKNOWN_CLASSIFICATION = _fatal(ErrorType.UNKNOWN, "unmatched")

SQLSTATE_RULES: dict[str, Classification] = {
    "08000": _retryable(ErrorType.CONNECTION, 5.0, "sqlstate:08000"),
    "08003": _retryable(ErrorType.CONNECTION, 5.0, "sqlstate:08003"),
    "08006": _retryable(ErrorType.CONNECTION, 5.0, "sqlstate:08006"),
    "42501": _fatal(ErrorType.PERMISSIONS, "sqlstate:42501"),
    "28000": _fatal(ErrorType.PERMISSIONS, "sqlstate:28000"),
    "28P01": _fatal(ErrorType.PERMISSIONS, "sqlstate:28P01"),
    "53000": _retryable(ErrorType.RESOURCE_LIMITS, 30.0, "sqlstate:53000"),
    "53100": _retryable(ErrorType.RESOURCE_LIMITS, 30.0, "sqlstate:53100"),
    "53200": _retryable(ErrorType.RESOURCE_LIMITS, 30.0, "sqlstate:53200"),
    "53300": _retryable(ErrorType.RESOURCE_LIMITS, 30.0, "sqlstate:53300"),
    "23000": _fatal(ErrorType.DATA_INTEGRITY, "sqlstate:23000"),
    "23001": _fatal(ErrorType.DATA_INTEGRITY, "sqlstate:23001"),
    "23502": _fatal(ErrorType.DATA_INTEGRITY, "sqlstate:23502"),
    "23503": _fatal(ErrorType.DATA_INTEGRITY, "sqlstate:23503"),
    "23505": _fatal(ErrorType.DATA_INTEGRITY, "sqlstate:23505"),
    "23514": _fatal(ErrorType.DATA_INTEGRITY, "sqlstate:23514"),
    "55P03": _retryable(ErrorType.TIMEOUT, 10.0, "sqlstate:55P03"),
    "58030": _retryable(ErrorType.RESOURCE_LIMITS, 60.0, "sqlstate:58030"),
}

EXCEPTION_TYPE_RULES: tuple[tuple[type[BaseException], Classification], ...] = (
    (ConnectionRefusedError, _retryable(ErrorType.CONNECTION, 5.0, "type:connection-refused")),
    (ConnectionResetError, _retryable(ErrorType.CONNECTION, 5.0, "type:connection-reset")),
    (TimeoutError, _retryable(ErrorType.TIMEOUT, 10.0, "type:timeout")),
    (PermissionError, _fatal(ErrorType.PERMISSIONS, "type:permission")),
)

# Raised by socket connects that asyncio aggregates across addresses as a plain OSError.
CONNECTION_ERRNOS = frozenset({errno.ECONNREFUSED, errno.ECONNRESET, errno.EHOSTUNREACH})
OS_CONNECTION_CLASSIFICATION = _retryable(ErrorType.CONNECTION, 5.0, "oserror:connection")


def _word(*stems: str) -> re.Pattern[str]:
    alternatives = "|".join(re.escape(stem) for stem in stems)
    return re.compile(rf"\b(?:{alternatives})", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class TextRule:
    """Message heuristic: every ``requires`` pattern must match."""

    requires: tuple[re.Pattern[str], ...]
    classification: Classification

    def matches(self, text: str) -> bool:
        return all(pattern.search(text) for pattern in self.requires)


# Ordered; the first matching rule wins. Patterns are anchored at the start of a word and
# match inflections ("permissions", "timeouts", "configuration"). Messages that contain a
# keyword without meaning it, such as "being accessed by other users", get their own rule
# ahead of the keyword rule.
TEXT_RULES: tuple[TextRule, ...] = (
    TextRule(
        (_word("connection"), _word("refused", "timeout", "timed out")),
        _retryable(ErrorType.CONNECTION, 5.0, "text:connection-refused"),
    ),
    TextRule(
        (_word("being accessed by other users"),),
        _retryable(ErrorType.RESOURCE_LIMITS, 5.0, "text:object-in-use"),
    ),
    TextRule(
        (_word("out of memory", "disk full", "no space left", "too many"),),
        _retryable(ErrorType.RESOURCE_LIMITS, 30.0, "text:resource"),
    ),
    TextRule((_word("connection"),), _fatal(ErrorType.CONNECTION, "text:connection")),
    TextRule(
        (_word("permission", "access", "denied"),),
        _fatal(ErrorType.PERMISSIONS, "text:permission"),
    ),
    TextRule(
        (_word("timeout", "timed out", "deadline"),),
        _retryable(ErrorType.TIMEOUT, 10.0, "text:timeout"),
    ),
    TextRule(
        (_word("invalid", "config", "parse", "parsing"),),
        _fatal(ErrorType.CONFIGURATION, "text:configuration"),
    ),
)


def sqlstate_of(error: BaseException) -> str | None:
    """Return the SQLSTATE a driver attached to ``error``, if any."""

    code = getattr(error, "sqlstate", None)
    return code if isinstance(code, str) and code else None


def classify(error: BaseException) -> Classification:
    """Map a raw error to its classification; the same input always maps the same way."""

    if isinstance(error, ForkError):
        return Classification(
            error.error_type,
            error.severity,
            error.retryable,
            error.retry_after,
            "fork-error",
        )
    code = sqlstate_of(error)
    if code is not None:
        return SQLSTATE_RULES.get(code, _fatal(ErrorType.UNKNOWN, f"sqlstate:{code}"))
    for exception_type, classification in EXCEPTION_TYPE_RULES:
        if isinstance(error, exception_type):
            return classification
    if isinstance(error, OSError) and _is_connect_failure(error):
        return OS_CONNECTION_CLASSIFICATION
    text = str(error)
    for rule in TEXT_RULES:
        if rule.matches(text):
            return rule.classification
    return UNKNOWN_CLASSIFICATION


def _is_connect_failure(error: OSError) -> bool:
    if error.errno in CONNECTION_ERRNOS:
        return True
    return "connect call failed" in str(error).lower()


class CircuitBreaker:
    """Opens after consecutive failures and allows one trial call after a cool-down."""

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        reset_timeout_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._failure_threshold = max(failure_threshold, 1)
        self._reset_timeout_seconds = max(reset_timeout_seconds, 0.0)
        self._clock = clock
        self._consecutive_failures = 0
        self._opened_at: float | None = None

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def is_open(self) -> bool:
        if self._opened_at is None:
            return False
        return self._clock() - self._opened_at < self._reset_timeout_seconds

    def record_success(self) -> None:
        self._consecutive_failures = 0
        self._opened_at = None

    def record_failure(self) -> bool:
        """Count a failure and return whether the breaker is now open."""

        self._consecutive_failures += 1
        if self._consecutive_failures >= self._failure_threshold:
            self._opened_at = self._clock()
            return True
        return False


class ErrorHandler:
    """Classifies, wraps, and retries failures for one fork job."""

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        context: str = "",
        cancel_event: asyncio.Event | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._config = config or RetryConfig()
        self._context = context
        self._cancel_event = cancel_event
        self._circuit_breaker = circuit_breaker or CircuitBreaker()
        self._logger = log or logger
        self._error_counts: Counter[ErrorType] = Counter()

    @property
    def config(self) -> RetryConfig:
        return self._config

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    def bind_cancel_event(self, cancel_event: asyncio.Event | None) -> None:
        self._cancel_event = cancel_event

    def classify(self, error: BaseException) -> Classification:
        classification = classify(error)
        if classification.rule.startswith("text:"):
            self._logger.debug(
                "Classified error by message rule %s: %s", classification.rule, error
            )
        return classification

    def wrap_error(
        self,
        error: BaseException,
        message: str,
        context: str | None = None,
    ) -> ForkError:
        """Attach ``message``/``context``; classify only errors not yet classified."""

        if isinstance(error, ForkError):
            trail = list(error.context)
            if context:
                trail.append(context)
            wrapped = ForkError(
                error.error_type,
                error.severity,
                f"{message}: {error.message}" if message else error.message,
                details=error.details,
                context=trail,
                retryable=error.retryable,
                retry_after=error.retry_after,
                original_error=error.original_error,
            )
            wrapped.__cause__ = error
            return wrapped

        classification = self.classify(error)
        self._error_counts[classification.error_type] += 1
        trail = [item for item in (self._context, context) if item]
        return ForkError(
            classification.error_type,
            classification.severity,
            message,
            details=str(error) or type(error).__name__,
            context=trail,
            retryable=classification.retryable,
            retry_after=classification.retry_after,
            original_error=error,
        )

    def should_retry(self, error: BaseException, attempt: int) -> tuple[bool, float]:
        """Return whether attempt number ``attempt`` (1-based) may be followed by another."""

        if attempt >= self._config.max_attempts:
            return False, 0.0
        if not isinstance(error, ForkError):
            return False, 0.0
        if not error.is_retryable():
            return False, 0.0
        if error.error_type not in self._config.retryable_errors:
            return False, 0.0
        return True, self.backoff(attempt, error.retry_after)

    def backoff(self, attempt: int, suggested_delay: float = 0.0) -> float:
        if suggested_delay > 0:
            return suggested_delay
        delay = (
            self._config.initial_delay_seconds
            * self._config.backoff_factor
            * max(attempt, 1)
        )
        if self._config.jitter_ratio > 0:
            delay += random.uniform(0.0, delay * self._config.jitter_ratio)
        return min(delay, self._config.max_delay_seconds)

    async def retry_with_backoff(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
    ) -> T:
        """Run ``operation`` until it succeeds, fails fatally, or attempts run out."""

        history: list[str] = []
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await operation()
            except ForkInterruptedError:
                raise
            except Exception as exc:
                error = self.wrap_error(exc, f"{operation_name} failed")
                history.append(f"attempt {attempt}: {error.details or error.message}")
                retry, delay = self.should_retry(error, attempt)
                if retry:
                    self._logger.warning(
                        "%s failed (attempt %s/%s), retrying in %.1fs: %s",
                        operation_name,
                        attempt,
                        self._config.max_attempts,
                        delay,
                        error,
                    )
                    await self._sleep(delay)
                    continue
                if error.is_retryable():
                    raise self._exhausted(error, operation_name, attempt, history) from exc
                raise error from exc
            if attempt > 1:
                self._logger.info("%s succeeded after %s attempts.", operation_name, attempt)
            return result

    async def retry_with_circuit_breaker(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
    ) -> T:
        """Retry like ``retry_with_backoff`` but stop once the breaker opens."""

        breaker = self._circuit_breaker
        if breaker.is_open:
            raise ForkError(
                ErrorType.CONNECTION,
                ErrorSeverity.FATAL,
                f"{operation_name} rejected",
                details="circuit breaker is open",
                context=[item for item in (self._context,) if item],
            )

        history: list[str] = []
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await operation()
            except ForkInterruptedError:
                raise
            except Exception as exc:
                error = self.wrap_error(exc, f"{operation_name} failed")
                history.append(f"attempt {attempt}: {error.details or error.message}")
                if breaker.record_failure():
                    self._logger.error(
                        "%s: circuit breaker opened after %s consecutive failures.",
                        operation_name,
                        breaker.consecutive_failures,
                    )
                    history.append("circuit breaker opened")
                    raise self._exhausted(error, operation_name, attempt, history) from exc
                if not (
                    error.is_retryable()
                    and error.error_type in self._config.retryable_errors
                ):
                    raise error from exc
                delay = self.backoff(attempt, error.retry_after)
                self._logger.warning(
                    "%s failed (%s consecutive), retrying in %.1fs: %s",
                    operation_name,
                    breaker.consecutive_failures,
                    delay,
                    error,
                )
                await self._sleep(delay)
                continue
            breaker.record_success()
            return result

    def error_summary(self) -> dict[str, int]:
        return {str(error_type): count for error_type, count in self._error_counts.items()}

    def _exhausted(
        self,
        error: ForkError,
        operation_name: str,
        attempts: int,
        history: list[str],
    ) -> ForkError:
        self._logger.error("%s failed after %s attempts: %s", operation_name, attempts, error)
        return ForkError(
            error.error_type,
            ErrorSeverity.FATAL,
            f"{operation_name} failed after {attempts} attempts",
            details=error.details,
            context=[*error.context, *history],
            retryable=False,
            original_error=error.original_error,
        )

    async def _sleep(self, delay: float) -> None:
        """Wait between attempts; a set cancellation token ends the wait early."""

        cancel_event = self._cancel_event
        if cancel_event is None:
            await asyncio.sleep(delay)
            return
        if cancel_event.is_set():
            raise ForkInterruptedError()
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except TimeoutError:
            return
        raise ForkInterruptedError()


__all__ = [
    "CircuitBreaker",
    "Classification",
    "ErrorHandler",
    "EXCEPTION_TYPE_RULES",
    "SQLSTATE_RULES",
    "TEXT_RULES",
    "TextRule",
    "UNKNOWN_CLASSIFICATION",
    "classify",
    "sqlstate_of",
]
