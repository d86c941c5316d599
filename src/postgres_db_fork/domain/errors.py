"""Domain exceptions and classified fork errors."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum


class ErrorType(StrEnum):
    """Failure categories used for retry decisions and reporting."""

    CONNECTION = "connection"
    PERMISSIONS = "permissions"
    CONFIGURATION = "configuration"
    RESOURCE_LIMITS = "resource_limits"
    DATA_INTEGRITY = "data_integrity"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class ErrorSeverity(StrEnum):
    """How a classified failure affects control flow."""

    FATAL = "fatal"
    RETRYABLE = "retryable"
    WARNING = "warning"


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Retry policy for one error handler."""

    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_factor: float = 2.0
    jitter_ratio: float = 0.1
    retryable_errors: frozenset[ErrorType] = field(
        default_factory=lambda: frozenset(
            {ErrorType.CONNECTION, ErrorType.TIMEOUT, ErrorType.RESOURCE_LIMITS}
        )
    )


class ForkError(Exception):
    """Classified error raised by fork components.

    A fork error is classified once where it originates. Callers only add context to it
    through ``ErrorHandler.wrap_error`` so the retry decision made at the origin survives.
    """

    def __init__(
        self,
        error_type: ErrorType,
        severity: ErrorSeverity,
        message: str,
        *,
        details: str = "",
        context: list[str] | None = None,
        retryable: bool = False,
        retry_after: float = 0.0,
        original_error: BaseException | None = None,
    ) -> None:
        self.error_type = error_type
        self.severity = severity
        self.message = message
        self.details = details
        self.context = list(context or [])
        self.retryable = retryable
        self.retry_after = retry_after
        self.original_error = original_error
        self.timestamp = datetime.now(tz=UTC)
        super().__init__(self.render())
        if original_error is not None:
            self.__cause__ = original_error

    def render(self) -> str:
        """Human-readable form used for logs and job state."""

        text = f"[{self.error_type}] {self.message}"
        if self.details:
            text = f"{text}: {self.details}"
        if self.context:
            text = f"{text} (context: {'; '.join(self.context)})"
        return text

    def __str__(self) -> str:
        return self.render()

    def is_retryable(self) -> bool:
        return self.retryable and self.severity == ErrorSeverity.RETRYABLE


class ForkInterruptedError(ForkError):
    """Raised when a fork stops because its cancellation token fired."""

    def __init__(self, message: str = "operation interrupted by user") -> None:
        super().__init__(ErrorType.UNKNOWN, ErrorSeverity.FATAL, message)


class PipelineError(Exception):
    """Raised when a dump or restore process exits unsuccessfully."""

    def __init__(self, program: str, label: str, exit_code: int, stderr: str = "") -> None:
        self.program = program
        self.label = label
        self.exit_code = exit_code
        self.stderr = stderr
        message = f"{program} ({label}) failed with exit code {exit_code}"
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(message)


class HookError(Exception):
    """Raised when a hook command exits with a non-zero status."""

    def __init__(self, stage: str, command: str, exit_code: int) -> None:
        self.stage = stage
        self.command = command
        self.exit_code = exit_code
        super().__init__(f"{stage} hook '{command}' failed with exit code {exit_code}")


class JobStateError(Exception):
    """Base class for job state store errors."""


class StateIOError(JobStateError):
    """Raised when job state cannot be written to disk."""


class JobStateNotInitializedError(JobStateError):
    """Raised when a mutator runs before a job was initialized or loaded."""


class JobManagementError(Exception):
    """Base class for job management errors."""


class JobNotFoundError(JobManagementError):
    """Raised when no job state exists for an id."""


class JobConflictError(JobManagementError):
    """Raised when an operation conflicts with current job state."""


def recoverable_error(
    error_type: ErrorType,
    message: str,
    *,
    details: str = "",
    retry_after: float = 0.0,
    original_error: BaseException | None = None,
) -> ForkError:
    """Build a retryable fork error."""

    return ForkError(
        error_type,
        ErrorSeverity.RETRYABLE,
        message,
        details=details,
        retryable=True,
        retry_after=retry_after,
        original_error=original_error,
    )


def fatal_error(
    error_type: ErrorType,
    message: str,
    *,
    details: str = "",
    original_error: BaseException | None = None,
) -> ForkError:
    """Build a non-retryable fork error."""

    return ForkError(
        error_type,
        ErrorSeverity.FATAL,
        message,
        details=details,
        original_error=original_error,
    )


def warning_error(error_type: ErrorType, message: str, *, details: str = "") -> ForkError:
    """Build a warning that callers log instead of raising."""

    return ForkError(error_type, ErrorSeverity.WARNING, message, details=details)


__all__ = [
    "ErrorSeverity",
    "ErrorType",
    "ForkError",
    "ForkInterruptedError",
    "HookError",
    "JobConflictError",
    "JobManagementError",
    "JobNotFoundError",
    "JobStateError",
    "JobStateNotInitializedError",
    "PipelineError",
    "RetryConfig",
    "StateIOError",
    "fatal_error",
    "recoverable_error",
    "warning_error",
]
