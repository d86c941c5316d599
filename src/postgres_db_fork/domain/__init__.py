"""Domain public API."""

from postgres_db_fork.domain.errors import (
    ErrorSeverity,
    ErrorType,
    ForkError,
    ForkInterruptedError,
    HookError,
    JobConflictError,
    JobManagementError,
    JobNotFoundError,
    JobStateError,
    JobStateNotInitializedError,
    PipelineError,
    RetryConfig,
    StateIOError,
    fatal_error,
    recoverable_error,
    warning_error,
)
from postgres_db_fork.domain.fork_config import (
    DatabaseConfig,
    ForkConfig,
    HooksConfig,
    sanitize_branch_name,
)
from postgres_db_fork.domain.job_state import (
    ConnectionIdentity,
    ForkPhase,
    JobState,
    JobStatus,
)
from postgres_db_fork.domain.ports import (
    ConnectionFactory,
    DatabaseConnection,
    HookRunner,
    RetryRunner,
    TransferObserver,
    TransferPipeline,
    TransferPlan,
)
from postgres_db_fork.domain.progress_models import (
    OverallProgress,
    ProgressReport,
    TableProgress,
    TableStatus,
)

__all__ = [
    "ConnectionFactory",
    "ConnectionIdentity",
    "DatabaseConfig",
    "DatabaseConnection",
    "ErrorSeverity",
    "ErrorType",
    "ForkConfig",
    "ForkError",
    "ForkInterruptedError",
    "ForkPhase",
    "HookError",
    "HookRunner",
    "HooksConfig",
    "JobConflictError",
    "JobManagementError",
    "JobNotFoundError",
    "JobState",
    "JobStateError",
    "JobStateNotInitializedError",
    "JobStatus",
    "OverallProgress",
    "PipelineError",
    "ProgressReport",
    "RetryConfig",
    "RetryRunner",
    "StateIOError",
    "TableProgress",
    "TableStatus",
    "TransferObserver",
    "TransferPipeline",
    "TransferPlan",
    "fatal_error",
    "recoverable_error",
    "sanitize_branch_name",
    "warning_error",
]
