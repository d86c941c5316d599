"""Application services public API."""

from postgres_db_fork.application.services.error_handler import (
    CircuitBreaker,
    Classification,
    ErrorHandler,
    classify,
)
from postgres_db_fork.application.services.fork_metrics import ForkMetrics, ForkMetricsSnapshot
from postgres_db_fork.application.services.forker import (
    Forker,
    JobProgressRecorder,
    PipelineFactory,
)
from postgres_db_fork.application.services.job_service import (
    ForkerFactory,
    JobAccepted,
    JobCleanupResponse,
    JobListResponse,
    JobService,
)
from postgres_db_fork.application.services.progress_monitor import ProgressMonitor

__all__ = [
    "CircuitBreaker",
    "Classification",
    "ErrorHandler",
    "ForkMetrics",
    "ForkMetricsSnapshot",
    "Forker",
    "ForkerFactory",
    "JobAccepted",
    "JobCleanupResponse",
    "JobListResponse",
    "JobProgressRecorder",
    "JobService",
    "PipelineFactory",
    "ProgressMonitor",
    "classify",
]
