"""Job state persistence adapters."""

from postgres_db_fork.infrastructure.state.atomic_files import atomic_write_text
from postgres_db_fork.infrastructure.state.resumption_manager import (
    ResumptionManager,
    cleanup_old_jobs,
    default_state_dir,
    list_jobs,
)

__all__ = [
    "ResumptionManager",
    "atomic_write_text",
    "cleanup_old_jobs",
    "default_state_dir",
    "list_jobs",
]
