"""Infrastructure layer public API."""

from postgres_db_fork.infrastructure.database import PostgresConnection, connect_postgres
from postgres_db_fork.infrastructure.hooks import ShellHookRunner
from postgres_db_fork.infrastructure.state import (
    ResumptionManager,
    cleanup_old_jobs,
    list_jobs,
)
from postgres_db_fork.infrastructure.transfers import StreamingTransferPipeline

__all__ = [
    "PostgresConnection",
    "ResumptionManager",
    "ShellHookRunner",
    "StreamingTransferPipeline",
    "cleanup_old_jobs",
    "connect_postgres",
    "list_jobs",
]
