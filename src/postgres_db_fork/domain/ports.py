"""Ports for database access, hooks, and transfer pipelines."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar, runtime_checkable

from postgres_db_fork.domain.fork_config import DatabaseConfig
from postgres_db_fork.domain.job_state import ForkPhase


class DatabaseConnection(Protocol):
    """Database operations the fork engine relies on."""

    async def execute(self, query: str, *args: Any) -> str:
        """Execute a statement and return its status tag."""

    async def fetch(self, query: str, *args: Any) -> list[Any]:
        """Run a query and return its rows."""

    async def ping(self) -> None:
        """Verify the connection is usable."""

    async def database_exists(self, name: str) -> bool:
        """Return whether a database with this name exists."""

    async def create_database(
        self,
        target: str,
        template: str | None = None,
        drop_if_exists: bool = False,
    ) -> None:
        """Create a database, optionally from a template, retrying while busy."""

    async def drop_database(self, name: str) -> None:
        """Terminate sessions on a database and drop it."""

    async def get_database_size(self, name: str) -> int:
        """Return database size in bytes."""

    async def get_table_list(self, schema: str = "public") -> list[str]:
        """Return ordinary table names in one schema."""

    async def get_table_row_counts(self, schema: str = "public") -> dict[str, int]:
        """Return estimated row counts per table in one schema."""

    async def close(self) -> None:
        """Release the underlying connection."""


ConnectionFactory = Callable[[DatabaseConfig], Awaitable[DatabaseConnection]]

T = TypeVar("T")


class RetryRunner(Protocol):
    """Runs an operation under a retry policy."""

    async def retry_with_backoff(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
    ) -> T:
        """Retry retryable failures and raise a classified error otherwise."""


@runtime_checkable
class HookRunner(Protocol):
    """Runs the shell commands configured for one hook stage."""

    async def run(self, stage: str, commands: Sequence[str]) -> None:
        """Run commands in order, raising ``HookError`` on the first failure."""


@runtime_checkable
class TransferObserver(Protocol):
    """Receives pipeline events so the caller can record progress."""

    def phase_started(self, phase: ForkPhase) -> None:
        """A pipeline phase is starting."""

    def schema_completed(self) -> None:
        """Pre-data schema objects were restored."""

    def table_started(self, table: str) -> None:
        """Data transfer for a table is starting."""

    def table_completed(self, table: str) -> None:
        """Data for a table was restored."""

    def table_failed(self, table: str, error: BaseException) -> None:
        """Data transfer for a table failed after retries."""

    def indexes_completed(self) -> None:
        """Post-data objects (indexes, constraints, triggers) were restored."""


@dataclass(slots=True)
class TransferPlan:
    """Work a streamed transfer still has to do."""

    tables: list[str] = field(default_factory=list)
    transfer_schema: bool = True
    transfer_data: bool = True
    transfer_post_data: bool = True
    reset_tables: bool = False


class TransferPipeline(Protocol):
    """Cross-server transfer of schema and data."""

    async def list_tables(self) -> list[str]:
        """Return source tables after include/exclude filtering."""

    async def transfer(
        self,
        plan: TransferPlan | None = None,
        observer: TransferObserver | None = None,
    ) -> None:
        """Run the planned phases."""


__all__ = [
    "ConnectionFactory",
    "DatabaseConnection",
    "HookRunner",
    "RetryRunner",
    "TransferObserver",
    "TransferPipeline",
    "TransferPlan",
]
