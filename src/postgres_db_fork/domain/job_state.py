"""Persisted job state for resumable fork operations."""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class ForkPhase(StrEnum):
    """Coarse stage of a fork job."""

    INITIALIZING = "initializing"
    SCHEMA = "schema"
    DATA = "data"
    INDEXES = "indexes"
    CONSTRAINTS = "constraints"
    FINALIZATION = "finalization"
    COMPLETED = "completed"
    FAILED = "failed"


class JobStatus(StrEnum):
    """Lifecycle status of a fork job."""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


RESUMABLE_JOB_STATUSES = frozenset({JobStatus.RUNNING, JobStatus.PAUSED})
TERMINAL_JOB_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)


class ConnectionIdentity(BaseModel):
    """Password-free snapshot of where a connection points."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    host: str
    port: int
    username: str
    database: str = ""
    sslmode: str = "prefer"


class JobState(BaseModel):
    """Identity and resumable progress of one fork job."""

    model_config = ConfigDict(extra="ignore", validate_assignment=False)

    job_id: str
    start_time: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    last_updated: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))
    phase: ForkPhase = ForkPhase.INITIALIZING
    status: JobStatus = JobStatus.RUNNING
    completed_tables: set[str] = Field(default_factory=set)
    failed_tables: dict[str, str] = Field(default_factory=dict)
    table_row_counts: dict[str, int] = Field(default_factory=dict)
    source_config: ConnectionIdentity
    dest_config: ConnectionIdentity
    target_database: str
    schema_completed: bool = False
    indexes_completed: bool = False
    error: str = ""

    @field_serializer("completed_tables")
    def _serialize_completed_tables(self, value: set[str]) -> list[str]:
        return sorted(value)

    def touch(self) -> None:
        """Advance ``last_updated`` without ever moving it backwards."""

        now = datetime.now(tz=UTC)
        if now > self.last_updated:
            self.last_updated = now

    def is_compatible_with(
        self,
        source: ConnectionIdentity,
        dest: ConnectionIdentity,
        target_database: str,
    ) -> bool:
        return (
            self.source_config == source
            and self.dest_config == dest
            and self.target_database == target_database
        )

    def remaining_tables(self) -> list[str]:
        """Tables with an expected row count that have not completed yet."""

        return [name for name in self.table_row_counts if name not in self.completed_tables]


__all__ = [
    "ConnectionIdentity",
    "ForkPhase",
    "JobState",
    "JobStatus",
    "RESUMABLE_JOB_STATUSES",
    "TERMINAL_JOB_STATUSES",
]
