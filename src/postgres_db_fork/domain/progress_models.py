"""Progress models reported by the progress monitor."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from postgres_db_fork.domain.job_state import ForkPhase


class TableStatus(StrEnum):
    """Transfer status of one table."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class ProgressModel(BaseModel):
    """Base model for progress payloads."""

    model_config = ConfigDict(extra="forbid")


class TableProgress(ProgressModel):
    """Transient progress of one table."""

    name: str
    rows_total: int = 0
    rows_completed: int = 0
    percent: float = 0.0
    bytes_completed: int = 0
    start_time: datetime | None = None
    duration_seconds: float = 0.0
    speed: str = ""
    status: TableStatus = TableStatus.PENDING
    error: str | None = None


class OverallProgress(ProgressModel):
    """Aggregate progress across all tables of a fork."""

    tables_total: int = 0
    tables_completed: int = 0
    tables_failed: int = 0
    rows_total: int = 0
    rows_completed: int = 0
    percent: float = 0.0
    duration_seconds: float = 0.0
    start_time: datetime


class ProgressReport(ProgressModel):
    """Point-in-time snapshot including derived ETA and speed."""

    phase: ForkPhase
    message: str = ""
    overall: OverallProgress
    current_table: TableProgress | None = None
    tables: list[TableProgress] = Field(default_factory=list)
    eta_seconds: float | None = None
    transfer_speed: str = ""


__all__ = [
    "OverallProgress",
    "ProgressReport",
    "TableProgress",
    "TableStatus",
]
