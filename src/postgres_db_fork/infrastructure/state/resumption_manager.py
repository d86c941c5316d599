"""File-backed job state store for resumable forks."""

from __future__ import annotations

import logging
import tempfile
import threading
from collections.abc import Mapping
from datetime import UTC, datetime, timedelta
from pathlib import Path

from postgres_db_fork.domain.errors import (
    JobConflictError,
    JobStateNotInitializedError,
    StateIOError,
)
from postgres_db_fork.domain.job_state import (
    RESUMABLE_JOB_STATUSES,
    TERMINAL_JOB_STATUSES,
    ConnectionIdentity,
    ForkPhase,
    JobState,
    JobStatus,
)
from postgres_db_fork.infrastructure.state.atomic_files import atomic_write_text, remove_file

logger = logging.getLogger(__name__)

STATE_FILE_SUFFIX = ".json"


def default_state_dir() -> Path:
    return Path(tempfile.gettempdir()) / "postgres-db-fork" / "jobs"


def _read_state(path: Path) -> JobState | None:
    """Load one state file; missing or unreadable files yield ``None``."""

    try:
        return JobState.model_validate_json(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable job state file %s: %s", path, exc)
        return None


class ResumptionManager:
    """Owns the state file of one job id.

    All access to the in-memory ``JobState`` and its on-disk copy happens under one lock.
    Every mutation is persisted before the method returns.
    """

    def __init__(self, job_id: str, state_dir: str | Path | None = None) -> None:
        if not job_id or "/" in job_id or job_id.startswith("."):
            raise ValueError(f"Invalid job id: {job_id!r}")
        self._job_id = job_id
        self._state_dir = Path(state_dir) if state_dir else default_state_dir()
        self._lock = threading.Lock()
        self._state: JobState | None = None

    @property
    def job_id(self) -> str:
        return self._job_id

    @property
    def state_path(self) -> Path:
        return self._state_dir / f"{self._job_id}{STATE_FILE_SUFFIX}"

    def initialize_job(
        self,
        source: ConnectionIdentity,
        dest: ConnectionIdentity,
        target_database: str,
        table_row_counts: Mapping[str, int],
    ) -> tuple[JobState, bool]:
        """Resume a compatible unfinished job or start a fresh one."""

        with self._lock:
            try:
                self._state_dir.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise StateIOError(
                    f"failed to create state directory {self._state_dir}: {exc}"
                ) from exc

            existing = _read_state(self.state_path)
            if existing is not None:
                if existing.status in RESUMABLE_JOB_STATUSES and existing.is_compatible_with(
                    source, dest, target_database
                ):
                    existing.status = JobStatus.RUNNING
                    existing.touch()
                    self._state = existing
                    self._save_locked()
                    logger.info(
                        "Resuming job %s at phase %s with %s/%s tables completed.",
                        self._job_id,
                        existing.phase,
                        len(existing.completed_tables),
                        len(existing.table_row_counts),
                    )
                    return existing.model_copy(deep=True), True

                logger.info(
                    "Discarding previous state of job %s (status=%s, compatible=%s).",
                    self._job_id,
                    existing.status,
                    existing.is_compatible_with(source, dest, target_database),
                )
                try:
                    remove_file(self.state_path)
                except OSError:
                    logger.warning("Failed to remove stale state file %s.", self.state_path)

            now = datetime.now(tz=UTC)
            self._state = JobState(
                job_id=self._job_id,
                start_time=now,
                last_updated=now,
                source_config=source,
                dest_config=dest,
                target_database=target_database,
                table_row_counts=dict(table_row_counts),
            )
            self._save_locked()
            return self._state.model_copy(deep=True), False

    def load_job(self) -> JobState | None:
        """Attach to an existing state file without changing it."""

        with self._lock:
            self._state = _read_state(self.state_path)
            if self._state is None:
                return None
            return self._state.model_copy(deep=True)

    def get_job_state(self) -> JobState | None:
        with self._lock:
            return None if self._state is None else self._state.model_copy(deep=True)

    def update_phase(self, phase: ForkPhase) -> None:
        with self._lock:
            state = self._require_state()
            state.phase = phase
            if phase == ForkPhase.SCHEMA:
                state.schema_completed = False
            elif phase == ForkPhase.DATA:
                state.schema_completed = True
            elif phase == ForkPhase.INDEXES:
                state.indexes_completed = False
            elif phase == ForkPhase.COMPLETED:
                state.status = JobStatus.COMPLETED
                state.indexes_completed = True
            elif phase == ForkPhase.FAILED:
                state.status = JobStatus.FAILED
            self._save_locked()

    def mark_schema_completed(self) -> None:
        with self._lock:
            self._require_state().schema_completed = True
            self._save_locked()

    def mark_indexes_completed(self) -> None:
        with self._lock:
            self._require_state().indexes_completed = True
            self._save_locked()

    def mark_table_completed(self, table: str) -> None:
        with self._lock:
            state = self._require_state()
            state.completed_tables.add(table)
            state.failed_tables.pop(table, None)
            self._save_locked()

    def mark_table_failed(self, table: str, error: BaseException | str) -> None:
        with self._lock:
            state = self._require_state()
            state.failed_tables[table] = str(error)
            state.completed_tables.discard(table)
            self._save_locked()

    def get_remaining_tables(self) -> list[str]:
        with self._lock:
            return self._require_state().remaining_tables()

    def reset_progress(self) -> None:
        """Forget recorded progress while keeping the job identity."""

        with self._lock:
            state = self._require_state()
            state.phase = ForkPhase.INITIALIZING
            state.completed_tables.clear()
            state.failed_tables.clear()
            state.schema_completed = False
            state.indexes_completed = False
            self._save_locked()

    def pause_job(self) -> None:
        with self._lock:
            state = self._require_state()
            self._ensure_transition(state, "pause")
            state.status = JobStatus.PAUSED
            self._save_locked()

    def complete_job(self, cleanup: bool = False) -> None:
        with self._lock:
            state = self._require_state()
            self._ensure_transition(state, "complete")
            state.phase = ForkPhase.COMPLETED
            state.status = JobStatus.COMPLETED
            state.indexes_completed = True
            state.error = ""
            self._save_locked()
            if cleanup:
                try:
                    remove_file(self.state_path)
                except OSError:
                    logger.warning("Failed to remove state file %s.", self.state_path)

    def set_error(self, error: BaseException | str) -> None:
        with self._lock:
            state = self._require_state()
            self._ensure_transition(state, "fail")
            state.phase = ForkPhase.FAILED
            state.status = JobStatus.FAILED
            state.error = str(error)
            self._save_locked()

    def cancel_job(self, reason: str = "job cancelled") -> None:
        with self._lock:
            state = self._require_state()
            self._ensure_transition(state, "cancel")
            state.status = JobStatus.CANCELLED
            self._save_locked()
        logger.info("Job %s cancelled: %s", self._job_id, reason)

    def _require_state(self) -> JobState:
        if self._state is None:
            raise JobStateNotInitializedError(f"Job {self._job_id} is not initialized.")
        return self._state

    def _ensure_transition(self, state: JobState, action: str) -> None:
        if state.status in TERMINAL_JOB_STATUSES:
            raise JobConflictError(
                f"Cannot {action} job {self._job_id} in terminal status {state.status}."
            )

    def _save_locked(self) -> None:
        state = self._require_state()
        state.touch()
        try:
            atomic_write_text(self.state_path, state.model_dump_json(indent=2))
        except OSError as exc:
            raise StateIOError(f"failed to write job state {self.state_path}: {exc}") from exc


def list_jobs(state_dir: str | Path | None = None) -> list[JobState]:
    """Return every readable job state, newest first; corrupt files are skipped."""

    directory = Path(state_dir) if state_dir else default_state_dir()
    if not directory.is_dir():
        return []
    jobs = [
        state
        for path in sorted(directory.glob(f"*{STATE_FILE_SUFFIX}"))
        if (state := _read_state(path)) is not None
    ]
    jobs.sort(key=lambda state: state.last_updated, reverse=True)
    return jobs


def cleanup_old_jobs(state_dir: str | Path | None, max_age: timedelta) -> int:
    """Delete terminal jobs whose last update is older than ``max_age``."""

    directory = Path(state_dir) if state_dir else default_state_dir()
    cutoff = datetime.now(tz=UTC) - max_age
    removed = 0
    for state in list_jobs(directory):
        if state.status not in TERMINAL_JOB_STATUSES or state.last_updated >= cutoff:
            continue
        path = directory / f"{state.job_id}{STATE_FILE_SUFFIX}"
        try:
            if remove_file(path):
                removed += 1
        except OSError as exc:
            logger.warning("Failed to remove job state %s: %s", path, exc)
    if removed:
        logger.info("Removed %s old job state file(s) from %s.", removed, directory)
    return removed


__all__ = [
    "ResumptionManager",
    "STATE_FILE_SUFFIX",
    "cleanup_old_jobs",
    "default_state_dir",
    "list_jobs",
]
