from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from postgres_db_fork.domain.errors import (
    JobConflictError,
    JobStateNotInitializedError,
    StateIOError,
)
from postgres_db_fork.domain.job_state import ConnectionIdentity, ForkPhase, JobStatus
from postgres_db_fork.infrastructure.state import (
    ResumptionManager,
    cleanup_old_jobs,
    list_jobs,
)
from postgres_db_fork.infrastructure.state import atomic_files

SOURCE = ConnectionIdentity(host="db-a", port=5432, username="app", database="app_prod")
DEST = ConnectionIdentity(host="db-b", port=5432, username="app")
ROW_COUNTS = {"users": 10, "orders": 20, "items": 5}


def _manager(tmp_path: Path, job_id: str = "job-1") -> ResumptionManager:
    return ResumptionManager(job_id, tmp_path)


def test_initialize_job_creates_fresh_state(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    state, resumed = manager.initialize_job(SOURCE, DEST, "app_preview", ROW_COUNTS)

    assert resumed is False
    assert state.phase == ForkPhase.INITIALIZING
    assert state.status == JobStatus.RUNNING
    assert state.completed_tables == set()
    assert state.table_row_counts == ROW_COUNTS
    on_disk = json.loads(manager.state_path.read_text(encoding="utf-8"))
    assert on_disk["job_id"] == "job-1"
    assert on_disk["target_database"] == "app_preview"


def test_initialize_job_twice_resumes_and_keeps_completed_tables(tmp_path: Path) -> None:
    first = _manager(tmp_path)
    first.initialize_job(SOURCE, DEST, "app_preview", ROW_COUNTS)
    first.update_phase(ForkPhase.DATA)
    first.mark_table_completed("users")

    second = _manager(tmp_path)
    state, resumed = second.initialize_job(SOURCE, DEST, "app_preview", ROW_COUNTS)

    assert resumed is True
    assert state.completed_tables == {"users"}
    assert state.phase == ForkPhase.DATA
    assert second.get_remaining_tables() == ["orders", "items"]


def test_paused_job_is_resumed_as_running(tmp_path: Path) -> None:
    first = _manager(tmp_path)
    first.initialize_job(SOURCE, DEST, "app_preview", ROW_COUNTS)
    first.pause_job()
    assert first.get_job_state().status == JobStatus.PAUSED

    state, resumed = _manager(tmp_path).initialize_job(SOURCE, DEST, "app_preview", ROW_COUNTS)

    assert resumed is True
    assert state.status == JobStatus.RUNNING


def test_different_target_discards_previous_state(tmp_path: Path) -> None:
    first = _manager(tmp_path)
    first.initialize_job(SOURCE, DEST, "app_preview", ROW_COUNTS)
    first.mark_table_completed("users")

    state, resumed = _manager(tmp_path).initialize_job(SOURCE, DEST, "other_db", ROW_COUNTS)

    assert resumed is False
    assert state.completed_tables == set()
    assert state.target_database == "other_db"


def test_different_source_identity_discards_previous_state(tmp_path: Path) -> None:
    _manager(tmp_path).initialize_job(SOURCE, DEST, "app_preview", ROW_COUNTS)
    moved = SOURCE.model_copy(update={"port": 6432})

    _, resumed = _manager(tmp_path).initialize_job(moved, DEST, "app_preview", ROW_COUNTS)

    assert resumed is False


def test_terminal_job_is_not_resumed(tmp_path: Path) -> None:
    first = _manager(tmp_path)
    first.initialize_job(SOURCE, DEST, "app_preview", ROW_COUNTS)
    first.set_error("boom")

    state, resumed = _manager(tmp_path).initialize_job(SOURCE, DEST, "app_preview", ROW_COUNTS)

    assert resumed is False
    assert state.error == ""
    assert state.status == JobStatus.RUNNING


def test_mark_table_completed_clears_failure(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.initialize_job(SOURCE, DEST, "app_preview", ROW_COUNTS)

    manager.mark_table_failed("orders", "timeout")
    assert manager.get_job_state().failed_tables == {"orders": "timeout"}

    manager.mark_table_completed("orders")
    state = manager.get_job_state()
    assert "orders" not in state.failed_tables
    assert "orders" in state.completed_tables


def test_mark_table_failed_after_completion_moves_table(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.initialize_job(SOURCE, DEST, "app_preview", ROW_COUNTS)
    manager.mark_table_completed("items")

    manager.mark_table_failed("items", RuntimeError("copy broke"))

    state = manager.get_job_state()
    assert "items" not in state.completed_tables
    assert state.failed_tables["items"] == "copy broke"


def test_update_phase_completed_forces_status(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.initialize_job(SOURCE, DEST, "app_preview", ROW_COUNTS)

    manager.update_phase(ForkPhase.COMPLETED)

    state = manager.get_job_state()
    assert state.status == JobStatus.COMPLETED
    assert state.indexes_completed is True


def test_update_phase_failed_forces_status(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.initialize_job(SOURCE, DEST, "app_preview", ROW_COUNTS)

    manager.update_phase(ForkPhase.FAILED)

    assert manager.get_job_state().status == JobStatus.FAILED


def test_terminal_status_rejects_further_transitions(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.initialize_job(SOURCE, DEST, "app_preview", ROW_COUNTS)
    manager.complete_job()

    with pytest.raises(JobConflictError):
        manager.pause_job()
    with pytest.raises(JobConflictError):
        manager.cancel_job()


def test_cancel_job_logs_reason_and_leaves_error_empty(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    manager = _manager(tmp_path)
    manager.initialize_job(SOURCE, DEST, "app_preview", ROW_COUNTS)

    with caplog.at_level(logging.INFO):
        manager.cancel_job("no longer needed")

    reloaded = _manager(tmp_path).load_job()
    assert reloaded is not None
    assert reloaded.status == JobStatus.CANCELLED
    assert reloaded.error == ""
    assert "Job job-1 cancelled: no longer needed" in caplog.text


def test_complete_job_with_cleanup_removes_file(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.initialize_job(SOURCE, DEST, "app_preview", ROW_COUNTS)

    manager.complete_job(cleanup=True)

    assert not manager.state_path.exists()


def test_set_error_records_message(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.initialize_job(SOURCE, DEST, "app_preview", ROW_COUNTS)

    manager.set_error(RuntimeError("disk full"))

    reloaded = _manager(tmp_path).load_job()
    assert reloaded is not None
    assert reloaded.status == JobStatus.FAILED
    assert reloaded.phase == ForkPhase.FAILED
    assert reloaded.error == "disk full"


def test_mutators_require_initialized_state(tmp_path: Path) -> None:
    with pytest.raises(JobStateNotInitializedError):
        _manager(tmp_path).mark_table_completed("users")


def test_reset_progress_clears_tables_and_flags(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.initialize_job(SOURCE, DEST, "app_preview", ROW_COUNTS)
    manager.mark_schema_completed()
    manager.mark_table_completed("users")
    manager.mark_table_failed("orders", "timeout")

    manager.reset_progress()

    state = manager.get_job_state()
    assert state.completed_tables == set()
    assert state.failed_tables == {}
    assert state.schema_completed is False


def test_last_updated_never_moves_backwards(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    state, _ = manager.initialize_job(SOURCE, DEST, "app_preview", ROW_COUNTS)
    previous = state.last_updated

    for table in ROW_COUNTS:
        manager.mark_table_completed(table)
        current = manager.get_job_state().last_updated
        assert current >= previous
        previous = current


def test_crash_during_write_keeps_previous_document(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    manager = _manager(tmp_path)
    manager.initialize_job(SOURCE, DEST, "app_preview", ROW_COUNTS)
    manager.mark_table_completed("users")
    before = manager.state_path.read_text(encoding="utf-8")

    def crash(src: str, dst: str) -> None:
        raise OSError("simulated crash before rename")

    monkeypatch.setattr(atomic_files.os, "replace", crash)
    with pytest.raises(StateIOError):
        manager.mark_table_completed("orders")
    monkeypatch.undo()

    assert manager.state_path.read_text(encoding="utf-8") == before
    assert list(tmp_path.glob("*.tmp")) == []
    reloaded = _manager(tmp_path).load_job()
    assert reloaded is not None
    assert reloaded.completed_tables == {"users"}


def test_unwritable_state_dir_raises_state_io_error(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")

    with pytest.raises(StateIOError):
        ResumptionManager("job-1", blocker / "jobs").initialize_job(
            SOURCE, DEST, "app_preview", ROW_COUNTS
        )


def test_invalid_job_id_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        ResumptionManager("../escape", tmp_path)


def test_list_jobs_skips_corrupt_files(tmp_path: Path) -> None:
    _manager(tmp_path, "job-a").initialize_job(SOURCE, DEST, "a", ROW_COUNTS)
    _manager(tmp_path, "job-b").initialize_job(SOURCE, DEST, "b", ROW_COUNTS)
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")

    jobs = list_jobs(tmp_path)

    assert {job.job_id for job in jobs} == {"job-a", "job-b"}


def test_cleanup_old_jobs_removes_only_old_terminal_jobs(tmp_path: Path) -> None:
    old_done = _manager(tmp_path, "old-done")
    old_done.initialize_job(SOURCE, DEST, "a", ROW_COUNTS)
    old_done.complete_job()
    old_running = _manager(tmp_path, "old-running")
    old_running.initialize_job(SOURCE, DEST, "b", ROW_COUNTS)
    fresh_failed = _manager(tmp_path, "fresh-failed")
    fresh_failed.initialize_job(SOURCE, DEST, "c", ROW_COUNTS)
    fresh_failed.set_error("boom")

    stale = (datetime.now(tz=UTC) - timedelta(days=10)).isoformat()
    for manager in (old_done, old_running):
        document = json.loads(manager.state_path.read_text(encoding="utf-8"))
        document["last_updated"] = stale
        manager.state_path.write_text(json.dumps(document), encoding="utf-8")

    removed = cleanup_old_jobs(tmp_path, timedelta(days=7))

    assert removed == 1
    remaining = {job.job_id for job in list_jobs(tmp_path)}
    assert remaining == {"old-running", "fresh-failed"}
