from __future__ import annotations

import asyncio
import json
from pathlib import Path

from postgres_db_fork.application.services.fork_metrics import ForkMetrics, render_prometheus
from postgres_db_fork.application.services.progress_monitor import (
    ProgressMonitor,
    format_rate,
    render_progress_text,
)
from postgres_db_fork.domain.job_state import ForkPhase
from postgres_db_fork.domain.progress_models import TableStatus


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _monitor(clock: FakeClock, **kwargs: object) -> ProgressMonitor:
    return ProgressMonitor(clock=clock, **kwargs)  # type: ignore[arg-type]


def test_row_based_percent_and_eta() -> None:
    clock = FakeClock()
    monitor = _monitor(clock)
    monitor.initialize_tables({"users": 100, "orders": 300})
    monitor.set_phase(ForkPhase.DATA)

    monitor.start_table("users")
    clock.now += 10
    monitor.complete_table("users")

    report = monitor.get_progress_report()
    assert report.overall.rows_completed == 100
    assert report.overall.rows_total == 400
    assert report.overall.percent == 25.0
    assert report.overall.tables_completed == 1
    assert report.eta_seconds == 30.0
    assert report.transfer_speed == "10.0 rows/sec"


def test_table_count_percent_when_rows_unknown() -> None:
    monitor = _monitor(FakeClock())
    monitor.initialize_tables({"a": 0, "b": 0, "c": 0, "d": 0})

    monitor.complete_table("a")

    assert monitor.get_progress_report().overall.percent == 25.0


def test_completed_tables_from_resume_count_as_done() -> None:
    monitor = _monitor(FakeClock())

    monitor.initialize_tables({"users": 10, "orders": 30}, completed=["users"])

    report = monitor.get_progress_report()
    statuses = {table.name: table.status for table in report.tables}
    assert statuses == {"users": TableStatus.COMPLETED, "orders": TableStatus.PENDING}
    assert report.overall.rows_completed == 10


def test_resumed_rows_are_excluded_from_speed_and_eta() -> None:
    clock = FakeClock()
    monitor = _monitor(clock)
    monitor.initialize_tables(
        {"users": 10, "orders": 30, "items": 60},
        completed=["users"],
    )

    async def scenario() -> None:
        clock.now += 50
        await monitor.start()
        monitor.start_table("orders")
        clock.now += 10
        monitor.complete_table("orders")
        await monitor.stop()

    asyncio.run(scenario())

    report = monitor.get_progress_report()
    assert report.overall.rows_completed == 40
    assert report.overall.duration_seconds == 10.0
    assert report.transfer_speed == "3.0 rows/sec"
    assert report.eta_seconds == 20.0


def test_failed_table_is_reported_and_current_table_cleared() -> None:
    monitor = _monitor(FakeClock())
    monitor.initialize_tables({"orders": 50})

    monitor.start_table("orders")
    assert monitor.get_progress_report().current_table is not None
    monitor.fail_table("orders", "timeout")

    report = monitor.get_progress_report()
    assert report.current_table is None
    assert report.overall.tables_failed == 1
    assert report.tables[0].error == "timeout"


def test_update_table_progress_sets_percent() -> None:
    clock = FakeClock()
    monitor = _monitor(clock)
    monitor.initialize_tables({"events": 1000})

    monitor.start_table("events")
    clock.now += 4
    monitor.update_table_progress("events", 250)

    current = monitor.get_progress_report().current_table
    assert current is not None
    assert current.percent == 25.0
    assert current.speed == "62.5 rows/sec"


def test_completed_phase_reports_full_progress() -> None:
    monitor = _monitor(FakeClock())
    monitor.initialize_tables({"users": 10})

    monitor.set_phase(ForkPhase.COMPLETED)

    assert monitor.get_progress_report().overall.percent == 100.0


def test_progress_file_text_format(tmp_path: Path) -> None:
    clock = FakeClock()
    progress_file = tmp_path / "progress.txt"
    monitor = _monitor(clock, progress_file=progress_file)
    monitor.initialize_tables({"users": 10, "orders": 10})
    monitor.set_phase(ForkPhase.DATA)
    monitor.start_table("orders")
    clock.now += 5
    monitor.complete_table("users")

    lines = progress_file.read_text(encoding="utf-8").splitlines()
    assert "PHASE=data" in lines
    assert "PERCENT=50.0" in lines
    assert "TABLES_COMPLETED=1" in lines
    assert "TABLES_TOTAL=2" in lines
    assert "CURRENT_TABLE=orders" in lines


def test_progress_file_json_format(tmp_path: Path) -> None:
    progress_file = tmp_path / "progress.json"
    monitor = _monitor(FakeClock(), progress_file=progress_file, output_format="json")
    monitor.initialize_tables({"users": 10})

    monitor.set_phase(ForkPhase.SCHEMA)

    document = json.loads(progress_file.read_text(encoding="utf-8"))
    assert document["phase"] == "schema"
    assert document["overall"]["tables_total"] == 1


def test_unwritable_progress_file_only_warns(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    monitor = _monitor(FakeClock(), progress_file=blocker / "progress.txt")

    monitor.set_phase(ForkPhase.DATA)

    assert monitor.phase == ForkPhase.DATA


def test_reporter_task_starts_and_stops() -> None:
    async def scenario() -> None:
        monitor = ProgressMonitor(report_interval_seconds=0.01)
        monitor.initialize_tables({"users": 10})
        monitor.set_phase(ForkPhase.DATA)
        await monitor.start()
        await asyncio.sleep(0.05)
        await monitor.stop()
        await monitor.stop()

    asyncio.run(scenario())


def test_render_progress_text_includes_eta() -> None:
    clock = FakeClock()
    monitor = _monitor(clock)
    monitor.initialize_tables({"a": 10, "b": 10})
    clock.now += 10
    monitor.complete_table("a")

    text = render_progress_text(monitor.get_progress_report())

    assert "ETA=10s" in text
    assert "DURATION=10s" in text


def test_format_rate() -> None:
    assert format_rate(100, 0) == ""
    assert format_rate(150, 3) == "50.0 rows/sec"


def test_metrics_file_is_prometheus_text(tmp_path: Path) -> None:
    clock = FakeClock()
    metrics_file = tmp_path / "metrics.prom"
    metrics = ForkMetrics(metrics_file, clock=clock)
    metrics.start()
    metrics.record_table(rows=120)
    metrics.record_table(rows=30)
    metrics.record_bytes(4096)
    metrics.record_error()
    clock.now += 2.5

    snapshot = metrics.finish("completed")

    assert snapshot.tables_processed == 2
    assert snapshot.rows_transferred == 150
    assert snapshot.duration_seconds == 2.5
    text = metrics_file.read_text(encoding="utf-8")
    assert 'pgfork_rows_transferred{status="completed"} 150' in text
    assert 'pgfork_bytes_transferred{status="completed"} 4096' in text
    assert 'pgfork_errors_total{status="completed"} 1' in text
    assert 'pgfork_duration_seconds{status="completed"} 2.500' in text
    assert text == render_prometheus(snapshot)
