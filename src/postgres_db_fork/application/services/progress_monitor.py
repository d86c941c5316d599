"""Per-table and aggregate progress tracking with periodic reporting."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from contextlib import suppress
from datetime import UTC, datetime
from pathlib import Path

from postgres_db_fork.domain.job_state import ForkPhase
from postgres_db_fork.domain.progress_models import (
    OverallProgress,
    ProgressReport,
    TableProgress,
    TableStatus,
)
from postgres_db_fork.infrastructure.state.atomic_files import atomic_write_text

logger = logging.getLogger(__name__)


def format_rate(count: float, seconds: float, unit: str = "rows") -> str:
    if seconds <= 0:
        return ""
    return f"{count / seconds:.1f} {unit}/sec"


def _percent(done: float, total: float) -> float:
    if total <= 0:
        return 0.0
    return max(0.0, min(100.0, round(done / total * 100, 2)))


def _eta(done: float, remaining: float, elapsed: float) -> float | None:
    if done <= 0:
        return None
    return round(remaining * elapsed / done, 1)


class ProgressMonitor:
    """Tracks fork progress; one writer updates it while reporters read snapshots."""

    def __init__(
        self,
        *,
        output_format: str = "text",
        quiet: bool = False,
        progress_file: str | Path | None = None,
        report_interval_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        log: logging.Logger | None = None,
    ) -> None:
        self._output_format = output_format
        self._quiet = quiet
        self._progress_file = Path(progress_file) if progress_file else None
        self._report_interval_seconds = max(report_interval_seconds, 0.01)
        self._clock = clock
        self._logger = log or logger

        self._lock = threading.RLock()
        self._phase = ForkPhase.INITIALIZING
        self._message = ""
        self._started_at = clock()
        self._baseline_rows = 0
        self._baseline_tables = 0
        self._start_time = datetime.now(tz=UTC)
        self._tables: dict[str, TableProgress] = {}
        self._table_started_at: dict[str, float] = {}
        self._current_table: str | None = None

        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def phase(self) -> ForkPhase:
        with self._lock:
            return self._phase

    def set_phase(self, phase: ForkPhase, message: str = "") -> None:
        with self._lock:
            self._phase = phase
            self._message = message
        if not self._quiet:
            self._logger.info("Phase %s%s", phase, f": {message}" if message else "")
        self.write_progress_file()

    def initialize_tables(
        self,
        row_counts: Mapping[str, int],
        completed: Iterable[str] = (),
    ) -> None:
        """Register tables to track; ``completed`` ones start as done."""

        done = set(completed)
        with self._lock:
            self._tables = {
                name: TableProgress(
                    name=name,
                    rows_total=max(rows, 0),
                    rows_completed=max(rows, 0) if name in done else 0,
                    percent=100.0 if name in done else 0.0,
                    status=TableStatus.COMPLETED if name in done else TableStatus.PENDING,
                )
                for name, rows in row_counts.items()
            }
            self._baseline_rows = sum(table.rows_completed for table in self._tables.values())
            self._baseline_tables = sum(1 for name in self._tables if name in done)
            self._table_started_at.clear()
            self._current_table = None

    def start_table(self, name: str) -> None:
        with self._lock:
            table = self._table(name)
            table.status = TableStatus.IN_PROGRESS
            table.start_time = datetime.now(tz=UTC)
            table.rows_completed = 0
            table.percent = 0.0
            table.error = None
            self._table_started_at[name] = self._clock()
            self._current_table = name

    def update_table_progress(
        self,
        name: str,
        rows_completed: int,
        bytes_completed: int = 0,
    ) -> None:
        with self._lock:
            table = self._table(name)
            table.rows_completed = max(rows_completed, 0)
            table.bytes_completed = max(bytes_completed, table.bytes_completed)
            table.percent = _percent(table.rows_completed, table.rows_total)
            self._refresh_timing(table)

    def complete_table(self, name: str) -> None:
        """Mark a table done; its expected rows count as transferred."""

        with self._lock:
            table = self._table(name)
            table.status = TableStatus.COMPLETED
            table.rows_completed = max(table.rows_completed, table.rows_total)
            table.percent = 100.0
            table.error = None
            self._refresh_timing(table)
            if self._current_table == name:
                self._current_table = None
        if not self._quiet:
            self._logger.info("Table %s completed.", name)
        self.write_progress_file()

    def fail_table(self, name: str, error: BaseException | str) -> None:
        with self._lock:
            table = self._table(name)
            table.status = TableStatus.FAILED
            table.error = str(error)
            self._refresh_timing(table)
            if self._current_table == name:
                self._current_table = None
        self._logger.error("Table %s failed: %s", name, error)
        self.write_progress_file()

    def get_progress_report(self) -> ProgressReport:
        with self._lock:
            elapsed = max(self._clock() - self._started_at, 0.0)
            tables = [table.model_copy() for table in self._tables.values()]
            rows_total = sum(table.rows_total for table in tables)
            rows_completed = sum(table.rows_completed for table in tables)
            tables_completed = sum(
                1 for table in tables if table.status == TableStatus.COMPLETED
            )
            if rows_total > 0:
                percent = _percent(rows_completed, rows_total)
            else:
                percent = _percent(tables_completed, len(tables))
            if self._phase == ForkPhase.COMPLETED:
                percent = 100.0

            rows_this_run = max(rows_completed - self._baseline_rows, 0)
            eta_seconds = None
            if 0 < percent < 100 and elapsed > 0:
                if rows_total > 0:
                    eta_seconds = _eta(rows_this_run, rows_total - rows_completed, elapsed)
                else:
                    eta_seconds = _eta(
                        max(tables_completed - self._baseline_tables, 0),
                        len(tables) - tables_completed,
                        elapsed,
                    )

            current = None
            if self._current_table is not None:
                current = self._tables[self._current_table].model_copy()

            return ProgressReport(
                phase=self._phase,
                message=self._message,
                overall=OverallProgress(
                    tables_total=len(tables),
                    tables_completed=tables_completed,
                    tables_failed=sum(
                        1 for table in tables if table.status == TableStatus.FAILED
                    ),
                    rows_total=rows_total,
                    rows_completed=rows_completed,
                    percent=percent,
                    duration_seconds=round(elapsed, 3),
                    start_time=self._start_time,
                ),
                current_table=current,
                tables=tables,
                eta_seconds=eta_seconds,
                transfer_speed=format_rate(rows_this_run, elapsed),
            )

    async def start(self) -> None:
        """Start the periodic reporter; duration, speed and ETA count from here."""

        if self._task is not None and not self._task.done():
            return
        self._stopping.clear()
        with self._lock:
            self._started_at = self._clock()
        self._task = asyncio.create_task(self._report_loop(), name="fork-progress-reporter")

    async def stop(self) -> None:
        task = self._task
        if task is None:
            return
        self._task = None
        self._stopping.set()
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        self.write_progress_file()

    def log_progress_update(self) -> None:
        report = self.get_progress_report()
        if report.phase != ForkPhase.DATA or self._quiet:
            return
        overall = report.overall
        eta = f", ETA {report.eta_seconds:.0f}s" if report.eta_seconds is not None else ""
        current = f", current table {report.current_table.name}" if report.current_table else ""
        self._logger.info(
            "Progress: %s/%s tables, %s/%s rows (%.1f%%)%s%s",
            overall.tables_completed,
            overall.tables_total,
            overall.rows_completed,
            overall.rows_total,
            overall.percent,
            eta,
            current,
        )

    def write_progress_file(self) -> None:
        """Mirror the current report to the progress file, if one is configured."""

        if self._progress_file is None:
            return
        report = self.get_progress_report()
        if self._output_format == "json":
            content = report.model_dump_json(indent=2)
        else:
            content = render_progress_text(report)
        try:
            atomic_write_text(self._progress_file, content)
        except OSError as exc:
            self._logger.warning(
                "Failed to write progress file %s: %s", self._progress_file, exc
            )

    async def _report_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                await asyncio.wait_for(
                    self._stopping.wait(),
                    timeout=self._report_interval_seconds,
                )
            except TimeoutError:
                pass
            if self._stopping.is_set():
                return
            self.log_progress_update()
            self.write_progress_file()

    def _table(self, name: str) -> TableProgress:
        table = self._tables.get(name)
        if table is None:
            table = TableProgress(name=name)
            self._tables[name] = table
        return table

    def _refresh_timing(self, table: TableProgress) -> None:
        started = self._table_started_at.get(table.name)
        if started is None:
            return
        duration = max(self._clock() - started, 0.0)
        table.duration_seconds = round(duration, 3)
        if duration > 1.0:
            table.speed = format_rate(table.rows_completed, duration)


def render_progress_text(report: ProgressReport) -> str:
    """Line-oriented ``KEY=VALUE`` form of a progress report."""

    overall = report.overall
    lines = [
        f"PHASE={report.phase}",
        f"PERCENT={overall.percent:.1f}",
        f"TABLES_COMPLETED={overall.tables_completed}",
        f"TABLES_TOTAL={overall.tables_total}",
        f"ROWS_COMPLETED={overall.rows_completed}",
        f"ROWS_TOTAL={overall.rows_total}",
        f"DURATION={overall.duration_seconds:.0f}s",
    ]
    if report.eta_seconds is not None:
        lines.append(f"ETA={report.eta_seconds:.0f}s")
    if report.current_table is not None:
        lines.append(f"CURRENT_TABLE={report.current_table.name}")
        lines.append(f"CURRENT_TABLE_PERCENT={report.current_table.percent:.1f}")
    return "\n".join(lines) + "\n"


__all__ = ["ProgressMonitor", "format_rate", "render_progress_text"]
