"""Counters for one fork run and their Prometheus text export."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from postgres_db_fork.infrastructure.state.atomic_files import atomic_write_text

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ForkMetricsSnapshot:
    duration_seconds: float
    bytes_transferred: int
    rows_transferred: int
    errors: int
    tables_processed: int
    status: str


class ForkMetrics:
    """Thread-safe metrics collector owned by one forker."""

    def __init__(
        self,
        metrics_file: str | Path | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._metrics_file = Path(metrics_file) if metrics_file else None
        self._clock = clock
        self._lock = threading.Lock()
        self._started_at: float | None = None
        self._finished_at: float | None = None
        self._bytes_transferred = 0
        self._rows_transferred = 0
        self._errors = 0
        self._tables_processed = 0
        self._status = "running"

    def start(self) -> None:
        with self._lock:
            self._started_at = self._clock()
            self._finished_at = None
            self._status = "running"

    def record_table(self, rows: int = 0, bytes_transferred: int = 0) -> None:
        with self._lock:
            self._tables_processed += 1
            self._rows_transferred += max(rows, 0)
            self._bytes_transferred += max(bytes_transferred, 0)

    def record_bytes(self, bytes_transferred: int) -> None:
        with self._lock:
            self._bytes_transferred += max(bytes_transferred, 0)

    def record_error(self) -> None:
        with self._lock:
            self._errors += 1

    def finish(self, status: str) -> ForkMetricsSnapshot:
        """Freeze the run duration, write the metrics file, and return the final values."""

        with self._lock:
            self._finished_at = self._clock()
            self._status = status
        snapshot = self.snapshot()
        self.write(snapshot)
        return snapshot

    def snapshot(self) -> ForkMetricsSnapshot:
        with self._lock:
            end = self._finished_at if self._finished_at is not None else self._clock()
            start = self._started_at if self._started_at is not None else end
            return ForkMetricsSnapshot(
                duration_seconds=max(end - start, 0.0),
                bytes_transferred=self._bytes_transferred,
                rows_transferred=self._rows_transferred,
                errors=self._errors,
                tables_processed=self._tables_processed,
                status=self._status,
            )

    def write(self, snapshot: ForkMetricsSnapshot) -> None:
        if self._metrics_file is None:
            return
        try:
            atomic_write_text(self._metrics_file, render_prometheus(snapshot))
        except OSError as exc:
            logger.warning("Failed to write metrics file %s: %s", self._metrics_file, exc)


def render_prometheus(snapshot: ForkMetricsSnapshot) -> str:
    label = f'{{status="{snapshot.status}"}}'
    samples = (
        ("pgfork_duration_seconds", "Fork duration in seconds", snapshot.duration_seconds),
        ("pgfork_bytes_transferred", "Bytes transferred", snapshot.bytes_transferred),
        ("pgfork_rows_transferred", "Rows transferred", snapshot.rows_transferred),
        ("pgfork_errors_total", "Errors encountered", snapshot.errors),
        ("pgfork_tables_processed", "Tables processed", snapshot.tables_processed),
    )
    lines: list[str] = []
    for name, help_text, value in samples:
        lines.append(f"# HELP {name} {help_text}")
        lines.append(f"# TYPE {name} gauge")
        formatted = f"{value:.3f}" if isinstance(value, float) else str(value)
        lines.append(f"{name}{label} {formatted}")
    return "\n".join(lines) + "\n"


__all__ = ["ForkMetrics", "ForkMetricsSnapshot", "render_prometheus"]
