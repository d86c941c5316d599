"""Cross-server transfer by piping pg_dump into pg_restore."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from collections.abc import Sequence
from dataclasses import dataclass

from postgres_db_fork.domain.errors import (
    ErrorType,
    ForkInterruptedError,
    PipelineError,
    fatal_error,
    warning_error,
)
from postgres_db_fork.domain.fork_config import DatabaseConfig, ForkConfig
from postgres_db_fork.domain.job_state import ForkPhase
from postgres_db_fork.domain.ports import (
    DatabaseConnection,
    RetryRunner,
    TransferObserver,
    TransferPipeline,
    TransferPlan,
)
from postgres_db_fork.infrastructure.database.postgres_connection import quote_identifier

logger = logging.getLogger(__name__)

DUMP_BASE_FLAGS = (
    "--format=custom",
    "--no-comments",
    "--no-security-labels",
    "--no-tablespaces",
    "--no-owner",
    "--no-privileges",
)
RESTORE_WARNING_EXIT_CODE = 1
STDERR_TAIL_CHARS = 2000

BULK_LOAD_SETTINGS = (
    "SET synchronous_commit = OFF",
    "SET wal_buffers = '16MB'",
    "SET checkpoint_segments = 32",
    "SET checkpoint_completion_target = 0.9",
    "SET wal_compression = ON",
    "SET max_wal_size = '1GB'",
    "SET shared_buffers = '256MB'",
)
RESTORE_SETTINGS = (
    "SET synchronous_commit = ON",
    "CHECKPOINT",
)


def table_filter_flags(include: Sequence[str], exclude: Sequence[str]) -> list[str]:
    if include:
        return [f"--table={table}" for table in include]
    return [f"--exclude-table={table}" for table in exclude]


def table_pattern(schema: str, table: str) -> str:
    """pg_dump pattern matching exactly one table."""

    return f"{quote_identifier(schema)}.{quote_identifier(table)}"


def build_dump_args(
    source: DatabaseConfig,
    selector: Sequence[str],
    table_flags: Sequence[str] = (),
) -> list[str]:
    return [*selector, *DUMP_BASE_FLAGS, *table_flags, *source.libpq_args()]


def build_restore_args(target: DatabaseConfig, *, data_only: bool) -> list[str]:
    args = ["--data-only"] if data_only else []
    return [*args, *target.libpq_args()]


@dataclass(slots=True, frozen=True)
class ProcessResult:
    program: str
    exit_code: int
    stderr: str = ""


class _PipeEnd:
    """One end of an OS pipe that is closed at most once."""

    def __init__(self, fd: int) -> None:
        self.fd = fd
        self._closed = False

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        os.close(self.fd)


class _NullObserver:
    def phase_started(self, phase: ForkPhase) -> None:
        return None

    def schema_completed(self) -> None:
        return None

    def table_started(self, table: str) -> None:
        return None

    def table_completed(self, table: str) -> None:
        return None

    def table_failed(self, table: str, error: BaseException) -> None:
        return None

    def indexes_completed(self) -> None:
        return None


def _decode_tail(data: bytes | None) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace").strip()[-STDERR_TAIL_CHARS:]


class StreamingTransferPipeline(TransferPipeline):
    """Moves schema and data between servers through pg_dump | pg_restore."""

    def __init__(
        self,
        config: ForkConfig,
        source_connection: DatabaseConnection,
        dest_connection: DatabaseConnection,
        *,
        retry_runner: RetryRunner,
        schema: str = "public",
        log: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._source = config.source
        self._target = config.target_config()
        self._source_connection = source_connection
        self._dest_connection = dest_connection
        self._retry = retry_runner
        self._schema = schema
        self._logger = log or logger

    async def list_tables(self) -> list[str]:
        tables = await self._source_connection.get_table_list(self._schema)
        return self._config.filter_tables(tables)

    def default_plan(self, tables: list[str]) -> TransferPlan:
        config = self._config
        return TransferPlan(
            tables=tables,
            transfer_schema=not config.data_only,
            transfer_data=not config.schema_only,
            transfer_post_data=not config.data_only and not config.schema_only,
        )

    async def transfer(
        self,
        plan: TransferPlan | None = None,
        observer: TransferObserver | None = None,
    ) -> None:
        """Run the planned schema, per-table data, and post-data phases."""

        self._ensure_binaries()
        if plan is None:
            plan = self.default_plan(await self.list_tables())
        events: TransferObserver = observer or _NullObserver()
        filters = table_filter_flags(self._config.include_tables, self._config.exclude_tables)

        await self.tune_destination()
        try:
            if plan.transfer_schema:
                events.phase_started(ForkPhase.SCHEMA)
                selector = ["--section=pre-data"]
                if self._config.schema_only:
                    selector = ["--schema-only"]
                await self._retry.retry_with_backoff(
                    lambda: self.run_pipe("schema", selector, filters, data_only=False),
                    "schema transfer",
                )
                events.schema_completed()

            if plan.transfer_data:
                events.phase_started(ForkPhase.DATA)
                for table in plan.tables:
                    await self._transfer_table(table, plan.reset_tables, events)

            if plan.transfer_post_data:
                events.phase_started(ForkPhase.INDEXES)
                await self._retry.retry_with_backoff(
                    lambda: self.run_pipe(
                        "post-data", ["--section=post-data"], filters, data_only=False
                    ),
                    "index and constraint transfer",
                )
                events.indexes_completed()
        finally:
            await self.restore_destination()

    async def tune_destination(self) -> None:
        """Relax durability for bulk loading; unsupported settings only warn."""

        for statement in BULK_LOAD_SETTINGS:
            await self._execute_setting(statement)

    async def restore_destination(self) -> None:
        for statement in RESTORE_SETTINGS:
            await self._execute_setting(statement)

    async def run_pipe(
        self,
        label: str,
        selector: Sequence[str],
        table_flags: Sequence[str] = (),
        *,
        data_only: bool,
    ) -> None:
        """Run one pg_dump | pg_restore pair and judge both exit codes."""

        dump_args = build_dump_args(self._source, selector, table_flags)
        restore_args = build_restore_args(self._target, data_only=data_only)
        dump_env = {**os.environ, **self._source.libpq_env()}
        restore_env = {**os.environ, **self._target.libpq_env()}

        read_fd, write_fd = os.pipe()
        reader = _PipeEnd(read_fd)
        writer = _PipeEnd(write_fd)
        dump: asyncio.subprocess.Process | None = None
        restore: asyncio.subprocess.Process | None = None
        producer: asyncio.Task[ProcessResult] | None = None

        self._logger.debug("Starting %s pipe.", label)
        try:
            dump = await asyncio.create_subprocess_exec(
                self._config.pg_dump_path,
                *dump_args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=writer.fd,
                stderr=asyncio.subprocess.PIPE,
                env=dump_env,
            )
            producer = asyncio.create_task(
                self._wait_producer(dump, writer),
                name=f"pg-dump-{label}",
            )
            restore = await asyncio.create_subprocess_exec(
                self._config.pg_restore_path,
                *restore_args,
                stdin=reader.fd,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                env=restore_env,
            )
            reader.close()
            _, restore_stderr = await restore.communicate()
            dump_result = await producer
        except BaseException:
            await self._terminate(dump, restore, producer)
            raise
        finally:
            reader.close()
            writer.close()

        restore_result = ProcessResult(
            "pg_restore",
            restore.returncode if restore.returncode is not None else -1,
            _decode_tail(restore_stderr),
        )
        self._judge(label, dump_result, restore_result)

    async def _wait_producer(
        self,
        dump: asyncio.subprocess.Process,
        writer: _PipeEnd,
    ) -> ProcessResult:
        try:
            _, stderr = await dump.communicate()
        finally:
            writer.close()
        return ProcessResult(
            "pg_dump",
            dump.returncode if dump.returncode is not None else -1,
            _decode_tail(stderr),
        )

    async def _terminate(
        self,
        dump: asyncio.subprocess.Process | None,
        restore: asyncio.subprocess.Process | None,
        producer: asyncio.Task[ProcessResult] | None,
    ) -> None:
        for process in (restore, dump):
            if process is not None and process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
        if producer is not None:
            producer.cancel()
            await asyncio.gather(producer, return_exceptions=True)

    def _judge(self, label: str, dump: ProcessResult, restore: ProcessResult) -> None:
        if dump.exit_code != 0:
            error = PipelineError("pg_dump", label, dump.exit_code, dump.stderr)
            if restore.exit_code != 0:
                error.add_note(f"pg_restore also exited with code {restore.exit_code}")
            raise error
        if restore.exit_code == RESTORE_WARNING_EXIT_CODE:
            warning = warning_error(
                ErrorType.DATA_INTEGRITY,
                f"pg_restore ({label}) completed with warnings",
                details=restore.stderr or "no details",
            )
            self._logger.warning("%s", warning)
            return
        if restore.exit_code != 0:
            raise PipelineError("pg_restore", label, restore.exit_code, restore.stderr)

    async def _transfer_table(
        self,
        table: str,
        reset_first: bool,
        events: TransferObserver,
    ) -> None:
        selector = ["--data-only", f"--table={table_pattern(self._schema, table)}"]
        attempts = 0

        async def _attempt() -> None:
            nonlocal attempts
            attempts += 1
            if reset_first or attempts > 1:
                await self._reset_table(table)
            await self.run_pipe(f"data {table}", selector, data_only=True)

        events.table_started(table)
        try:
            await self._retry.retry_with_backoff(_attempt, f"data transfer for table {table}")
        except ForkInterruptedError:
            raise
        except Exception as exc:
            events.table_failed(table, exc)
            raise
        events.table_completed(table)

    async def _reset_table(self, table: str) -> None:
        statement = f"TRUNCATE TABLE ONLY {table_pattern(self._schema, table)}"
        try:
            await self._dest_connection.execute(statement)
        except Exception as exc:  # noqa: BLE001
            self._logger.warning("Could not truncate %s before reloading: %s", table, exc)

    async def _execute_setting(self, statement: str) -> None:
        try:
            await self._dest_connection.execute(statement)
        except Exception as exc:  # noqa: BLE001
            warning = warning_error(
                ErrorType.CONFIGURATION,
                f"could not apply '{statement}' on destination",
                details=str(exc),
            )
            self._logger.warning("%s", warning)

    def _ensure_binaries(self) -> None:
        for program in (self._config.pg_dump_path, self._config.pg_restore_path):
            if shutil.which(program) is None:
                raise fatal_error(
                    ErrorType.CONFIGURATION,
                    "required PostgreSQL client binary is missing",
                    details=f"'{program}' was not found on PATH",
                )


__all__ = [
    "BULK_LOAD_SETTINGS",
    "DUMP_BASE_FLAGS",
    "ProcessResult",
    "RESTORE_SETTINGS",
    "StreamingTransferPipeline",
    "build_dump_args",
    "build_restore_args",
    "table_filter_flags",
    "table_pattern",
]
