"""Fork orchestration: strategy selection, phases, hooks, and cancellation."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from contextlib import suppress

from postgres_db_fork.application.services.error_handler import ErrorHandler
from postgres_db_fork.application.services.fork_metrics import ForkMetrics
from postgres_db_fork.application.services.progress_monitor import ProgressMonitor
from postgres_db_fork.domain.errors import (
    ErrorType,
    ForkError,
    ForkInterruptedError,
    JobStateError,
    fatal_error,
)
from postgres_db_fork.domain.fork_config import DatabaseConfig, ForkConfig
from postgres_db_fork.domain.job_state import ForkPhase, JobState
from postgres_db_fork.domain.ports import (
    ConnectionFactory,
    DatabaseConnection,
    HookRunner,
    RetryRunner,
    TransferPipeline,
    TransferPlan,
)
from postgres_db_fork.infrastructure.state.resumption_manager import ResumptionManager

logger = logging.getLogger(__name__)

PipelineFactory = Callable[
    [ForkConfig, DatabaseConnection, DatabaseConnection, RetryRunner],
    TransferPipeline,
]

MAINTENANCE_DATABASE = "postgres"
EMPTY_TEMPLATE = "template0"


class JobProgressRecorder:
    """Forwards transfer events to the job state, progress monitor, and metrics."""

    def __init__(
        self,
        resumption: ResumptionManager | None,
        progress: ProgressMonitor,
        metrics: ForkMetrics,
        row_counts: Mapping[str, int],
    ) -> None:
        self._resumption = resumption
        self._progress = progress
        self._metrics = metrics
        self._row_counts = dict(row_counts)

    def phase_started(self, phase: ForkPhase) -> None:
        if self._resumption is not None:
            self._resumption.update_phase(phase)
        self._progress.set_phase(phase)

    def schema_completed(self) -> None:
        if self._resumption is not None:
            self._resumption.mark_schema_completed()

    def table_started(self, table: str) -> None:
        self._progress.start_table(table)

    def table_completed(self, table: str) -> None:
        if self._resumption is not None:
            self._resumption.mark_table_completed(table)
        self._progress.complete_table(table)
        self._metrics.record_table(rows=self._row_counts.get(table, 0))

    def table_failed(self, table: str, error: BaseException) -> None:
        if self._resumption is not None:
            self._resumption.mark_table_failed(table, error)
        self._progress.fail_table(table, error)
        self._metrics.record_error()

    def indexes_completed(self) -> None:
        if self._resumption is not None:
            self._resumption.mark_indexes_completed()


class Forker:
    """Runs one fork job from validation to completion.

    Every collaborator is injected; the forker owns its logger, metrics, progress monitor,
    error handler, and job state for exactly one job id.
    """

    def __init__(
        self,
        config: ForkConfig,
        *,
        connection_factory: ConnectionFactory,
        pipeline_factory: PipelineFactory,
        hook_runner: HookRunner,
        resumption_manager: ResumptionManager | None = None,
        progress_monitor: ProgressMonitor | None = None,
        error_handler: ErrorHandler | None = None,
        metrics: ForkMetrics | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._job_id = config.resolved_job_id()
        self._connect = connection_factory
        self._pipeline_factory = pipeline_factory
        self._hooks = hook_runner
        self._resumption = resumption_manager
        self._logger = log or logger
        self._progress = progress_monitor or ProgressMonitor(
            output_format=config.output_format,
            quiet=config.quiet,
            progress_file=config.progress_file,
            report_interval_seconds=config.progress_interval_seconds,
            log=self._logger,
        )
        self._errors = error_handler or ErrorHandler(
            config.retry,
            context=f"job {self._job_id}",
            log=self._logger,
        )
        self._metrics = metrics or ForkMetrics(config.metrics_file)

    @property
    def job_id(self) -> str:
        return self._job_id

    @property
    def progress(self) -> ProgressMonitor:
        return self._progress

    @property
    def error_handler(self) -> ErrorHandler:
        return self._errors

    @property
    def metrics(self) -> ForkMetrics:
        return self._metrics

    async def fork(self, cancel_event: asyncio.Event | None = None) -> None:
        """Run the fork; a set ``cancel_event`` interrupts it and pauses the job."""

        self._metrics.start()
        self._errors.bind_cancel_event(cancel_event)

        problems = self._config.validation_errors()
        if problems:
            error = fatal_error(
                ErrorType.CONFIGURATION,
                "invalid fork configuration",
                details="; ".join(problems),
            )
            self._metrics.record_error()
            self._metrics.finish("failed")
            raise error

        if self._config.dry_run:
            self._log_plan()
            return

        await self._progress.start()
        run = asyncio.create_task(self._run(), name=f"fork-{self._job_id}")
        stop = (
            asyncio.create_task(cancel_event.wait(), name=f"fork-{self._job_id}-cancel")
            if cancel_event is not None
            else None
        )
        waiters: set[asyncio.Task[object]] = {run}
        if stop is not None:
            waiters.add(stop)
        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self._config.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if run in done:
                try:
                    run.result()
                except ForkInterruptedError:
                    self._record_interrupted()
                    self._metrics.finish("interrupted")
                    raise
                except BaseException:
                    self._metrics.finish("failed")
                    raise
                self._metrics.finish("completed")
                return

            await self._abort(run)
            if stop is not None and stop in done:
                self._record_interrupted()
                self._metrics.finish("interrupted")
                raise ForkInterruptedError()

            error = fatal_error(
                ErrorType.TIMEOUT,
                "fork timed out",
                details=f"exceeded {self._config.timeout_seconds:g}s",
            )
            await self._handle_failure(error)
            self._metrics.finish("failed")
            raise error
        except asyncio.CancelledError:
            await self._abort(run)
            self._record_interrupted()
            self._metrics.finish("interrupted")
            raise
        finally:
            if stop is not None and not stop.done():
                stop.cancel()
                with suppress(asyncio.CancelledError):
                    await stop
            await self._progress.stop()

    async def _run(self) -> None:
        config = self._config
        try:
            await self._run_hooks("pre-fork", config.hooks.pre_fork)
            if config.uses_template_clone():
                await self._fork_same_server()
            else:
                await self._fork_cross_server()
            await self._finalize()
        except ForkInterruptedError:
            raise
        except ForkError as exc:
            await self._handle_failure(exc)
            raise
        except Exception as exc:
            error = self._errors.wrap_error(exc, "fork failed")
            await self._handle_failure(error)
            raise error from exc

    async def _fork_same_server(self) -> None:
        config = self._config
        source_name = config.source.database
        target_name = config.target_database
        self._logger.info(
            "Forking %s to %s on %s:%s using template clone.",
            source_name,
            target_name,
            config.destination.host,
            config.destination.port,
        )

        admin = await self._open(
            config.destination.with_database(MAINTENANCE_DATABASE),
            "destination server",
        )
        try:
            source_exists = await self._errors.retry_with_backoff(
                lambda: admin.database_exists(source_name),
                "source database lookup",
            )
            if not source_exists:
                raise fatal_error(
                    ErrorType.CONFIGURATION,
                    f"source database '{source_name}' does not exist",
                )

            # The template must have no other sessions, so this connection is closed first.
            source = await self._open(config.source, "source database")
            try:
                row_counts = await source.get_table_row_counts()
            finally:
                await self._close(source)

            state, resumed = self._initialize_job(row_counts)
            recorder = self._recorder(state)
            self._progress.initialize_tables(state.table_row_counts, state.completed_tables)

            target_exists = await admin.database_exists(target_name)
            if resumed and target_exists and state.schema_completed:
                self._logger.info(
                    "Template clone %s from the previous run is present.", target_name
                )
            else:
                await self._prepare_target(admin, target_exists)
                recorder.phase_started(ForkPhase.DATA)
                await self._errors.retry_with_backoff(
                    lambda: admin.create_database(target_name, template=source_name),
                    "template clone",
                )
                recorder.schema_completed()

            for table in state.table_row_counts:
                if table not in state.completed_tables:
                    recorder.table_completed(table)
            recorder.indexes_completed()
            await self._log_sizes(admin, source_name, target_name)
        finally:
            await self._close(admin)

    async def _fork_cross_server(self) -> None:
        config = self._config
        target_name = config.target_database
        self._logger.info(
            "Forking %s to %s via pg_dump | pg_restore.",
            config.source.display_name(),
            config.target_config().display_name(),
        )

        source = await self._open(config.source, "source database")
        admin: DatabaseConnection | None = None
        target: DatabaseConnection | None = None
        try:
            tables = config.filter_tables(await source.get_table_list())
            estimates = await source.get_table_row_counts()
            row_counts = {table: estimates.get(table, 0) for table in tables}

            admin = await self._open(
                config.destination.with_database(MAINTENANCE_DATABASE),
                "destination server",
            )
            state, resumed = self._initialize_job(row_counts)
            target_exists = await admin.database_exists(target_name)
            if resumed and not target_exists:
                self._logger.warning(
                    "Target %s is gone; restarting job %s from scratch.",
                    target_name,
                    self._job_id,
                )
                state = self._reset_job(state)
                resumed = False
            if not resumed:
                await self._prepare_target(admin, target_exists)
                await self._errors.retry_with_backoff(
                    lambda: admin.create_database(target_name, template=EMPTY_TEMPLATE),
                    "target database creation",
                )

            self._progress.initialize_tables(state.table_row_counts, state.completed_tables)
            target = await self._open(config.target_config(), "target database")
            pipeline = self._pipeline_factory(config, source, target, self._errors)
            plan = TransferPlan(
                tables=state.remaining_tables(),
                transfer_schema=not config.data_only and not state.schema_completed,
                transfer_data=not config.schema_only,
                transfer_post_data=(
                    not config.data_only
                    and not config.schema_only
                    and not state.indexes_completed
                ),
                reset_tables=resumed,
            )
            if resumed:
                self._logger.info(
                    "Resuming with %s remaining table(s): %s",
                    len(plan.tables),
                    ", ".join(plan.tables) or "none",
                )
            await pipeline.transfer(plan, self._recorder(state))
            if config.schema_only and self._resumption is not None:
                self._resumption.mark_indexes_completed()
            await self._log_sizes(admin, None, target_name, source=source)
        finally:
            for connection in (target, admin, source):
                if connection is not None:
                    await self._close(connection)

    async def _prepare_target(self, admin: DatabaseConnection, target_exists: bool) -> None:
        """Refuse or drop a pre-existing target."""

        target_name = self._config.target_database
        if not target_exists:
            return
        if not self._config.drop_if_exists:
            raise fatal_error(
                ErrorType.CONFIGURATION,
                f"target database '{target_name}' already exists",
                details="enable drop_if_exists to overwrite it",
            )
        self._logger.info("Dropping existing target database %s.", target_name)
        await self._errors.retry_with_backoff(
            lambda: admin.drop_database(target_name),
            "target database drop",
        )

    async def _finalize(self) -> None:
        if self._resumption is not None:
            self._resumption.update_phase(ForkPhase.FINALIZATION)
        self._progress.set_phase(ForkPhase.FINALIZATION)
        await self._run_hooks("post-fork", self._config.hooks.post_fork)
        if self._resumption is not None:
            self._resumption.complete_job(cleanup=self._config.cleanup_state_on_success)
        self._progress.set_phase(ForkPhase.COMPLETED)
        self._logger.info(
            "Fork %s completed: %s is ready.", self._job_id, self._config.target_database
        )

    async def _run_hooks(self, stage: str, commands: list[str]) -> None:
        if not commands:
            return
        try:
            await self._hooks.run(stage, commands)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise self._errors.wrap_error(exc, f"{stage} hooks failed") from exc

    async def _handle_failure(self, error: ForkError) -> None:
        self._metrics.record_error()
        self._logger.error("Fork %s failed: %s", self._job_id, error)
        if self._resumption is not None:
            try:
                self._resumption.set_error(error)
            except JobStateError as exc:
                self._logger.warning("Could not record failure of job %s: %s", self._job_id, exc)
        self._progress.set_phase(ForkPhase.FAILED, str(error))

        if not self._config.hooks.on_error:
            return
        try:
            await self._hooks.run("on-error", self._config.hooks.on_error)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.error("On-error hooks failed for job %s: %s", self._job_id, exc)
            error.add_note(f"on-error hooks also failed: {exc}")

    def _record_interrupted(self) -> None:
        self._logger.warning("Fork %s interrupted; job state paused for resume.", self._job_id)
        if self._resumption is None:
            return
        try:
            self._resumption.pause_job()
        except JobStateError as exc:
            self._logger.warning("Could not pause job %s: %s", self._job_id, exc)

    async def _abort(self, run: asyncio.Task[None]) -> None:
        if run.done():
            return
        run.cancel()
        results = await asyncio.gather(run, return_exceptions=True)
        outcome = results[0]
        if isinstance(outcome, Exception):
            self._logger.warning("Fork task raised while stopping: %s", outcome)

    async def _open(self, config: DatabaseConfig, description: str) -> DatabaseConnection:
        return await self._errors.retry_with_circuit_breaker(
            lambda: self._connect(config),
            f"connect to {description} {config.display_name()}",
        )

    async def _close(self, connection: DatabaseConnection) -> None:
        try:
            await connection.close()
        except Exception as exc:  # noqa: BLE001
            self._logger.warning("Failed to close database connection: %s", exc)

    def _initialize_job(self, row_counts: Mapping[str, int]) -> tuple[JobState, bool]:
        config = self._config
        source = config.source.identity()
        dest = config.destination.identity()
        if self._resumption is None:
            return (
                JobState(
                    job_id=self._job_id,
                    source_config=source,
                    dest_config=dest,
                    target_database=config.target_database,
                    table_row_counts=dict(row_counts),
                ),
                False,
            )
        return self._resumption.initialize_job(
            source, dest, config.target_database, row_counts
        )

    def _reset_job(self, state: JobState) -> JobState:
        if self._resumption is None:
            return state
        self._resumption.reset_progress()
        refreshed = self._resumption.get_job_state()
        return refreshed if refreshed is not None else state

    def _recorder(self, state: JobState) -> JobProgressRecorder:
        return JobProgressRecorder(
            self._resumption,
            self._progress,
            self._metrics,
            state.table_row_counts,
        )

    async def _log_sizes(
        self,
        admin: DatabaseConnection,
        source_name: str | None,
        target_name: str,
        *,
        source: DatabaseConnection | None = None,
    ) -> None:
        try:
            target_size = await admin.get_database_size(target_name)
            if source is not None:
                source_size = await source.get_database_size(self._config.source.database)
            elif source_name is not None:
                source_size = await admin.get_database_size(source_name)
            else:
                source_size = None
        except Exception as exc:  # noqa: BLE001
            self._logger.warning("Could not read database sizes: %s", exc)
            return
        self._metrics.record_bytes(target_size)
        self._logger.info(
            "Target %s size: %s bytes (source: %s bytes).",
            target_name,
            target_size,
            source_size if source_size is not None else "unknown",
        )

    def _log_plan(self) -> None:
        config = self._config
        strategy = "template clone" if config.uses_template_clone() else "pg_dump | pg_restore"
        self._logger.info(
            "Dry run for job %s: %s -> %s using %s (schema_only=%s, data_only=%s, "
            "drop_if_exists=%s, include=%s, exclude=%s).",
            self._job_id,
            config.source.display_name(),
            config.target_config().display_name(),
            strategy,
            config.schema_only,
            config.data_only,
            config.drop_if_exists,
            config.include_tables,
            config.exclude_tables,
        )


__all__ = ["Forker", "JobProgressRecorder", "PipelineFactory"]
