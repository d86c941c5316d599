"""Application bootstrap/wiring."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path

from postgres_db_fork.application.services import (
    CircuitBreaker,
    ErrorHandler,
    Forker,
    ForkMetrics,
    JobService,
    ProgressMonitor,
)
from postgres_db_fork.config import TEMPLATE_VAR_PREFIX, Settings
from postgres_db_fork.domain.errors import RetryConfig
from postgres_db_fork.domain.fork_config import DatabaseConfig, ForkConfig, HooksConfig
from postgres_db_fork.domain.ports import (
    ConnectionFactory,
    DatabaseConnection,
    HookRunner,
    RetryRunner,
    TransferPipeline,
)
from postgres_db_fork.infrastructure.database import connect_postgres
from postgres_db_fork.infrastructure.hooks import ShellHookRunner
from postgres_db_fork.infrastructure.state import ResumptionManager, default_state_dir
from postgres_db_fork.infrastructure.transfers import StreamingTransferPipeline

logger = logging.getLogger(__name__)


def _source_config(settings: Settings) -> DatabaseConfig:
    if settings.source_uri:
        values: dict[str, object] = {"uri": settings.source_uri}
        if settings.source_password:
            values["password"] = settings.source_password
        return DatabaseConfig.model_validate(values)
    return DatabaseConfig(
        host=settings.source_host,
        port=settings.source_port,
        username=settings.source_user,
        password=settings.source_password,
        database=settings.source_database,
        sslmode=settings.source_sslmode,
    )


def _destination_config(settings: Settings, source: DatabaseConfig) -> DatabaseConfig:
    """Destination settings; anything unset falls back to the source server."""

    if settings.dest_uri:
        values: dict[str, object] = {"uri": settings.dest_uri}
        password = settings.dest_password or source.password
        if password:
            values["password"] = password
        return DatabaseConfig.model_validate(values)
    return DatabaseConfig(
        host=settings.dest_host or source.host,
        port=settings.dest_port or source.port,
        username=settings.dest_user or source.username,
        password=settings.dest_password or source.password,
        sslmode=settings.dest_sslmode or source.sslmode,
    )


def template_vars_from_env(environ: Mapping[str, str]) -> dict[str, str]:
    """Collect ``PGFORK_VAR_<NAME>`` variables as template variables."""

    return {
        name[len(TEMPLATE_VAR_PREFIX) :]: value
        for name, value in environ.items()
        if name.startswith(TEMPLATE_VAR_PREFIX) and len(name) > len(TEMPLATE_VAR_PREFIX)
    }


def build_fork_config(
    settings: Settings,
    environ: Mapping[str, str] | None = None,
) -> ForkConfig:
    """Translate flat settings into a rendered fork request."""

    env = os.environ if environ is None else environ
    source = _source_config(settings)
    config = ForkConfig(
        source=source,
        destination=_destination_config(settings, source),
        target_database=settings.target_database,
        drop_if_exists=settings.drop_if_exists,
        schema_only=settings.schema_only,
        data_only=settings.data_only,
        include_tables=settings.include_tables,
        exclude_tables=settings.exclude_tables,
        timeout_seconds=settings.timeout_seconds,
        dry_run=settings.dry_run,
        output_format=settings.output_format,
        quiet=settings.quiet,
        template_vars=template_vars_from_env(env),
        hooks=HooksConfig(
            pre_fork=settings.pre_fork_hooks,
            post_fork=settings.post_fork_hooks,
            on_error=settings.on_error_hooks,
        ),
        job_id=settings.job_id,
        track_job=settings.track_job,
        state_dir=settings.state_dir,
        cleanup_state_on_success=settings.cleanup_state_on_success,
        progress_file=settings.progress_file,
        progress_interval_seconds=settings.progress_interval_seconds,
        metrics_file=settings.metrics_file,
        pg_dump_path=settings.pg_dump_path,
        pg_restore_path=settings.pg_restore_path,
        retry=RetryConfig(
            max_attempts=settings.retry_max_attempts,
            initial_delay_seconds=settings.retry_initial_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
            backoff_factor=settings.retry_backoff_factor,
            jitter_ratio=settings.retry_jitter_ratio,
        ),
    )
    return config.render_templates(env)


def build_streaming_pipeline(
    config: ForkConfig,
    source_connection: DatabaseConnection,
    dest_connection: DatabaseConnection,
    retry_runner: RetryRunner,
) -> TransferPipeline:
    return StreamingTransferPipeline(
        config,
        source_connection,
        dest_connection,
        retry_runner=retry_runner,
    )


def build_forker(
    config: ForkConfig,
    *,
    settings: Settings | None = None,
    connection_factory: ConnectionFactory = connect_postgres,
    hook_runner: HookRunner | None = None,
    log: logging.Logger | None = None,
) -> Forker:
    """Compose one forker with its job-scoped collaborators."""

    fork_logger = log or logging.getLogger("postgres_db_fork.fork")
    job_id = config.resolved_job_id()
    breaker = CircuitBreaker(
        failure_threshold=settings.circuit_breaker_threshold if settings else 5,
        reset_timeout_seconds=settings.circuit_breaker_reset_seconds if settings else 30.0,
    )
    resumption = (
        ResumptionManager(job_id, config.state_dir) if config.track_job else None
    )
    return Forker(
        config,
        connection_factory=connection_factory,
        pipeline_factory=build_streaming_pipeline,
        hook_runner=hook_runner or ShellHookRunner(),
        resumption_manager=resumption,
        progress_monitor=ProgressMonitor(
            output_format=config.output_format,
            quiet=config.quiet,
            progress_file=config.progress_file,
            report_interval_seconds=config.progress_interval_seconds,
            log=fork_logger,
        ),
        error_handler=ErrorHandler(
            config.retry,
            context=f"job {job_id}",
            circuit_breaker=breaker,
            log=fork_logger,
        ),
        metrics=ForkMetrics(config.metrics_file),
        log=fork_logger,
    )


def build_job_service(settings: Settings) -> JobService:
    """Compose the job management service."""

    state_dir = Path(settings.state_dir) if settings.state_dir else default_state_dir()

    def forker_factory(config: ForkConfig) -> Forker:
        return build_forker(config, settings=settings)

    logger.info("Job state directory: %s", state_dir)
    return JobService(state_dir=state_dir, forker_factory=forker_factory)


__all__ = [
    "build_fork_config",
    "build_forker",
    "build_job_service",
    "build_streaming_pipeline",
    "template_vars_from_env",
]
