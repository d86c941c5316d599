"""Application settings."""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

TEMPLATE_VAR_PREFIX = "PGFORK_VAR_"


class LogFormat(StrEnum):
    """Log line formats."""

    TEXT = "text"
    JSON = "json"


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "PostgreSQL Database Fork"
    api_prefix: str = ""
    host: str = "0.0.0.0"
    port: int = 8080

    source_uri: str | None = None
    source_host: str = "localhost"
    source_port: int = 5432
    source_user: str = "postgres"
    source_password: str | None = None
    source_database: str = ""
    source_sslmode: str = "prefer"

    dest_uri: str | None = None
    dest_host: str | None = None
    dest_port: int | None = None
    dest_user: str | None = None
    dest_password: str | None = None
    dest_sslmode: str | None = None

    target_database: str = ""
    drop_if_exists: bool = False
    schema_only: bool = False
    data_only: bool = False
    include_tables: Annotated[list[str], NoDecode] = Field(default_factory=list)
    exclude_tables: Annotated[list[str], NoDecode] = Field(default_factory=list)
    timeout_seconds: float = 1800.0
    dry_run: bool = False
    output_format: str = "text"
    quiet: bool = False

    pre_fork_hooks: list[str] = Field(default_factory=list)
    post_fork_hooks: list[str] = Field(default_factory=list)
    on_error_hooks: list[str] = Field(default_factory=list)

    job_id: str | None = None
    track_job: bool = True
    state_dir: str | None = None
    cleanup_state_on_success: bool = False
    progress_file: str | None = None
    progress_interval_seconds: float = 30.0
    metrics_file: str | None = None
    pg_dump_path: str = "pg_dump"
    pg_restore_path: str = "pg_restore"

    retry_max_attempts: int = 3
    retry_initial_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    retry_backoff_factor: float = 2.0
    retry_jitter_ratio: float = 0.1
    circuit_breaker_threshold: int = 5
    circuit_breaker_reset_seconds: float = 30.0

    log_level: str = "INFO"
    log_format: LogFormat = LogFormat.TEXT

    @field_validator("include_tables", "exclude_tables", mode="before")
    @classmethod
    def parse_csv_list(cls, value: object) -> object:
        """Support comma-separated env var values in addition to lists."""

        if not isinstance(value, str):
            return value
        return [item.strip() for item in value.split(",") if item.strip()]

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @model_validator(mode="after")
    def validate_ranges(self) -> "Settings":
        """Reject settings that cannot describe a working fork."""

        if not 1 <= self.port <= 65535:
            raise ValueError("PGFORK_PORT must be between 1 and 65535.")
        if self.timeout_seconds <= 0:
            raise ValueError("PGFORK_TIMEOUT_SECONDS must be > 0.")
        if self.progress_interval_seconds <= 0:
            raise ValueError("PGFORK_PROGRESS_INTERVAL_SECONDS must be > 0.")
        if self.output_format not in {"text", "json"}:
            raise ValueError("PGFORK_OUTPUT_FORMAT must be 'text' or 'json'.")
        if self.retry_max_attempts < 1:
            raise ValueError("PGFORK_RETRY_MAX_ATTEMPTS must be >= 1.")
        if self.retry_initial_delay_seconds < 0:
            raise ValueError("PGFORK_RETRY_INITIAL_DELAY_SECONDS must be >= 0.")
        if self.retry_max_delay_seconds < self.retry_initial_delay_seconds:
            raise ValueError(
                "PGFORK_RETRY_MAX_DELAY_SECONDS must be >= "
                "PGFORK_RETRY_INITIAL_DELAY_SECONDS."
            )
        if self.retry_backoff_factor < 1:
            raise ValueError("PGFORK_RETRY_BACKOFF_FACTOR must be >= 1.")
        if not 0 <= self.retry_jitter_ratio <= 1:
            raise ValueError("PGFORK_RETRY_JITTER_RATIO must be between 0 and 1.")
        if self.circuit_breaker_threshold < 1:
            raise ValueError("PGFORK_CIRCUIT_BREAKER_THRESHOLD must be >= 1.")
        if self.circuit_breaker_reset_seconds <= 0:
            raise ValueError("PGFORK_CIRCUIT_BREAKER_RESET_SECONDS must be > 0.")
        if self.log_level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError("PGFORK_LOG_LEVEL must be a standard logging level name.")
        return self

    model_config = SettingsConfigDict(env_prefix="PGFORK_", extra="ignore")


__all__ = ["LogFormat", "Settings", "TEMPLATE_VAR_PREFIX"]
