"""Fork request models: connection targets, hooks and fork options."""

from __future__ import annotations

import hashlib
import json
import re
from collections.abc import Mapping, Sequence
from typing import Any, Literal
from urllib.parse import parse_qs, unquote, urlsplit

from pydantic import BaseModel, ConfigDict, Field, model_validator

from postgres_db_fork.domain.errors import ErrorType, RetryConfig, fatal_error
from postgres_db_fork.domain.job_state import ConnectionIdentity

SslMode = Literal["disable", "allow", "prefer", "require", "verify-ca", "verify-full"]

MAX_IDENTIFIER_LENGTH = 63
_TEMPLATE_PATTERN = re.compile(r"\{\{\s*\.([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")
_URI_FIELDS = ("host", "port", "username", "database")


def sanitize_branch_name(branch: str) -> str:
    """Turn a VCS branch name into a usable database identifier fragment."""

    result = branch.replace("/", "_").replace("-", "_").replace(".", "_").lower()
    if result and result[0].isdigit():
        result = f"br_{result}"
    return result[:MAX_IDENTIFIER_LENGTH]


def _parse_postgres_uri(uri: str) -> dict[str, Any]:
    parts = urlsplit(uri)
    if parts.scheme not in {"postgres", "postgresql"}:
        raise ValueError(f"invalid PostgreSQL URI scheme: {parts.scheme!r}")
    try:
        port = parts.port or 5432
    except ValueError as exc:
        raise ValueError(f"invalid port in URI: {exc}") from exc

    parsed: dict[str, Any] = {"port": port}
    if parts.hostname:
        parsed["host"] = parts.hostname
    if parts.username:
        parsed["username"] = unquote(parts.username)
    if parts.password is not None:
        parsed["password"] = unquote(parts.password)
    database = parts.path.lstrip("/")
    if database:
        parsed["database"] = unquote(database)
    sslmode = parse_qs(parts.query).get("sslmode")
    if sslmode:
        parsed["sslmode"] = sslmode[0]
    return parsed


class DatabaseConfig(BaseModel):
    """Connection settings for one PostgreSQL server/database."""

    model_config = ConfigDict(extra="forbid")

    uri: str | None = Field(default=None, repr=False)
    host: str = "localhost"
    port: int = Field(default=5432, ge=1, le=65535)
    username: str = "postgres"
    password: str | None = Field(default=None, repr=False)
    database: str = ""
    sslmode: SslMode = "prefer"

    @model_validator(mode="before")
    @classmethod
    def apply_uri(cls, data: Any) -> Any:
        """Fill individual fields from ``uri`` and reject conflicting values."""

        if not isinstance(data, Mapping) or not data.get("uri"):
            return data
        values = dict(data)
        parsed = _parse_postgres_uri(str(values["uri"]))
        for name in _URI_FIELDS:
            explicit = values.get(name)
            if explicit in (None, "", 0) or name not in parsed:
                continue
            if str(explicit) != str(parsed[name]):
                raise ValueError(f"URI {name} conflicts with individual {name} parameter")
        for name, value in parsed.items():
            if values.get(name) in (None, ""):
                values[name] = value
        return values

    def identity(self) -> ConnectionIdentity:
        return ConnectionIdentity(
            host=self.host,
            port=self.port,
            username=self.username,
            database=self.database,
            sslmode=self.sslmode,
        )

    def with_database(self, database: str) -> DatabaseConfig:
        return self.model_copy(update={"database": database, "uri": None})

    def libpq_args(self) -> list[str]:
        """Connection flags shared by pg_dump and pg_restore (no password)."""

        return [
            f"--host={self.host}",
            f"--port={self.port}",
            f"--username={self.username}",
            f"--dbname={self.database}",
        ]

    def libpq_env(self) -> dict[str, str]:
        """Environment carrying credentials for libpq based tools."""

        env = {"PGSSLMODE": self.sslmode}
        if self.password:
            env["PGPASSWORD"] = self.password
        return env

    def display_name(self) -> str:
        return f"{self.username}@{self.host}:{self.port}/{self.database}"


class HooksConfig(BaseModel):
    """Shell commands run around a fork."""

    model_config = ConfigDict(extra="forbid")

    pre_fork: list[str] = Field(default_factory=list)
    post_fork: list[str] = Field(default_factory=list)
    on_error: list[str] = Field(default_factory=list)


class ForkConfig(BaseModel):
    """Complete description of one fork request."""

    model_config = ConfigDict(extra="forbid")

    source: DatabaseConfig
    destination: DatabaseConfig
    target_database: str
    drop_if_exists: bool = False
    schema_only: bool = False
    data_only: bool = False
    include_tables: list[str] = Field(default_factory=list)
    exclude_tables: list[str] = Field(default_factory=list)
    timeout_seconds: float = Field(default=1800.0, gt=0)
    dry_run: bool = False
    output_format: Literal["text", "json"] = "text"
    quiet: bool = False
    template_vars: dict[str, str] = Field(default_factory=dict)
    hooks: HooksConfig = Field(default_factory=HooksConfig)
    job_id: str | None = None
    track_job: bool = True
    state_dir: str | None = None
    cleanup_state_on_success: bool = False
    progress_file: str | None = None
    progress_interval_seconds: float = Field(default=30.0, gt=0)
    metrics_file: str | None = None
    pg_dump_path: str = "pg_dump"
    pg_restore_path: str = "pg_restore"
    retry: RetryConfig = Field(default_factory=RetryConfig)

    def is_same_server(self) -> bool:
        return (
            self.source.host == self.destination.host
            and self.source.port == self.destination.port
            and self.source.username == self.destination.username
        )

    def uses_template_clone(self) -> bool:
        """Template cloning copies everything, so filters force a streamed fork."""

        return (
            self.is_same_server()
            and not self.schema_only
            and not self.include_tables
            and not self.exclude_tables
        )

    def target_config(self) -> DatabaseConfig:
        return self.destination.with_database(self.target_database)

    def filter_tables(self, tables: Sequence[str]) -> list[str]:
        """Apply include/exclude lists; a non-empty include list ignores exclude."""

        if self.include_tables:
            wanted = set(self.include_tables)
            return [table for table in tables if table in wanted]
        if self.exclude_tables:
            unwanted = set(self.exclude_tables)
            return [table for table in tables if table not in unwanted]
        return list(tables)

    def validation_errors(self) -> list[str]:
        """Business-rule problems that make this request unusable."""

        problems: list[str] = []
        if not self.source.database:
            problems.append("source database is required")
        if not self.target_database:
            problems.append("target database is required")
        elif len(self.target_database.encode("utf-8")) > MAX_IDENTIFIER_LENGTH:
            problems.append(
                f"target database name exceeds {MAX_IDENTIFIER_LENGTH} bytes"
            )
        if self.schema_only and self.data_only:
            problems.append("cannot specify both schema-only and data-only options")
        if self.source.database == self.target_database and self.is_same_server():
            problems.append("source and target databases cannot be the same on the same server")
        overlap = sorted(set(self.include_tables) & set(self.exclude_tables))
        for table in overlap:
            problems.append(f"table '{table}' cannot be both included and excluded")
        return problems

    def resolved_job_id(self) -> str:
        """Explicit job id, or a stable id derived from the fork identity."""

        if self.job_id:
            return self.job_id
        identity = {
            "source": self.source.identity().model_dump(),
            "destination": self.destination.identity().model_dump(),
            "target": self.target_database,
        }
        digest = hashlib.sha256(
            json.dumps(identity, sort_keys=True).encode("utf-8")
        ).hexdigest()
        return f"fork-{digest[:12]}"

    def render_templates(self, environ: Mapping[str, str]) -> ForkConfig:
        """Return a copy with ``{{.NAME}}`` placeholders in database names resolved."""

        variables = dict(self.template_vars)
        for env_name in ("GITHUB_PR_NUMBER", "CI_MERGE_REQUEST_IID"):
            if environ.get(env_name):
                variables["PR_NUMBER"] = environ[env_name]
        for env_name in ("GITHUB_HEAD_REF", "CI_COMMIT_REF_NAME"):
            if environ.get(env_name):
                variables["BRANCH"] = sanitize_branch_name(environ[env_name])
        for env_name in ("GITHUB_SHA", "CI_COMMIT_SHA"):
            commit = environ.get(env_name, "")
            if len(commit) >= 8:
                variables["COMMIT_SHORT"] = commit[:8]

        def render(template: str) -> str:
            def substitute(match: re.Match[str]) -> str:
                name = match.group(1)
                if name not in variables:
                    raise fatal_error(
                        ErrorType.CONFIGURATION,
                        "template processing failed",
                        details=f"no value for template variable '{name}'",
                    )
                return variables[name]

            return _TEMPLATE_PATTERN.sub(substitute, template)

        return self.model_copy(
            update={
                "target_database": render(self.target_database),
                "source": self.source.model_copy(
                    update={"database": render(self.source.database), "uri": None}
                ),
            }
        )


__all__ = [
    "DatabaseConfig",
    "ForkConfig",
    "HooksConfig",
    "MAX_IDENTIFIER_LENGTH",
    "SslMode",
    "sanitize_branch_name",
]
