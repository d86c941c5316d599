"""asyncpg-backed database collaborator used by the fork engine."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import asyncpg  # type: ignore[import-untyped]

from postgres_db_fork.domain.fork_config import DatabaseConfig
from postgres_db_fork.domain.ports import DatabaseConnection

logger = logging.getLogger(__name__)

OBJECT_IN_USE_SQLSTATE = "55006"
DEFAULT_BUSY_RETRIES = 5
DEFAULT_BUSY_DELAY_SECONDS = 0.5


def quote_identifier(name: str) -> str:
    """Quote an SQL identifier."""

    return '"' + name.replace('"', '""') + '"'


def is_object_in_use(error: BaseException) -> bool:
    """Whether a driver error means "database is being accessed by other users"."""

    return getattr(error, "sqlstate", None) == OBJECT_IN_USE_SQLSTATE


class PostgresConnection(DatabaseConnection):
    """Database operations over a small asyncpg pool."""

    def __init__(
        self,
        config: DatabaseConfig,
        *,
        busy_retries: int = DEFAULT_BUSY_RETRIES,
        busy_delay_seconds: float = DEFAULT_BUSY_DELAY_SECONDS,
        command_timeout_seconds: float | None = None,
    ) -> None:
        self._config = config
        self._busy_retries = max(busy_retries, 1)
        self._busy_delay_seconds = max(busy_delay_seconds, 0.0)
        self._command_timeout_seconds = command_timeout_seconds
        self._pool: asyncpg.Pool | None = None
        self._pool_lock = asyncio.Lock()

    @property
    def config(self) -> DatabaseConfig:
        return self._config

    async def execute(self, query: str, *args: Any) -> str:
        pool = await self._get_pool()
        return await pool.execute(query, *args)

    async def fetch(self, query: str, *args: Any) -> list[Any]:
        pool = await self._get_pool()
        return list(await pool.fetch(query, *args))

    async def ping(self) -> None:
        pool = await self._get_pool()
        await pool.fetchval("SELECT 1")

    async def get_version(self) -> str:
        pool = await self._get_pool()
        return str(await pool.fetchval("SELECT version()"))

    async def database_exists(self, name: str) -> bool:
        pool = await self._get_pool()
        return bool(
            await pool.fetchval(
                "SELECT EXISTS(SELECT 1 FROM pg_database WHERE datname = $1)",
                name,
            )
        )

    async def create_database(
        self,
        target: str,
        template: str | None = None,
        drop_if_exists: bool = False,
    ) -> None:
        """Create ``target``; a template clone retries while the template is busy."""

        if drop_if_exists:
            await self.drop_database(target)

        statement = f"CREATE DATABASE {quote_identifier(target)}"
        if template:
            statement = f"{statement} WITH TEMPLATE {quote_identifier(template)}"

        pool = await self._get_pool()
        await self._retry_while_busy(lambda: pool.execute(statement), f"create {target}")
        logger.info("Created database %s%s.", target, f" from {template}" if template else "")

    async def drop_database(self, name: str) -> None:
        """Terminate sessions on ``name`` and drop it if present."""

        pool = await self._get_pool()

        async def _drop() -> str:
            await pool.execute(
                """
                SELECT pg_terminate_backend(pid)
                FROM pg_stat_activity
                WHERE datname = $1 AND pid <> pg_backend_pid()
                """,
                name,
            )
            return await pool.execute(f"DROP DATABASE IF EXISTS {quote_identifier(name)}")

        await self._retry_while_busy(_drop, f"drop {name}")
        logger.info("Dropped database %s.", name)

    async def get_database_size(self, name: str) -> int:
        pool = await self._get_pool()
        return int(await pool.fetchval("SELECT pg_database_size($1)", name))

    async def get_table_list(self, schema: str = "public") -> list[str]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "SELECT tablename FROM pg_tables WHERE schemaname = $1 ORDER BY tablename",
            schema,
        )
        return [row["tablename"] for row in rows]

    async def get_table_row_counts(self, schema: str = "public") -> dict[str, int]:
        """Planner row estimates; exact counts would need a full scan per table."""

        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            SELECT c.relname AS table_name, GREATEST(c.reltuples, 0)::bigint AS row_count
            FROM pg_class c
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE n.nspname = $1 AND c.relkind IN ('r', 'p')
            ORDER BY c.relname
            """,
            schema,
        )
        return {row["table_name"]: int(row["row_count"]) for row in rows}

    async def close(self) -> None:
        """Close the pool if it was initialized."""

        pool = self._pool
        self._pool = None
        if pool is not None:
            await pool.close()

    async def _retry_while_busy(
        self,
        operation: Callable[[], Awaitable[Any]],
        description: str,
    ) -> None:
        delay = self._busy_delay_seconds
        for attempt in range(1, self._busy_retries + 1):
            try:
                await operation()
                return
            except asyncpg.PostgresError as exc:
                if not is_object_in_use(exc) or attempt == self._busy_retries:
                    raise
                logger.warning(
                    "Database busy during %s (attempt %s/%s), retrying in %.1fs.",
                    description,
                    attempt,
                    self._busy_retries,
                    delay,
                )
            await asyncio.sleep(delay)
            delay *= 2

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is not None:
            return self._pool

        async with self._pool_lock:
            if self._pool is None:
                config = self._config
                self._pool = await asyncpg.create_pool(
                    host=config.host,
                    port=config.port,
                    user=config.username,
                    password=config.password,
                    database=config.database or "postgres",
                    ssl=config.sslmode,
                    min_size=1,
                    max_size=2,
                    command_timeout=self._command_timeout_seconds,
                )
        assert self._pool is not None
        return self._pool


async def connect_postgres(config: DatabaseConfig) -> PostgresConnection:
    """Default connection factory: open the pool and verify it answers."""

    connection = PostgresConnection(config)
    try:
        version = await connection.get_version()
    except BaseException:
        await connection.close()
        raise
    logger.debug("Connected to %s:%s: %s", config.host, config.port, version)
    return connection


__all__ = [
    "OBJECT_IN_USE_SQLSTATE",
    "PostgresConnection",
    "connect_postgres",
    "is_object_in_use",
    "quote_identifier",
]
