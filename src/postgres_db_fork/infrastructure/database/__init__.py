"""Database adapters."""

from postgres_db_fork.infrastructure.database.postgres_connection import (
    PostgresConnection,
    connect_postgres,
    quote_identifier,
)

__all__ = ["PostgresConnection", "connect_postgres", "quote_identifier"]
