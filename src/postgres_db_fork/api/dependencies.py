"""Dependency providers for FastAPI routes."""

from functools import lru_cache

from postgres_db_fork.application.services import JobService
from postgres_db_fork.bootstrap import build_job_service
from postgres_db_fork.config import Settings


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return singleton settings."""

    return Settings()


@lru_cache(maxsize=1)
def get_job_service() -> JobService:
    """Return singleton job service."""

    return build_job_service(get_settings())


__all__ = ["get_job_service", "get_settings"]
