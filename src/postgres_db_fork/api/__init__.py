"""API package."""

from postgres_db_fork.api.router import api_router

__all__ = ["api_router"]
