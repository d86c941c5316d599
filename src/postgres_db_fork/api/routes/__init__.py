"""Route modules public API."""

from postgres_db_fork.api.routes.health import router as health_router
from postgres_db_fork.api.routes.jobs import router as jobs_router

__all__ = ["health_router", "jobs_router"]
