"""Health check routes."""

from fastapi import APIRouter

from postgres_db_fork import __version__

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz() -> dict[str, str]:
    """Liveness check."""

    return {"status": "ok", "version": __version__}


__all__ = ["router"]
