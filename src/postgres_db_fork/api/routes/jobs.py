"""Fork job management routes."""

from __future__ import annotations

from datetime import timedelta
from typing import NoReturn

from fastapi import APIRouter, Depends, HTTPException, Path, Query

from postgres_db_fork.api.dependencies import get_job_service
from postgres_db_fork.application.services import (
    JobAccepted,
    JobCleanupResponse,
    JobListResponse,
    JobService,
)
from postgres_db_fork.domain.errors import (
    ErrorType,
    ForkError,
    JobConflictError,
    JobNotFoundError,
)
from postgres_db_fork.domain.fork_config import ForkConfig
from postgres_db_fork.domain.job_state import JobState

router = APIRouter(tags=["fork jobs"])


def _raise_http_exception(exc: Exception) -> NoReturn:
    if isinstance(exc, JobNotFoundError):
        raise HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, JobConflictError):
        raise HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ForkError) and exc.error_type == ErrorType.CONFIGURATION:
        raise HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, ValueError):
        raise HTTPException(status_code=400, detail=str(exc))
    raise HTTPException(status_code=500, detail="Unexpected fork job error")


@router.get("/jobs", response_model=JobListResponse, status_code=200)
async def list_jobs(
    service: JobService = Depends(get_job_service),
) -> JobListResponse:
    """List known jobs, most recently updated first."""

    try:
        return service.list_jobs()
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


@router.post("/jobs/cleanup", response_model=JobCleanupResponse, status_code=200)
async def cleanup_jobs(
    max_age_hours: float = Query(default=168.0, alias="maxAgeHours", ge=0),
    service: JobService = Depends(get_job_service),
) -> JobCleanupResponse:
    """Delete terminal jobs older than the retention threshold."""

    try:
        return service.cleanup_jobs(timedelta(hours=max_age_hours))
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


@router.get("/jobs/{id}", response_model=JobState, status_code=200)
async def get_job(
    id: str = Path(...),
    service: JobService = Depends(get_job_service),
) -> JobState:
    try:
        return service.get_job(id)
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


@router.post("/forks", response_model=JobAccepted, status_code=202)
async def start_fork(
    config: ForkConfig,
    service: JobService = Depends(get_job_service),
) -> JobAccepted:
    """Start a fork in the background."""

    try:
        return await service.start_fork(config)
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


@router.post("/jobs/{id}/pause", response_model=JobState, status_code=200)
async def pause_job(
    id: str = Path(...),
    service: JobService = Depends(get_job_service),
) -> JobState:
    try:
        return await service.pause_job(id)
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


@router.post("/jobs/{id}/resume", response_model=JobAccepted, status_code=202)
async def resume_job(
    id: str = Path(...),
    service: JobService = Depends(get_job_service),
) -> JobAccepted:
    try:
        return await service.resume_job(id)
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


@router.post("/jobs/{id}/cancel", response_model=JobState, status_code=200)
async def cancel_job(
    id: str = Path(...),
    service: JobService = Depends(get_job_service),
) -> JobState:
    try:
        return await service.cancel_job(id)
    except Exception as exc:  # noqa: BLE001
        _raise_http_exception(exc)


__all__ = ["router"]
