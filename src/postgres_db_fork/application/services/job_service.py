"""Job management: background forks, pause/resume/cancel, and retention."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from pydantic import BaseModel

from postgres_db_fork.application.services.forker import Forker
from postgres_db_fork.domain.errors import (
    ErrorType,
    ForkError,
    ForkInterruptedError,
    JobConflictError,
    JobNotFoundError,
    fatal_error,
)
from postgres_db_fork.domain.fork_config import ForkConfig
from postgres_db_fork.domain.job_state import (
    RESUMABLE_JOB_STATUSES,
    JobState,
    JobStatus,
)
from postgres_db_fork.infrastructure.state import (
    ResumptionManager,
    cleanup_old_jobs,
    list_jobs,
)

logger = logging.getLogger(__name__)

ForkerFactory = Callable[[ForkConfig], Forker]


class JobAccepted(BaseModel):
    """Response returned when a fork was scheduled."""

    job_id: str
    status: JobStatus = JobStatus.RUNNING


class JobListResponse(BaseModel):
    jobs: list[JobState]


class JobCleanupResponse(BaseModel):
    removed: int


@dataclass(slots=True)
class _RunningFork:
    config: ForkConfig
    cancel_event: asyncio.Event
    task: asyncio.Task[None]


class JobService:
    """Runs forks as background tasks and manages job state files in one directory."""

    def __init__(self, *, state_dir: str | Path, forker_factory: ForkerFactory) -> None:
        self._state_dir = Path(state_dir)
        self._forker_factory = forker_factory
        self._running: dict[str, _RunningFork] = {}
        self._configs: dict[str, ForkConfig] = {}

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def is_running(self, job_id: str) -> bool:
        running = self._running.get(job_id)
        return running is not None and not running.task.done()

    def list_jobs(self) -> JobListResponse:
        return JobListResponse(jobs=list_jobs(self._state_dir))

    def get_job(self, job_id: str) -> JobState:
        state = self._manager(job_id).load_job()
        if state is None:
            raise JobNotFoundError(f"Job '{job_id}' not found.")
        return state

    async def start_fork(self, config: ForkConfig) -> JobAccepted:
        """Schedule a fork; a job id that is already running is a conflict."""

        problems = config.validation_errors()
        if problems:
            raise fatal_error(
                ErrorType.CONFIGURATION,
                "invalid fork configuration",
                details="; ".join(problems),
            )
        config = config.render_templates({}).model_copy(
            update={"state_dir": str(self._state_dir), "track_job": True}
        )
        job_id = config.resolved_job_id()
        if self.is_running(job_id):
            raise JobConflictError(f"Job '{job_id}' is already running.")

        forker = self._forker_factory(config)
        cancel_event = asyncio.Event()
        task = asyncio.create_task(
            self._run(job_id, forker, cancel_event),
            name=f"fork-job-{job_id}",
        )
        self._running[job_id] = _RunningFork(config=config, cancel_event=cancel_event, task=task)
        self._configs[job_id] = config
        logger.info("Scheduled fork job %s.", job_id)
        return JobAccepted(job_id=job_id)

    async def pause_job(self, job_id: str) -> JobState:
        if await self._interrupt(job_id):
            return self.get_job(job_id)

        manager = self._manager(job_id)
        if manager.load_job() is None:
            raise JobNotFoundError(f"Job '{job_id}' not found.")
        manager.pause_job()
        return self.get_job(job_id)

    async def resume_job(self, job_id: str) -> JobAccepted:
        if self.is_running(job_id):
            raise JobConflictError(f"Job '{job_id}' is already running.")
        state = self.get_job(job_id)
        if state.status not in RESUMABLE_JOB_STATUSES:
            raise JobConflictError(f"Job '{job_id}' in status {state.status} cannot be resumed.")
        config = self._configs.get(job_id)
        if config is None:
            raise JobConflictError(
                f"Configuration of job '{job_id}' is unknown to this process; "
                "submit the fork again to resume it."
            )
        return await self.start_fork(config)

    async def cancel_job(self, job_id: str, reason: str = "job cancelled") -> JobState:
        await self._interrupt(job_id)
        manager = self._manager(job_id)
        if manager.load_job() is None:
            raise JobNotFoundError(f"Job '{job_id}' not found.")
        manager.cancel_job(reason)
        self._configs.pop(job_id, None)
        return self.get_job(job_id)

    def cleanup_jobs(self, max_age: timedelta) -> JobCleanupResponse:
        if max_age < timedelta(0):
            raise ValueError("max_age must not be negative.")
        return JobCleanupResponse(removed=cleanup_old_jobs(self._state_dir, max_age))

    async def shutdown(self) -> None:
        """Interrupt every running fork and wait for it to pause."""

        for job_id in list(self._running):
            await self._interrupt(job_id)

    async def _interrupt(self, job_id: str) -> bool:
        running = self._running.get(job_id)
        if running is None or running.task.done():
            return False
        logger.info("Interrupting fork job %s.", job_id)
        running.cancel_event.set()
        await asyncio.gather(running.task, return_exceptions=True)
        return True

    async def _run(self, job_id: str, forker: Forker, cancel_event: asyncio.Event) -> None:
        try:
            await forker.fork(cancel_event)
        except ForkInterruptedError:
            logger.info("Fork job %s paused.", job_id)
        except ForkError as exc:
            logger.error("Fork job %s failed: %s", job_id, exc)
        except Exception:
            logger.exception("Fork job %s crashed.", job_id)
        else:
            self._configs.pop(job_id, None)
        finally:
            running = self._running.get(job_id)
            if running is not None and running.task is asyncio.current_task():
                del self._running[job_id]

    def _manager(self, job_id: str) -> ResumptionManager:
        try:
            return ResumptionManager(job_id, self._state_dir)
        except ValueError as exc:
            raise JobNotFoundError(f"Job '{job_id}' not found.") from exc


__all__ = [
    "ForkerFactory",
    "JobAccepted",
    "JobCleanupResponse",
    "JobListResponse",
    "JobService",
]
