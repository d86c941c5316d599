"""FastAPI application and command-line entrypoints."""

import asyncio
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from pydantic import ValidationError

from postgres_db_fork import __version__
from postgres_db_fork.api import api_router
from postgres_db_fork.api.dependencies import get_job_service, get_settings
from postgres_db_fork.bootstrap import build_fork_config, build_forker
from postgres_db_fork.config import Settings
from postgres_db_fork.domain.errors import ForkError, ForkInterruptedError
from postgres_db_fork.logging_config import configure_logging
from postgres_db_fork.signals import install_signal_handlers

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


def create_app() -> FastAPI:
    """Build FastAPI application."""

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        """Build the job service at startup and pause running forks at shutdown."""

        service = get_job_service()
        yield
        await service.shutdown()

    settings = get_settings()
    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        lifespan=lifespan,
    )
    app.include_router(api_router, prefix=settings.api_prefix)
    return app


app = create_app()


def run() -> None:
    """Run the job management server."""

    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    uvicorn.run(
        "postgres_db_fork.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
    )


async def _fork_once(settings: Settings) -> int:
    config = build_fork_config(settings)
    forker = build_forker(config, settings=settings)
    cancel_event = asyncio.Event()
    remove_handlers = install_signal_handlers(asyncio.get_running_loop(), cancel_event)
    try:
        await forker.fork(cancel_event)
    except ForkInterruptedError:
        logger.warning("Fork %s interrupted; run again to resume.", forker.job_id)
        return EXIT_INTERRUPTED
    except ForkError as exc:
        logger.error("Fork %s failed: %s", forker.job_id, exc)
        return EXIT_FAILURE
    finally:
        remove_handlers()
    return EXIT_OK


def run_fork() -> None:
    """Run one fork configured through ``PGFORK_*`` environment variables."""

    try:
        settings = Settings()
    except ValidationError as exc:
        configure_logging()
        logger.error("Invalid settings: %s", exc)
        sys.exit(EXIT_FAILURE)
    configure_logging(settings.log_level, settings.log_format)
    try:
        code = asyncio.run(_fork_once(settings))
    except (ForkError, ValidationError) as exc:
        logger.error("Fork failed: %s", exc)
        code = EXIT_FAILURE
    sys.exit(code)


__all__ = ["app", "create_app", "run", "run_fork"]
