"""Runs fork hook commands through the system shell."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence

from postgres_db_fork.domain.errors import HookError
from postgres_db_fork.domain.ports import HookRunner

logger = logging.getLogger(__name__)


class ShellHookRunner(HookRunner):
    """Execute each command with ``sh -c`` and stop at the first failure."""

    def __init__(self, env: Mapping[str, str] | None = None) -> None:
        self._env = dict(env) if env is not None else None

    async def run(self, stage: str, commands: Sequence[str]) -> None:
        for command in commands:
            logger.info("Running %s hook: %s", stage, command)
            process = await asyncio.create_subprocess_shell(command, env=self._env)
            try:
                exit_code = await process.wait()
            except asyncio.CancelledError:
                if process.returncode is None:
                    process.kill()
                    await process.wait()
                raise
            if exit_code != 0:
                raise HookError(stage, command, exit_code)


__all__ = ["ShellHookRunner"]
