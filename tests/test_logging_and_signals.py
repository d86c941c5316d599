from __future__ import annotations

import asyncio
import json
import logging
import os
import signal

from postgres_db_fork.logging_config import JsonLogFormatter, configure_logging
from postgres_db_fork.signals import install_signal_handlers


def test_json_formatter_includes_known_extras() -> None:
    record = logging.LogRecord(
        name="postgres_db_fork.fork",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Table %s done",
        args=("users",),
        exc_info=None,
    )
    record.job_id = "fork-abc"
    record.table = "users"

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["message"] == "Table users done"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "postgres_db_fork.fork"
    assert payload["job_id"] == "fork-abc"
    assert payload["table"] == "users"
    assert "phase" not in payload


def test_configure_logging_sets_root_level() -> None:
    root = logging.getLogger()
    previous_level = root.level
    previous_handlers = list(root.handlers)
    try:
        configure_logging("debug", "json")
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, JsonLogFormatter)
    finally:
        root.handlers[:] = previous_handlers
        root.setLevel(previous_level)


def test_sigterm_sets_cancel_event() -> None:
    async def scenario() -> bool:
        loop = asyncio.get_running_loop()
        cancel_event = asyncio.Event()
        remove = install_signal_handlers(loop, cancel_event)
        try:
            loop.call_soon(os.kill, os.getpid(), signal.SIGTERM)
            await asyncio.wait_for(cancel_event.wait(), timeout=2)
        finally:
            remove()
        return cancel_event.is_set()

    assert asyncio.run(scenario()) is True
