"""Turns SIGINT/SIGTERM into a fork cancellation token."""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Callable

logger = logging.getLogger(__name__)

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    cancel_event: asyncio.Event,
) -> Callable[[], None]:
    """Set ``cancel_event`` on SIGINT/SIGTERM; returns a function removing the handlers."""

    installed: list[signal.Signals] = []

    def _on_signal(signum: signal.Signals) -> None:
        logger.warning("Received %s, stopping fork after the current step.", signum.name)
        cancel_event.set()

    for signum in HANDLED_SIGNALS:
        try:
            loop.add_signal_handler(signum, _on_signal, signum)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler for %s is not supported here.", signum.name)
            continue
        installed.append(signum)

    def remove() -> None:
        for signum in installed:
            loop.remove_signal_handler(signum)

    return remove


__all__ = ["install_signal_handlers"]
