"""Atomic file replacement used for state, progress, and metrics files."""

from __future__ import annotations

import logging
import os
import tempfile
from contextlib import suppress
from pathlib import Path

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to a temp file next to ``path`` and rename it into place.

    Readers see either the previous complete file or the new one.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=TEMP_SUFFIX,
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, path)
    except BaseException:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Failed to remove temp file %s.", temp_name)
        raise


def remove_file(path: Path) -> bool:
    """Delete a file, returning whether it existed."""

    with suppress(FileNotFoundError):
        path.unlink()
        return True
    return False


__all__ = ["TEMP_SUFFIX", "atomic_write_text", "remove_file"]
