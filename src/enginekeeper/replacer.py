"""Rename-based promotion of a staged engine binary onto the active path."""

from __future__ import annotations

import logging
import os
import stat
import sys
import time
from collections.abc import Callable
from pathlib import Path

logger = logging.getLogger(__name__)

STAGED_SUFFIX = ".update"
DEFAULT_ATTEMPTS = 8
DEFAULT_DELAY = 0.25


class ReplaceFailed(OSError):
    """The staged file could not be renamed onto the primary path."""


def staged_path_for(primary: str | Path) -> Path:
    """Path of the pending replacement for ``primary``."""
    return Path(f"{primary}{STAGED_SUFFIX}")


def is_executable(path: str | Path) -> bool:
    """Check that ``path`` is a regular file this process may execute."""
    try:
        mode = os.stat(path).st_mode
    except OSError:
        return False
    if not stat.S_ISREG(mode):
        return False
    if sys.platform == "win32":
        return True
    return os.access(path, os.R_OK | os.X_OK)


def promote(
    staged: str | Path,
    primary: str | Path,
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    delay: float = DEFAULT_DELAY,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Move ``staged`` onto ``primary`` if a valid staged file exists.

    Renames fail while a previous engine instance still holds ``primary``
    open on platforms with mandatory locking, so each failure is retried after
    ``delay`` seconds. After ``attempts`` failures one final attempt runs
    unguarded and its error surfaces as :class:`ReplaceFailed`.

    Returns:
        True if a promotion happened, False if there was nothing to promote.
    """
    if not is_executable(staged):
        return False

    for attempt in range(1, attempts + 1):
        try:
            os.replace(staged, primary)
        except OSError as exc:
            logger.debug(
                "Promotion attempt %d/%d of %s failed: %s", attempt, attempts, staged, exc
            )
            sleep(delay)
            continue
        logger.info("Promoted %s -> %s", staged, primary)
        return True

    try:
        os.replace(staged, primary)
    except OSError as exc:
        logger.warning("Giving up promoting %s after %d retries: %s", staged, attempts, exc)
        raise ReplaceFailed(f"could not replace {primary}: {exc}") from exc
    logger.info("Promoted %s -> %s", staged, primary)
    return True
