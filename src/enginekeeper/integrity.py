"""Content digests used to detect changed or corrupted engine binaries."""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


def file_digest(path: str | Path) -> str:
    """Return the lowercase hex MD5 of a file's contents.

    MD5 matches the ``x-md5`` header published by the update channel. It is
    used for content equality only.

    Raises:
        OSError: if the file cannot be opened or read.
    """
    digest = hashlib.md5(usedforsecurity=False)
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def try_file_digest(path: str | Path) -> str | None:
    """Like :func:`file_digest`, but log and return None when unreadable."""
    try:
        return file_digest(path)
    except OSError as exc:
        logger.warning("Could not hash %s: %s", path, exc)
        return None


def digests_match(expected: str | None, actual: str) -> bool:
    """Compare a server-supplied digest against a local one."""
    if expected is None:
        return True
    return expected.strip().lower() == actual.lower()
