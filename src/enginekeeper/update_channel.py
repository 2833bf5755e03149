"""Client for the remote update channel that publishes engine builds."""

from __future__ import annotations

import contextlib
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from . import __version__
from .integrity import digests_match, file_digest
from .platform_key import PlatformKey

logger = logging.getLogger(__name__)

DIGEST_HEADER = "x-md5"
PARTIAL_SUFFIX = ".part"
_UNMODIFIED_STATUSES = frozenset({204, 304})


@dataclass(frozen=True)
class Updated:
    path: Path
    digest: str

    def describe(self) -> str:
        return f"downloaded new build to {self.path}"


@dataclass(frozen=True)
class Unmodified:
    def describe(self) -> str:
        return "cached build is current"


@dataclass(frozen=True)
class Unavailable:
    reason: str

    def describe(self) -> str:
        return self.reason


@dataclass(frozen=True)
class NetworkError:
    detail: str

    def describe(self) -> str:
        return self.detail


@dataclass(frozen=True)
class ChannelRemoved:
    detail: str

    disables_auto_update = True

    def describe(self) -> str:
        return f"update channel retired: {self.detail}"


UpdateOutcome = Updated | Unmodified | Unavailable | NetworkError | ChannelRemoved


def _remove_quietly(path: Path) -> None:
    with contextlib.suppress(FileNotFoundError):
        path.unlink()


def partial_path_for(dest: Path) -> Path:
    """In-progress download location, next to ``dest`` on the same filesystem."""
    return dest.with_name(dest.name + PARTIAL_SUFFIX)


class UpdateChannelClient:
    """Single-shot queries against the update channel.

    A failed query is never retried here. The next resolution (normally the
    next process start) asks again.
    """

    def __init__(
        self,
        base_url: str | None,
        *,
        client: httpx.Client | None = None,
        timeout: float | None = None,
    ) -> None:
        self._base_url = (base_url or "").strip() or None
        self._owns_client = client is None
        if client is None:
            client_kwargs: dict[str, Any] = {
                "headers": {"User-Agent": f"enginekeeper/{__version__}"},
                "follow_redirects": True,
            }
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            client = httpx.Client(**client_kwargs)
        self._client = client

    @property
    def base_url(self) -> str | None:
        return self._base_url

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> UpdateChannelClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def build_params(
        self, platform_key: PlatformKey, version: str, current_hash: str | None
    ) -> dict[str, str]:
        params = {
            "platform": platform_key.system,
            "arch": platform_key.arch,
            "client_version": version,
        }
        if current_hash:
            params["hash"] = current_hash
        return params

    def check_and_fetch(
        self,
        platform_key: PlatformKey,
        version: str,
        current_hash: str | None,
        dest_path: str | Path,
    ) -> UpdateOutcome:
        """Ask the channel for a newer build and stream it to ``dest_path``.

        Omitting ``current_hash`` means nothing is cached yet, so any
        published build is downloaded.
        """
        if self._base_url is None:
            return Unavailable("no update channel configured")

        dest = Path(dest_path)
        params = self.build_params(platform_key, version, current_hash)
        logger.debug("Querying update channel %s with %s", self._base_url, params)

        try:
            with self._client.stream("GET", self._base_url, params=params) as response:
                status = response.status_code
                if status == 200:
                    return self._receive(response, dest)
                if status in _UNMODIFIED_STATUSES:
                    return Unmodified()
                if status == 404:
                    return Unavailable("no build for this platform/arch")
                if status == 410:
                    response.read()
                    detail = response.text.strip() or response.reason_phrase
                    return ChannelRemoved(detail)
                return NetworkError(f"{status} {response.reason_phrase}".strip())
        except (httpx.HTTPError, httpx.InvalidURL, httpx.StreamError) as exc:
            logger.info("Update check failed: %s", exc)
            return NetworkError(str(exc) or type(exc).__name__)

    def _receive(self, response: httpx.Response, dest: Path) -> UpdateOutcome:
        expected = response.headers.get(DIGEST_HEADER)
        partial = partial_path_for(dest)
        written = 0
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            # Private and non-executable until verified, so promote() never sees it.
            fd = os.open(partial, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "wb") as handle:
                for chunk in response.iter_bytes():
                    handle.write(chunk)
                    written += len(chunk)
        except OSError as exc:
            _remove_quietly(partial)
            return NetworkError(f"failed to write {dest}: {exc}")
        except BaseException:
            _remove_quietly(partial)
            raise

        if written == 0:
            _remove_quietly(partial)
            return NetworkError("update channel returned an empty body")

        try:
            actual = file_digest(partial)
        except OSError as exc:
            _remove_quietly(partial)
            return NetworkError(f"failed to verify {dest}: {exc}")
        if not digests_match(expected, actual):
            _remove_quietly(partial)
            logger.warning(
                "Discarding download for %s: digest %s does not match %s", dest, actual, expected
            )
            return NetworkError(f"digest mismatch (expected {expected}, got {actual})")

        try:
            os.chmod(partial, 0o755)
            os.replace(partial, dest)
        except OSError as exc:
            _remove_quietly(partial)
            return NetworkError(f"failed to stage {dest}: {exc}")

        logger.info("Downloaded %d bytes to %s", written, dest)
        return Updated(path=dest, digest=actual)
