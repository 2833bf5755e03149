"""Global pytest fixtures for deterministic test behavior."""

import pytest

from enginekeeper.platform_key import OSFamily, PlatformKey
from enginekeeper.settings import (
    CACHE_DIR_ENV_VAR,
    HOME_ENV_VAR,
    SERVER_PATH_ENV_VAR,
    UPDATE_URL_ENV_VAR,
)


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    """Point settings and cache directories at the test's tmp_path.

    No test may read the developer's real settings or engine cache.
    """
    monkeypatch.setenv(HOME_ENV_VAR, str(tmp_path / "home"))
    monkeypatch.setenv(CACHE_DIR_ENV_VAR, str(tmp_path / "cache"))
    monkeypatch.delenv(SERVER_PATH_ENV_VAR, raising=False)
    monkeypatch.delenv(UPDATE_URL_ENV_VAR, raising=False)


@pytest.fixture
def linux_key():
    return PlatformKey(os_family=OSFamily.UNIX, system="linux", arch="x64")
