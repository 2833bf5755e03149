"""Persistent user settings: the external key/value store the resolver reads."""

from __future__ import annotations

import enum
import json
import logging
import os
import sys
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

SETTINGS_FILENAME = "settings.json"

SERVER_PATH_KEY = "server_path"
AUTO_UPDATE_KEY = "auto_update"
UPDATE_URL_KEY = "update_url"

HOME_ENV_VAR = "ENGINEKEEPER_HOME"
CACHE_DIR_ENV_VAR = "ENGINEKEEPER_CACHE_DIR"
SERVER_PATH_ENV_VAR = "ENGINEKEEPER_SERVER_PATH"
UPDATE_URL_ENV_VAR = "ENGINEKEEPER_UPDATE_URL"


class AutoUpdatePreference(enum.Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"
    UNSET = "unset"

    @classmethod
    def from_value(cls, value: Any) -> AutoUpdatePreference:
        if value is True:
            return cls.ENABLED
        if value is False:
            return cls.DISABLED
        return cls.UNSET


class SettingsStore(Protocol):
    """Minimal get/set interface over persisted configuration."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def unset(self, key: str) -> None: ...


def _app_dir(env_var: str, posix_base: Path, windows_var: str) -> Path:
    override = os.getenv(env_var, "").strip()
    if override:
        return Path(override).expanduser()
    if sys.platform == "win32":
        base = os.getenv(windows_var)
        if base:
            return Path(base) / "enginekeeper"
    return posix_base / "enginekeeper"


def settings_dir() -> Path:
    """Directory holding settings.json."""
    xdg = os.getenv("XDG_CONFIG_HOME")
    posix_base = Path(xdg) if xdg else Path.home() / ".config"
    return _app_dir(HOME_ENV_VAR, posix_base, "APPDATA")


def default_cache_dir() -> Path:
    """Directory holding downloaded engine builds."""
    xdg = os.getenv("XDG_CACHE_HOME")
    posix_base = Path(xdg) if xdg else Path.home() / ".cache"
    return _app_dir(CACHE_DIR_ENV_VAR, posix_base, "LOCALAPPDATA")


def settings_path() -> Path:
    return settings_dir() / SETTINGS_FILENAME


class JsonSettingsStore:
    """Settings kept in a JSON object on disk.

    The file is re-read on every access so edits made by other processes (or
    by hand) are picked up without a restart.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path) if path is not None else settings_path()
        self._lock = threading.Lock()

    def load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as exc:
            logger.warning("Ignoring unreadable settings file %s: %s", self.path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _save(self, values: Mapping[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(dict(values), indent=2, sort_keys=True) + "\n", encoding="utf-8")
        os.replace(tmp, self.path)

    def get(self, key: str, default: Any = None) -> Any:
        return self.load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            values = self.load()
            values[key] = value
            self._save(values)

    def unset(self, key: str) -> None:
        with self._lock:
            values = self.load()
            if key in values:
                values.pop(key)
                self._save(values)


class MemorySettingsStore:
    """In-process settings, for embedding and tests."""

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self.values: dict[str, Any] = dict(values or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.values[key] = value

    def unset(self, key: str) -> None:
        self.values.pop(key, None)


def _text_setting(settings: SettingsStore, key: str, env_var: str) -> tuple[str | None, str]:
    """Resolve a string setting with precedence: stored -> env -> unset."""
    stored = settings.get(key)
    if isinstance(stored, str) and stored.strip():
        return stored.strip(), "settings"
    env_value = os.getenv(env_var, "").strip()
    if env_value:
        return env_value, "env"
    return None, "default"


def server_path_override(settings: SettingsStore) -> str | None:
    return _text_setting(settings, SERVER_PATH_KEY, SERVER_PATH_ENV_VAR)[0]


def update_url(settings: SettingsStore) -> str | None:
    return _text_setting(settings, UPDATE_URL_KEY, UPDATE_URL_ENV_VAR)[0]


def describe_setting(settings: SettingsStore, key: str) -> tuple[Any, str]:
    """Return ``(value, source)`` for user-facing output."""
    if key == SERVER_PATH_KEY:
        return _text_setting(settings, key, SERVER_PATH_ENV_VAR)
    if key == UPDATE_URL_KEY:
        return _text_setting(settings, key, UPDATE_URL_ENV_VAR)
    value = settings.get(key)
    return value, "settings" if value is not None else "default"


def auto_update_preference(settings: SettingsStore) -> AutoUpdatePreference:
    return AutoUpdatePreference.from_value(settings.get(AUTO_UPDATE_KEY))


def set_auto_update_preference(settings: SettingsStore, preference: AutoUpdatePreference) -> None:
    if preference is AutoUpdatePreference.UNSET:
        settings.unset(AUTO_UPDATE_KEY)
    else:
        settings.set(AUTO_UPDATE_KEY, preference is AutoUpdatePreference.ENABLED)
