"""Tests for the persisted settings store."""

from __future__ import annotations

import json

import pytest

from enginekeeper.settings import (
    AUTO_UPDATE_KEY,
    HOME_ENV_VAR,
    SERVER_PATH_ENV_VAR,
    SERVER_PATH_KEY,
    UPDATE_URL_ENV_VAR,
    AutoUpdatePreference,
    JsonSettingsStore,
    MemorySettingsStore,
    auto_update_preference,
    default_cache_dir,
    describe_setting,
    server_path_override,
    set_auto_update_preference,
    settings_path,
    update_url,
)


def test_settings_path_follows_home_env(monkeypatch, tmp_path):
    monkeypatch.setenv(HOME_ENV_VAR, str(tmp_path / "cfg"))

    assert settings_path() == tmp_path / "cfg" / "settings.json"


def test_cache_dir_follows_env(tmp_path):
    assert default_cache_dir() == tmp_path / "cache"


def test_json_store_round_trip(tmp_path):
    store = JsonSettingsStore(tmp_path / "s" / "settings.json")

    store.set(SERVER_PATH_KEY, "/opt/engine")
    store.set(AUTO_UPDATE_KEY, False)

    reloaded = JsonSettingsStore(store.path)
    assert reloaded.get(SERVER_PATH_KEY) == "/opt/engine"
    assert reloaded.get(AUTO_UPDATE_KEY) is False
    assert json.loads(store.path.read_text()) == {
        AUTO_UPDATE_KEY: False,
        SERVER_PATH_KEY: "/opt/engine",
    }


def test_json_store_unset(tmp_path):
    store = JsonSettingsStore(tmp_path / "settings.json")
    store.set(SERVER_PATH_KEY, "/opt/engine")

    store.unset(SERVER_PATH_KEY)
    store.unset("never-set")

    assert store.get(SERVER_PATH_KEY) is None


@pytest.mark.parametrize("content", ["not json", "[1, 2]", ""])
def test_json_store_ignores_bad_files(tmp_path, content):
    path = tmp_path / "settings.json"
    path.write_text(content)

    assert JsonSettingsStore(path).load() == {}


def test_json_store_sees_external_edits(tmp_path):
    store = JsonSettingsStore(tmp_path / "settings.json")
    store.set(SERVER_PATH_KEY, "/a")

    store.path.write_text(json.dumps({SERVER_PATH_KEY: "/b"}))

    assert store.get(SERVER_PATH_KEY) == "/b"


@pytest.mark.parametrize(
    ("stored", "expected"),
    [
        (True, AutoUpdatePreference.ENABLED),
        (False, AutoUpdatePreference.DISABLED),
        (None, AutoUpdatePreference.UNSET),
        ("yes", AutoUpdatePreference.UNSET),
    ],
)
def test_auto_update_preference(stored, expected):
    settings = MemorySettingsStore({} if stored is None else {AUTO_UPDATE_KEY: stored})

    assert auto_update_preference(settings) is expected


def test_set_auto_update_preference_unset_removes_key():
    settings = MemorySettingsStore({AUTO_UPDATE_KEY: True})

    set_auto_update_preference(settings, AutoUpdatePreference.UNSET)

    assert AUTO_UPDATE_KEY not in settings.values


@pytest.mark.parametrize(
    ("stored", "env", "expected", "source"),
    [
        ("/stored", "/env", "/stored", "settings"),
        (None, "/env", "/env", "env"),
        ("   ", "/env", "/env", "env"),
        (None, None, None, "default"),
    ],
)
def test_server_path_precedence(monkeypatch, stored, env, expected, source):
    settings = MemorySettingsStore({} if stored is None else {SERVER_PATH_KEY: stored})
    if env is not None:
        monkeypatch.setenv(SERVER_PATH_ENV_VAR, env)

    assert server_path_override(settings) == expected
    assert describe_setting(settings, SERVER_PATH_KEY) == (expected, source)


def test_update_url_from_env(monkeypatch):
    monkeypatch.setenv(UPDATE_URL_ENV_VAR, "https://updates.example.test/engine")

    assert update_url(MemorySettingsStore()) == "https://updates.example.test/engine"
