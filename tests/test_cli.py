"""Tests for the CLI module."""

from __future__ import annotations

import hashlib
import json
from unittest.mock import patch

import httpx
import pytest

from enginekeeper import cli
from enginekeeper.platform_key import detect_platform_key
from enginekeeper.settings import (
    AUTO_UPDATE_KEY,
    SERVER_PATH_KEY,
    UPDATE_URL_KEY,
    JsonSettingsStore,
    settings_path,
)
from enginekeeper.update_channel import UpdateChannelClient
from tests.helpers import make_executable

BUILD = b"\x7fELF cli build"


def _run_cli(argv: list[str]) -> None:
    cli.main(argv)


def _mock_channel(handler):
    def _factory(url):
        return UpdateChannelClient(url, client=httpx.Client(transport=httpx.MockTransport(handler)))

    return patch("enginekeeper.resolver.UpdateChannelClient", side_effect=_factory)


@pytest.fixture
def settings():
    return JsonSettingsStore(settings_path())


@pytest.fixture
def cached_primary(tmp_path):
    return tmp_path / "cache" / detect_platform_key().binary_name("dm-langserver")


class TestResolveCommand:
    def test_resolve_prints_override(self, tmp_path, settings, capsys):
        engine = make_executable(tmp_path / "engine")
        settings.set(SERVER_PATH_KEY, str(engine))

        _run_cli(["--non-interactive", "resolve"])

        assert capsys.readouterr().out.strip() == str(engine)

    def test_resolve_json_failure_exits_nonzero(self, settings, capsys):
        settings.set(AUTO_UPDATE_KEY, False)

        with pytest.raises(SystemExit) as excinfo:
            _run_cli(["--non-interactive", "resolve", "--json"])

        assert excinfo.value.code == 1
        payload = json.loads(capsys.readouterr().out)
        assert payload["ok"] is False
        assert payload["state"] == "failed"
        assert "auto-update disabled" in payload["reason"]

    def test_resolve_cold_cache_downloads(self, settings, cached_primary, capsys):
        settings.set(AUTO_UPDATE_KEY, True)
        settings.set(UPDATE_URL_KEY, "https://updates.example.test/engine")
        digest = hashlib.md5(BUILD).hexdigest()

        with _mock_channel(
            lambda request: httpx.Response(200, content=BUILD, headers={"x-md5": digest})
        ):
            _run_cli(["--non-interactive", "resolve", "--json"])

        payload = json.loads(capsys.readouterr().out)
        assert payload["command"] == [str(cached_primary)]
        assert payload["state"] == "auto_detect_cold"
        assert cached_primary.read_bytes() == BUILD


class TestDoctorCommand:
    def test_doctor_json(self, settings, cached_primary, capsys):
        make_executable(cached_primary, BUILD)
        settings.set(AUTO_UPDATE_KEY, True)

        _run_cli(["doctor", "--json"])

        payload = json.loads(capsys.readouterr().out)
        assert payload["cached_path"] == str(cached_primary)
        assert payload["cached_executable"] is True
        assert payload["cached_digest"] == hashlib.md5(BUILD).hexdigest()
        assert payload["auto_update"] == "enabled"
        assert payload["update_pending"] is False

    def test_doctor_text_reports_missing_build(self, capsys):
        _run_cli(["doctor"])

        out = capsys.readouterr().out
        assert "[MISSING] cached build" in out
        assert "update channel: <not configured>" in out


class TestUpdateCommand:
    def test_update_reports_current(self, settings, cached_primary, capsys):
        make_executable(cached_primary, BUILD)
        settings.set(UPDATE_URL_KEY, "https://updates.example.test/engine")
        seen = []

        def _handler(request):
            seen.append(request)
            return httpx.Response(304)

        with _mock_channel(_handler):
            _run_cli(["update", "--json"])

        assert json.loads(capsys.readouterr().out)["result"] == "current"
        assert seen[0].url.params["hash"] == hashlib.md5(BUILD).hexdigest()

    def test_update_channel_removed_disables_auto_update(self, settings, capsys):
        settings.set(AUTO_UPDATE_KEY, True)
        settings.set(UPDATE_URL_KEY, "https://updates.example.test/engine")

        with (
            _mock_channel(lambda request: httpx.Response(410, text="retired")),
            pytest.raises(SystemExit),
        ):
            _run_cli(["update"])

        assert "[FAILED]" in capsys.readouterr().out
        assert settings.get(AUTO_UPDATE_KEY) is False

    def test_update_skipped_with_override(self, tmp_path, settings, capsys):
        settings.set(SERVER_PATH_KEY, str(make_executable(tmp_path / "engine")))

        _run_cli(["update", "--json"])

        assert json.loads(capsys.readouterr().out)["result"] == "skipped"


class TestConfigCommand:
    def test_set_and_unset_path(self, settings, capsys):
        _run_cli(["config", "set-path", "/opt/engine"])
        assert settings.get(SERVER_PATH_KEY) == "/opt/engine"

        _run_cli(["config", "unset-path"])
        assert settings.get(SERVER_PATH_KEY) is None

    @pytest.mark.parametrize(("value", "stored"), [("on", True), ("off", False), ("unset", None)])
    def test_auto_update(self, settings, value, stored):
        _run_cli(["config", "auto-update", value])

        assert settings.get(AUTO_UPDATE_KEY) is stored

    def test_show_lists_sources(self, settings, capsys):
        settings.set(UPDATE_URL_KEY, "https://updates.example.test/engine")

        _run_cli(["config", "show"])

        out = capsys.readouterr().out
        payload = json.loads(out.split("\n", 1)[1])
        assert payload[UPDATE_URL_KEY] == {
            "value": "https://updates.example.test/engine",
            "source": "settings",
        }


def test_no_command_prints_help(capsys):
    _run_cli([])

    assert "usage" in capsys.readouterr().out.lower()
