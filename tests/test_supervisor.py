"""Tests for serialized engine restarts."""

from __future__ import annotations

import threading
import time

from enginekeeper.resolver import CommandResolver, ResolverSession, ServerCommand
from enginekeeper.settings import AUTO_UPDATE_KEY, SERVER_PATH_KEY, MemorySettingsStore
from enginekeeper.status import LifecycleReporter
from enginekeeper.supervisor import EngineSupervisor
from tests.helpers import FakeChannel, ScriptedPrompter, make_executable


class _FakeEngine:
    live = 0
    max_live = 0
    lock = threading.Lock()

    def __init__(self, command: ServerCommand, reporter: LifecycleReporter) -> None:
        self.command = command
        self.running = False

    def start(self) -> bool:
        with _FakeEngine.lock:
            _FakeEngine.live += 1
            _FakeEngine.max_live = max(_FakeEngine.max_live, _FakeEngine.live)
        time.sleep(0.01)
        self.running = True
        return True

    def stop(self) -> None:
        with _FakeEngine.lock:
            _FakeEngine.live -= 1
        self.running = False

    @property
    def is_running(self) -> bool:
        return self.running


def _supervisor(tmp_path, settings):
    resolver = CommandResolver(
        settings,
        ScriptedPrompter(),
        session=ResolverSession(),
        channel=FakeChannel(),
        cache_dir=tmp_path / "cache",
    )
    return EngineSupervisor(resolver, LifecycleReporter(), engine_factory=_FakeEngine)


def test_start_launches_resolved_command(tmp_path):
    engine_path = make_executable(tmp_path / "engine")
    supervisor = _supervisor(tmp_path, MemorySettingsStore({SERVER_PATH_KEY: str(engine_path)}))

    resolution = supervisor.start()

    assert resolution.command == ServerCommand(str(engine_path))
    assert supervisor.engine is not None
    assert supervisor.engine.is_running
    supervisor.stop()
    assert supervisor.engine is None


def test_start_twice_reuses_running_engine(tmp_path):
    engine_path = make_executable(tmp_path / "engine")
    supervisor = _supervisor(tmp_path, MemorySettingsStore({SERVER_PATH_KEY: str(engine_path)}))

    supervisor.start()
    first = supervisor.engine
    supervisor.start()

    assert supervisor.engine is first
    supervisor.stop()


def test_failed_resolution_starts_nothing(tmp_path):
    supervisor = _supervisor(tmp_path, MemorySettingsStore({AUTO_UPDATE_KEY: False}))

    resolution = supervisor.start()

    assert resolution.command is None
    assert supervisor.engine is None


def test_concurrent_restarts_never_overlap(tmp_path):
    engine_path = make_executable(tmp_path / "engine")
    supervisor = _supervisor(tmp_path, MemorySettingsStore({SERVER_PATH_KEY: str(engine_path)}))
    _FakeEngine.live = 0
    _FakeEngine.max_live = 0

    threads = [threading.Thread(target=supervisor.restart) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5)
    supervisor.stop()

    assert _FakeEngine.max_live == 1
    assert _FakeEngine.live == 0
