"""Serialize resolve/launch/restart cycles for one engine."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Protocol

from .context import CloseOnExitMixin
from .engine_client import EngineProcess
from .resolver import CommandResolver, Resolution, ServerCommand
from .status import LifecycleReporter

logger = logging.getLogger(__name__)


class Engine(Protocol):
    def start(self) -> bool: ...

    def stop(self) -> None: ...

    @property
    def is_running(self) -> bool: ...


EngineFactory = Callable[[ServerCommand, LifecycleReporter], Engine]


class EngineSupervisor(CloseOnExitMixin):
    """Own the running engine and make restarts mutually exclusive.

    The resolver itself keeps no lock, so concurrent restart triggers (a
    settings change racing a manual restart) are funnelled through here.
    """

    def __init__(
        self,
        resolver: CommandResolver,
        reporter: LifecycleReporter,
        *,
        engine_factory: EngineFactory = EngineProcess,
    ) -> None:
        self._resolver = resolver
        self._reporter = reporter
        self._engine_factory = engine_factory
        self._lock = threading.Lock()
        self._engine: Engine | None = None
        self._last_resolution: Resolution | None = None

    @property
    def engine(self) -> Engine | None:
        return self._engine

    @property
    def last_resolution(self) -> Resolution | None:
        return self._last_resolution

    def start(self) -> Resolution:
        with self._lock:
            if self._engine is not None and self._engine.is_running:
                assert self._last_resolution is not None
                return self._last_resolution
            return self._launch()

    def restart(self) -> Resolution:
        with self._lock:
            self._stop_engine()
            return self._launch()

    def stop(self) -> None:
        with self._lock:
            self._stop_engine()

    close = stop

    def _stop_engine(self) -> None:
        engine, self._engine = self._engine, None
        if engine is not None:
            logger.info("Stopping engine")
            engine.stop()

    def _launch(self) -> Resolution:
        resolution = self._resolver.resolve()
        self._last_resolution = resolution
        if resolution.command is None:
            logger.warning("Engine not started: %s", resolution.reason)
            return resolution

        engine = self._engine_factory(resolution.command, self._reporter)
        if engine.start():
            self._engine = engine
        else:
            logger.warning("Engine %s did not start", resolution.command.path)
        return resolution
