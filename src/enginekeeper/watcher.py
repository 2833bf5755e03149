"""
Settings file watcher.

Uses the watchdog library to notice edits to settings.json so a running
engine can be restarted with the new configuration.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver

from .context import StartCloseOnExitMixin

logger = logging.getLogger(__name__)


class DebouncedCallback:
    """
    Debounces rapid file system events.

    Editors and atomic writers often touch a file several times per save;
    only the final state triggers the callback.
    """

    def __init__(self, callback: Callable[[], None], delay: float = 0.2) -> None:
        self.callback = callback
        self.delay = delay
        self._due: float | None = None
        self._cv = threading.Condition()
        self._running = True
        self._worker = threading.Thread(target=self._run, daemon=True)
        self._worker.start()

    def __call__(self) -> None:
        with self._cv:
            if not self._running:
                return
            self._due = time.monotonic() + self.delay
            self._cv.notify()

    def _run(self) -> None:
        while True:
            with self._cv:
                if not self._running:
                    return
                if self._due is None:
                    self._cv.wait()
                    continue
                now = time.monotonic()
                if self._due > now:
                    self._cv.wait(timeout=self._due - now)
                    continue
                self._due = None

            try:
                self.callback()
            except Exception:
                logger.exception("Error in settings change callback")

    def shutdown(self) -> None:
        with self._cv:
            if not self._running:
                return
            self._running = False
            self._due = None
            self._cv.notify()
        self._worker.join(timeout=1.0)


class SettingsFileHandler(FileSystemEventHandler):
    """Forward events that touch one file, including atomic replace-by-rename."""

    def __init__(self, target: Path, on_change: Callable[[], None]) -> None:
        super().__init__()
        self._target = target
        self._on_change = on_change

    def _matches(self, path: object) -> bool:
        if not path:
            return False
        return Path(str(path)).resolve() == self._target

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        if self._matches(event.src_path) or self._matches(getattr(event, "dest_path", "")):
            logger.debug("Settings %s: %s", event.event_type, event.src_path)
            self._on_change()


class SettingsWatcher(StartCloseOnExitMixin):
    """Call ``on_change`` (debounced) whenever the settings file changes."""

    def __init__(
        self,
        settings_path: str | Path,
        on_change: Callable[[], None],
        debounce_delay: float = 0.2,
    ) -> None:
        self.settings_path = Path(settings_path).resolve()
        self._debounced = DebouncedCallback(on_change, debounce_delay)
        self._handler = SettingsFileHandler(self.settings_path, self._debounced)
        self._observer: BaseObserver | None = None

    @property
    def is_watching(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        if self._observer is not None:
            return
        directory = self.settings_path.parent
        directory.mkdir(parents=True, exist_ok=True)
        self._observer = Observer()
        self._observer.schedule(self._handler, str(directory), recursive=False)
        self._observer.start()
        logger.info("Watching settings: %s", self.settings_path)

    def stop(self) -> None:
        self._debounced.shutdown()
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._observer = None
        logger.info("Stopped watching settings: %s", self.settings_path)

    close = stop
