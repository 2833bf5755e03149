"""Project engine status notifications into status text and lifecycle state."""

from __future__ import annotations

import enum
import logging
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

logger = logging.getLogger(__name__)

DEFAULT_LABEL = "DreamMaker"
UPDATE_SUFFIX = " (update available, restart to apply)"
# Task name the engine reports when the workspace has no project file.
NO_PROJECT_TASK = "no .dme file"


class EngineState(enum.Enum):
    IDLE = "idle"
    BUSY = "busy"
    DEGRADED = "degraded"


class UpdateFlagSource(Protocol):
    @property
    def update_available(self) -> bool: ...

    def add_update_listener(self, callback: Callable[[], None]) -> Callable[[], None]: ...


@dataclass(frozen=True)
class EngineStatus:
    """Last status snapshot reported by the engine."""

    environment_label: str | None = None
    active_tasks: tuple[str, ...] = ()

    @classmethod
    def from_params(cls, params: Mapping[str, Any] | None) -> EngineStatus:
        params = params or {}
        environment = params.get("environment")
        tasks = params.get("tasks") or ()
        return cls(
            environment_label=environment if isinstance(environment, str) else None,
            active_tasks=tuple(str(task) for task in tasks if task is not None),
        )


@dataclass(frozen=True)
class StatusView:
    text: str
    detail: str | None
    state: EngineState
    missing_project: bool = False


def project_status(
    status: EngineStatus,
    *,
    default_label: str = DEFAULT_LABEL,
    update_available: bool = False,
) -> StatusView:
    """Render one snapshot. Nothing carries over from earlier snapshots."""
    label = status.environment_label or default_label
    tasks = status.active_tasks
    detail = None

    if not tasks:
        text = label
    elif len(tasks) == 1:
        text = f"{label}: {tasks[0]}"
    else:
        text = f"{label}: {len(tasks)} tasks..."
        detail = "\n".join(tasks)

    if update_available:
        text += UPDATE_SUFFIX

    missing_project = NO_PROJECT_TASK in tasks
    if missing_project:
        state = EngineState.DEGRADED
    elif tasks:
        state = EngineState.BUSY
    else:
        state = EngineState.IDLE
    return StatusView(text=text, detail=detail, state=state, missing_project=missing_project)


class LifecycleReporter:
    """Consume engine status events and notify observers of the derived view."""

    def __init__(
        self,
        session: UpdateFlagSource | None = None,
        *,
        default_label: str = DEFAULT_LABEL,
    ) -> None:
        self._session = session
        self._default_label = default_label
        self._lock = threading.Lock()
        self._status = EngineStatus()
        self._view = project_status(self._status, default_label=default_label)
        self._object_tree: list[Any] = []
        self._observers: list[Callable[[StatusView], None]] = []
        self._tree_observers: list[Callable[[Sequence[Any]], None]] = []
        self._missing_project_seen = False
        self._exited = False
        if session is not None:
            session.add_update_listener(self.refresh)

    @property
    def status(self) -> EngineStatus:
        with self._lock:
            return self._status

    @property
    def view(self) -> StatusView:
        with self._lock:
            return self._view

    @property
    def state(self) -> EngineState:
        return self.view.state

    @property
    def object_tree(self) -> list[Any]:
        with self._lock:
            return list(self._object_tree)

    @property
    def missing_project_seen(self) -> bool:
        """True once any event carried the no-project-file sentinel."""
        with self._lock:
            return self._missing_project_seen

    def _update_available(self) -> bool:
        return bool(self._session is not None and self._session.update_available)

    def subscribe(self, callback: Callable[[StatusView], None]) -> Callable[[], None]:
        with self._lock:
            self._observers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._observers:
                    self._observers.remove(callback)

        return unsubscribe

    def subscribe_tree(self, callback: Callable[[Sequence[Any]], None]) -> Callable[[], None]:
        with self._lock:
            self._tree_observers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._tree_observers:
                    self._tree_observers.remove(callback)

        return unsubscribe

    def handle_status(self, params: Mapping[str, Any] | None) -> StatusView:
        """Apply a ``$window/status`` notification."""
        status = EngineStatus.from_params(params)
        view = project_status(
            status,
            default_label=self._default_label,
            update_available=self._update_available(),
        )
        with self._lock:
            self._status = status
            self._view = view
            self._exited = False
            if view.missing_project:
                self._missing_project_seen = True
            observers = list(self._observers)
        self._dispatch(observers, view)
        return view

    def handle_object_tree(self, params: Mapping[str, Any] | None) -> list[Any]:
        roots = (params or {}).get("roots") or []
        roots = list(roots) if isinstance(roots, list) else []
        with self._lock:
            self._object_tree = roots
            observers = list(self._tree_observers)
        self._dispatch(observers, roots)
        return roots

    def mark_exited(self, returncode: int | None) -> StatusView:
        code = "unknown" if returncode is None else str(returncode)
        with self._lock:
            label = self._status.environment_label or self._default_label
            view = StatusView(
                text=f"{label}: engine exited ({code})",
                detail=None,
                state=EngineState.DEGRADED,
            )
            self._status = EngineStatus(environment_label=self._status.environment_label)
            self._view = view
            self._exited = True
            observers = list(self._observers)
        self._dispatch(observers, view)
        return view

    def refresh(self) -> StatusView:
        """Re-render the last status, e.g. after an update was staged."""
        update_available = self._update_available()
        with self._lock:
            if self._exited:
                return self._view
            view = project_status(
                self._status,
                default_label=self._default_label,
                update_available=update_available,
            )
            if view == self._view:
                return view
            self._view = view
            observers = list(self._observers)
        self._dispatch(observers, view)
        return view

    def _dispatch(self, observers: Sequence[Callable[[Any], None]], payload: Any) -> None:
        for observer in observers:
            try:
                observer(payload)
            except Exception:
                logger.exception("Status observer %r failed", observer)
