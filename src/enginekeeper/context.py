"""Context-manager mixins for objects with an explicit lifetime."""

from __future__ import annotations

from typing import Any


class CloseOnExitMixin:
    """``with obj:`` calls ``obj.close()`` on exit."""

    def close(self) -> None:
        raise NotImplementedError

    def __enter__(self) -> Any:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class StartCloseOnExitMixin(CloseOnExitMixin):
    """``with obj:`` calls ``obj.start()`` on entry and ``obj.close()`` on exit."""

    def start(self) -> Any:
        raise NotImplementedError

    def __enter__(self) -> Any:
        self.start()
        return self
