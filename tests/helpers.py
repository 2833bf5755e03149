"""Shared test utilities."""

from __future__ import annotations

import os
import sys
from collections.abc import Sequence
from pathlib import Path

import pytest

from enginekeeper.update_channel import UpdateOutcome, Updated


def make_executable(path: Path, content: bytes = b"#!/bin/sh\nexit 0\n") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    path.chmod(0o755)
    return path


def skip_on_windows() -> None:
    if sys.platform == "win32" or os.name == "nt":
        pytest.skip("POSIX permission semantics required")


class ScriptedPrompter:
    """Prompter that replays canned answers and records every question."""

    def __init__(self, answers: Sequence[str | None] = (), paths: Sequence[str | None] = ()) -> None:
        self._answers = list(answers)
        self._paths = list(paths)
        self.questions: list[tuple[str, tuple[str, ...]]] = []
        self.browses: list[str] = []

    def ask(self, question: str, options: Sequence[str]) -> str | None:
        self.questions.append((question, tuple(options)))
        if not self._answers:
            return None
        return self._answers.pop(0)

    def browse(self, message: str) -> str | None:
        self.browses.append(message)
        if not self._paths:
            return None
        return self._paths.pop(0)


class FakeChannel:
    """Stand-in for UpdateChannelClient returning queued outcomes."""

    def __init__(self, *outcomes: UpdateOutcome, payload: bytes = b"#!/bin/sh\nexit 0\n") -> None:
        self._outcomes = list(outcomes)
        self.payload = payload
        self.calls: list[dict[str, object]] = []

    def check_and_fetch(self, platform_key, version, current_hash, dest_path):
        self.calls.append(
            {
                "platform_key": platform_key,
                "version": version,
                "current_hash": current_hash,
                "dest_path": Path(dest_path),
            }
        )
        outcome = self._outcomes.pop(0)
        if isinstance(outcome, Updated):
            make_executable(Path(dest_path), self.payload)
            outcome = Updated(path=Path(dest_path), digest=outcome.digest)
        return outcome

    def close(self) -> None:
        pass
