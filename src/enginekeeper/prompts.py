"""Interactive questions the resolver may need to ask the user."""

from __future__ import annotations

import sys
from collections.abc import Callable, Sequence
from typing import Protocol, TextIO


class Prompter(Protocol):
    """Capability interface for user interaction.

    ``ask`` returns one of ``options`` or None when the user dismisses the
    question. ``browse`` returns a chosen file path or None on cancel.
    """

    def ask(self, question: str, options: Sequence[str]) -> str | None: ...

    def browse(self, message: str) -> str | None: ...


class ConsolePrompter:
    """Prompter that reads answers from a terminal."""

    def __init__(
        self,
        *,
        input_func: Callable[[str], str] = input,
        output: TextIO | None = None,
    ) -> None:
        self._input = input_func
        self._output = output

    def _print(self, text: str) -> None:
        print(text, file=self._output or sys.stderr)

    def _read(self, prompt: str) -> str | None:
        try:
            return self._input(prompt).strip()
        except EOFError:
            return None

    def ask(self, question: str, options: Sequence[str]) -> str | None:
        self._print(question)
        for number, option in enumerate(options, 1):
            self._print(f"  [{number}] {option}")
        answer = self._read("> ")
        if not answer:
            return None
        if answer.isdigit() and 1 <= int(answer) <= len(options):
            return options[int(answer) - 1]
        for option in options:
            if option.lower() == answer.lower():
                return option
        return None

    def browse(self, message: str) -> str | None:
        answer = self._read(f"{message}\nPath to executable (empty to cancel): ")
        return answer or None


class NonInteractivePrompter:
    """Prompter for unattended runs: every question is dismissed."""

    def ask(self, question: str, options: Sequence[str]) -> str | None:
        return None

    def browse(self, message: str) -> str | None:
        return None
