"""Confirmation providers handed to the lifecycle manager."""

from __future__ import annotations

import sys
from typing import Iterable, Optional, Protocol, TextIO


class Prompter(Protocol):
    def confirm(self, prompt: str) -> bool: ...

    def ask_path(self, prompt: str) -> Optional[str]: ...


class TerminalPrompter:
    """Reads answers from a terminal; ``assume_yes`` answers every confirm."""

    def __init__(self, stdin: TextIO | None = None, stdout: TextIO | None = None,
                 assume_yes: bool = False) -> None:
        self.stdin = stdin or sys.stdin
        self.stdout = stdout or sys.stderr
        self.assume_yes = assume_yes

    def _read(self, prompt: str) -> Optional[str]:
        print(prompt, end=" ", file=self.stdout, flush=True)
        line = self.stdin.readline()
        if not line:
            return None
        return line.strip()

    def confirm(self, prompt: str) -> bool:
        if self.assume_yes:
            print(f"{prompt} (yes/no): yes", file=self.stdout, flush=True)
            return True
        while True:
            answer = self._read(f"{prompt} (yes/no):")
            if answer is None:
                return False
            if answer.lower() in ("yes", "y"):
                return True
            if answer.lower() in ("no", "n"):
                return False

    def ask_path(self, prompt: str) -> Optional[str]:
        answer = self._read(prompt)
        return answer or None


class ScriptedPrompter:
    """Replays canned answers; used for non-interactive runs and tests."""

    def __init__(self, confirms: Iterable[bool] = (), paths: Iterable[Optional[str]] = (),
                 default_confirm: bool = False) -> None:
        self.confirms = list(confirms)
        self.paths = list(paths)
        self.default_confirm = default_confirm
        self.asked: list[str] = []

    def confirm(self, prompt: str) -> bool:
        self.asked.append(prompt)
        if self.confirms:
            return self.confirms.pop(0)
        return self.default_confirm

    def ask_path(self, prompt: str) -> Optional[str]:
        self.asked.append(prompt)
        if self.paths:
            return self.paths.pop(0)
        return None
