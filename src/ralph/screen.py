"""GNU screen wrapper used to detach loop sessions from the terminal."""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol

_SESSION_RE = re.compile(r"\t(\d+)\.(\S+)\t\((.+?)\)")


class ScreenError(RuntimeError):
    pass


class Multiplexer(Protocol):
    def is_alive(self, name: str) -> bool:
        ...

    def spawn(self, name: str, command: str, cwd: Path | None = None) -> None:
        ...

    def terminate(self, name: str) -> bool:
        ...

    def attach_command(self, name: str) -> list[str]:
        ...

    def full_name(self, name: str) -> str:
        ...


@dataclass(frozen=True)
class ScreenSession:
    name: str
    pid: int
    date: str


Runner = Callable[..., subprocess.CompletedProcess]


@dataclass
class ScreenManager:
    prefix: str = "ralph"
    shell: str = "zsh"
    timeout: float = 10
    run: Runner = subprocess.run

    def _exec(self, argv: list[str], *, cwd: Path | None = None) -> subprocess.CompletedProcess:
        return self.run(
            argv,
            cwd=str(cwd) if cwd else None,
            text=True,
            capture_output=True,
            check=False,
            timeout=self.timeout,
        )

    def full_name(self, name: str) -> str:
        return f"{self.prefix}-{name}"

    def list_sessions(self) -> list[ScreenSession]:
        # `screen -ls` exits 1 when sessions exist; parse stdout regardless.
        try:
            proc = self._exec(["screen", "-ls"])
        except (OSError, subprocess.TimeoutExpired):
            return []
        sessions: list[ScreenSession] = []
        for pid, name, date in _SESSION_RE.findall(proc.stdout or ""):
            if not name.startswith(f"{self.prefix}-"):
                continue
            sessions.append(ScreenSession(name=name, pid=int(pid), date=date))
        return sessions

    def is_alive(self, name: str) -> bool:
        full = self.full_name(name)
        return any(s.name == full for s in self.list_sessions())

    def spawn(self, name: str, command: str, cwd: Path | None = None) -> None:
        full = self.full_name(name)
        if self.is_alive(name):
            raise ScreenError(f"Screen session '{full}' is already running.")
        proc = self._exec(
            ["screen", "-dmS", full, "-s", self.shell, "bash", "-c", command],
            cwd=cwd,
        )
        if proc.returncode != 0:
            raise ScreenError(f"Failed to start screen session: {proc.stderr.strip()}")

    def terminate(self, name: str) -> bool:
        if not self.is_alive(name):
            return False
        proc = self._exec(["screen", "-S", self.full_name(name), "-X", "quit"])
        return proc.returncode == 0

    def attach_command(self, name: str) -> list[str]:
        return ["screen", "-r", self.full_name(name)]
