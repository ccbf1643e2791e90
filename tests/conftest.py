from __future__ import annotations

import io
from pathlib import Path

import pytest


class FakeMultiplexer:
    def __init__(self, alive: set[str] | None = None, prefix: str = "ralph") -> None:
        self.alive = set(alive or ())
        self.prefix = prefix
        self.spawned: list[tuple[str, str, Path | None]] = []
        self.terminated: list[str] = []

    def is_alive(self, name: str) -> bool:
        return name in self.alive

    def spawn(self, name: str, command: str, cwd: Path | None = None) -> None:
        self.spawned.append((name, command, cwd))
        self.alive.add(name)

    def terminate(self, name: str) -> bool:
        self.terminated.append(name)
        if name not in self.alive:
            return False
        self.alive.discard(name)
        return True

    def attach_command(self, name: str) -> list[str]:
        return ["true", self.full_name(name)]

    def full_name(self, name: str) -> str:
        return f"{self.prefix}-{name}"


@pytest.fixture
def stdout() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def stderr() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def multiplexer() -> FakeMultiplexer:
    return FakeMultiplexer()


@pytest.fixture(autouse=True)
def _clean_agent_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "AGENT_PROMPT_SUFFIX",
        "AGENT_LOG_DIR",
        "AGENT_COMPLETION_MARKER",
        "AGENT_CONTINUATION_PROMPT",
        "AGENT_MAX_CONSECUTIVE_FAILURES",
        "AGENT_NON_JSON_WARN_THRESHOLD",
        "RALPH_CONFIG",
        "RALPH_LOOP_ITERATIONS",
        "RALPH_PERMISSION_MODE",
        "RALPH_MODEL",
        "RALPH_SCREEN_SHELL",
        "RALPH_TRACKING_FILE",
    ):
        monkeypatch.delenv(name, raising=False)
