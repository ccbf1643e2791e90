"""Agent binary invocation: argv construction and process execution."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Protocol

from .process import ExecResult, agent_env, stream_process

if TYPE_CHECKING:
    from .runner import LoopConfig


@dataclass(frozen=True)
class Invocation:
    """One agent run. At most one of the session fields is set."""

    prompt: str
    new_session_id: str | None = None
    resume_session_id: str | None = None


class Backend(Protocol):
    name: str

    def build_argv(self, invocation: Invocation, cfg: "LoopConfig") -> list[str]:
        ...

    def run(
        self,
        invocation: Invocation,
        cfg: "LoopConfig",
        *,
        on_line: Callable[[str], None] | None = None,
        on_stderr: Callable[[bytes], None] | None = None,
    ) -> ExecResult:
        ...


@dataclass
class ClaudeBackend:
    name: str = "claude"
    binary: str = "claude"
    cwd: Path | None = None

    def build_argv(self, invocation: Invocation, cfg: "LoopConfig") -> list[str]:
        argv = [self.binary]
        if invocation.resume_session_id:
            argv += ["--resume", invocation.resume_session_id]
        argv += [
            "-p",
            invocation.prompt,
            "--verbose",
            "--output-format",
            "stream-json",
            "--permission-mode",
            cfg.permission_mode,
        ]
        if cfg.model:
            argv += ["--model", cfg.model]
        if cfg.budget:
            argv += ["--max-budget-usd", cfg.budget]
        if invocation.new_session_id:
            argv += ["--session-id", invocation.new_session_id]
        return argv

    def run(
        self,
        invocation: Invocation,
        cfg: "LoopConfig",
        *,
        on_line: Callable[[str], None] | None = None,
        on_stderr: Callable[[bytes], None] | None = None,
    ) -> ExecResult:
        return stream_process(
            self.build_argv(invocation, cfg),
            cwd=self.cwd,
            env=agent_env(),
            on_line=on_line,
            on_stderr=on_stderr,
        )
