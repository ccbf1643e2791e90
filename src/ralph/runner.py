"""Iteration loop driver.

Runs the agent once per iteration until the completion marker shows up in an
iteration's extracted text, the consecutive-failure threshold is reached, or
the iteration budget runs out.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO

from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from .backend import Backend, ClaudeBackend, Invocation
from .events import AgentEvent, Unparseable, accumulate_text, parse_line
from .format_stream import StreamFormatter
from .runlog import RunLog
from .util import env_int, env_str

DEFAULT_COMPLETION_MARKER = "<promise>COMPLETE</promise>"
DEFAULT_CONTINUATION_PROMPT = "Continue working on the task."
DEFAULT_LOG_DIR = Path("storage") / "ralph-logs"
DEFAULT_MAX_CONSECUTIVE_FAILURES = 3
DEFAULT_NON_JSON_WARN_THRESHOLD = 50


class TerminationReason(str, Enum):
    COMPLETED = "completion_marker_detected"
    CONSECUTIVE_FAILURES = "consecutive_failures_exceeded"
    CONSECUTIVE_EXCEPTIONS = "consecutive_exceptions_exceeded"
    MAX_ITERATIONS = "max_iterations_reached"
    FATAL_ERROR = "fatal_error"

    @property
    def exit_code(self) -> int:
        if self is TerminationReason.COMPLETED:
            return 0
        if self is TerminationReason.MAX_ITERATIONS:
            return 2
        return 1


@dataclass(frozen=True)
class LoopConfig:
    name: str
    prompt: str
    continuation_prompt: str = DEFAULT_CONTINUATION_PROMPT
    max_iterations: int = 30
    permission_mode: str = "acceptEdits"
    model: str | None = None
    budget: str | None = None
    fresh: bool = False
    session_id: str | None = None
    completion_marker: str = DEFAULT_COMPLETION_MARKER
    max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES
    non_json_warn_threshold: int = DEFAULT_NON_JSON_WARN_THRESHOLD
    log_dir: Path = DEFAULT_LOG_DIR
    log_path: Path | None = None

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be a positive integer")
        if self.max_consecutive_failures < 1:
            raise ValueError("max_consecutive_failures must be a positive integer")
        if not self.completion_marker:
            raise ValueError("completion_marker cannot be empty")

    @property
    def resume_mode(self) -> bool:
        return not self.fresh and bool(self.session_id)

    @classmethod
    def from_env(
        cls,
        *,
        name: str,
        base_prompt: str,
        **overrides: object,
    ) -> "LoopConfig":
        """Build a config from CLI values plus the AGENT_* environment."""
        suffix = env_str("AGENT_PROMPT_SUFFIX")
        continuation = env_str("AGENT_CONTINUATION_PROMPT", DEFAULT_CONTINUATION_PROMPT)
        return cls(
            name=name,
            prompt=_with_suffix(base_prompt, suffix),
            continuation_prompt=_with_suffix(continuation, suffix),
            completion_marker=env_str("AGENT_COMPLETION_MARKER", DEFAULT_COMPLETION_MARKER),
            max_consecutive_failures=env_int(
                "AGENT_MAX_CONSECUTIVE_FAILURES", DEFAULT_MAX_CONSECUTIVE_FAILURES
            ),
            non_json_warn_threshold=env_int(
                "AGENT_NON_JSON_WARN_THRESHOLD", DEFAULT_NON_JSON_WARN_THRESHOLD
            ),
            log_dir=Path(env_str("AGENT_LOG_DIR", str(DEFAULT_LOG_DIR))),
            **overrides,  # type: ignore[arg-type]
        )


def _with_suffix(prompt: str, suffix: str) -> str:
    return f"{prompt}\n\n{suffix}" if suffix else prompt


@dataclass
class LoopState:
    iteration: int = 0
    consecutive_failures: int = 0
    reason: TerminationReason | None = None


@dataclass
class IterationResult:
    exit_code: int | None = None
    text: str = ""
    non_json_lines: int = 0
    error: Exception | None = None

    def completed(self, marker: str) -> bool:
        return marker in self.text


@dataclass(frozen=True)
class LoopOutcome:
    reason: TerminationReason
    iteration: int
    consecutive_failures: int
    log_path: Path | None = None

    @property
    def exit_code(self) -> int:
        return self.reason.exit_code


@dataclass
class LoopRunner:
    cfg: LoopConfig
    backend: Backend = field(default_factory=ClaudeBackend)
    log: RunLog | None = None
    stdout: IO[str] | None = None
    stderr: IO[str] | None = None

    state: LoopState = field(init=False, default_factory=LoopState)
    console: Console = field(init=False)
    err_console: Console = field(init=False)
    formatter: StreamFormatter = field(init=False)
    _owns_log: bool = field(init=False, default=False)

    def __post_init__(self) -> None:
        out = self.stdout or sys.stdout
        err = self.stderr or sys.stderr
        self.console = Console(file=out, highlight=False)
        self.err_console = Console(file=err, highlight=False, stderr=True)
        self.formatter = StreamFormatter(stdout=out, stderr=err)

    # -- invocation planning ---------------------------------------------

    def plan_invocation(self, iteration: int) -> Invocation:
        cfg = self.cfg
        if cfg.fresh:
            return Invocation(prompt=cfg.prompt)
        if iteration == 1:
            return Invocation(prompt=cfg.prompt, new_session_id=cfg.session_id or None)
        if cfg.session_id:
            return Invocation(
                prompt=cfg.continuation_prompt, resume_session_id=cfg.session_id
            )
        return Invocation(prompt=cfg.continuation_prompt)

    def fallback_invocation(self) -> Invocation:
        return Invocation(prompt=self.cfg.prompt)

    def should_fallback(self, iteration: int, result: IterationResult) -> bool:
        return (
            iteration > 1
            and self.cfg.resume_mode
            and result.error is None
            and result.exit_code != 0
        )

    # -- single iteration ------------------------------------------------

    def run_iteration(self, invocation: Invocation) -> IterationResult:
        assert self.log is not None
        log = self.log
        result = IterationResult()
        events: list[AgentEvent] = []

        def on_line(line: str) -> None:
            log.write_line(line)
            event = parse_line(line)
            if isinstance(event, Unparseable):
                result.non_json_lines += 1
            else:
                events.append(event)
            self.formatter.show(event)

        def on_stderr(chunk: bytes) -> None:
            text = chunk.decode("utf-8", errors="replace")
            log.write_raw(text)
            self.formatter.show_stderr(text)

        log.debug(f"Claude args: {self.backend.build_argv(invocation, self.cfg)}")
        try:
            exec_result = self.backend.run(
                invocation, self.cfg, on_line=on_line, on_stderr=on_stderr
            )
        except Exception as exc:
            result.error = exc
        else:
            result.exit_code = exec_result.returncode
        result.text = accumulate_text(events)

        log.debug(f"Stream stats: {result.non_json_lines} non-JSON lines")
        threshold = self.cfg.non_json_warn_threshold
        if result.non_json_lines > threshold:
            log.warn(
                f"High non-JSON line count: {result.non_json_lines} (threshold: {threshold})"
            )
            self.err_console.print(
                Text(
                    f"Warning: {result.non_json_lines} non-JSON lines in stream "
                    f"(threshold: {threshold})",
                    style="yellow",
                )
            )
        return result

    # -- loop --------------------------------------------------------------

    def _finish(self, reason: TerminationReason) -> LoopOutcome:
        assert self.log is not None
        state = self.state
        state.reason = reason
        self.log.summary(
            reason=state.reason.value,
            iteration=state.iteration,
            total_iterations=self.cfg.max_iterations,
            consecutive_failures=state.consecutive_failures,
        )
        outcome = LoopOutcome(
            reason=state.reason,
            iteration=state.iteration,
            consecutive_failures=state.consecutive_failures,
            log_path=self.log.path,
        )
        if self._owns_log:
            self.log.close()
        return outcome

    def _print_banner(self) -> None:
        assert self.log is not None
        cfg = self.cfg
        body = "\n".join(
            [
                f"Iterations: {cfg.max_iterations}",
                f"Session: {cfg.session_id or 'none'}",
                f"Resume: {'enabled' if cfg.resume_mode else 'disabled'}",
                f"Log: {self.log.path}",
            ]
        )
        self.console.print(
            Panel(body, title=f"Ralph Loop: {cfg.name}", style="bold blue", expand=False)
        )

    def _log_startup(self) -> None:
        assert self.log is not None
        cfg = self.cfg
        self.log.info(f"Starting ralph loop: {cfg.name}")
        self.log.info(f"Iterations: {cfg.max_iterations}")
        self.log.info(f"Permission mode: {cfg.permission_mode}")
        self.log.info(f"Model: {cfg.model or 'default'}")
        self.log.info(f"Session ID: {cfg.session_id or 'none'}")
        self.log.info(f"Resume: {'enabled' if cfg.resume_mode else 'disabled'}")
        self.log.info(f"Max consecutive failures: {cfg.max_consecutive_failures}")
        self.log.debug(f"Prompt: {cfg.prompt[:200]}...")

    def run(self) -> LoopOutcome:
        cfg = self.cfg
        if self.log is None:
            self.log = RunLog.for_session(cfg.log_dir, cfg.name, cfg.log_path)
            self._owns_log = True
        log = self.log

        self._print_banner()
        self._log_startup()
        try:
            return self._iterate()
        except Exception as exc:
            log.error(f"Fatal error: {exc}")
            self._finish(TerminationReason.FATAL_ERROR)
            raise

    def _iterate(self) -> LoopOutcome:
        cfg = self.cfg
        log = self.log
        assert log is not None
        state = self.state

        for i in range(1, cfg.max_iterations + 1):
            state.iteration = i
            self.console.print(
                Text(f"\n── Iteration {i}/{cfg.max_iterations} ──\n", style="bold yellow")
            )
            log.info(f"=== Iteration {i}/{cfg.max_iterations} ===")

            result = self.run_iteration(self.plan_invocation(i))

            if result.completed(cfg.completion_marker):
                self.console.print(
                    Text(
                        f"\n✓ Completion marker detected on iteration {i}. Done!",
                        style="bold green",
                    )
                )
                log.info(f"Completion detected on iteration {i}")
                return self._finish(TerminationReason.COMPLETED)

            if result.error is not None:
                state.consecutive_failures += 1
                log.error(f"Exception on iteration {i}: {result.error}")
                self.err_console.print(
                    Text(f"\nError on iteration {i}: {result.error}", style="red")
                )
                if state.consecutive_failures >= cfg.max_consecutive_failures:
                    return self._finish(TerminationReason.CONSECUTIVE_EXCEPTIONS)
                continue

            if result.exit_code == 0:
                state.consecutive_failures = 0
                continue

            state.consecutive_failures += 1
            log.warn(
                f"Claude exited with code {result.exit_code} "
                f"(consecutive failures: {state.consecutive_failures})"
            )
            self.console.print(
                Text(
                    f"\nClaude exited with code {result.exit_code} "
                    f"(failures: {state.consecutive_failures}/{cfg.max_consecutive_failures})",
                    style="yellow",
                )
            )

            if self.should_fallback(i, result):
                self.console.print(
                    Text("Resume may have failed, retrying as fresh...", style="yellow")
                )
                log.info("Retrying iteration as fresh invocation")
                retry = self.run_iteration(self.fallback_invocation())
                if retry.completed(cfg.completion_marker):
                    self.console.print(
                        Text("\n✓ Completion marker detected on retry. Done!", style="bold green")
                    )
                    log.info(f"Completion detected on fresh retry of iteration {i}")
                    return self._finish(TerminationReason.COMPLETED)
                if retry.error is not None:
                    log.error(f"Exception on fresh retry of iteration {i}: {retry.error}")
                elif retry.exit_code != 0:
                    log.warn(f"Fresh retry exited with code {retry.exit_code}")

            if state.consecutive_failures >= cfg.max_consecutive_failures:
                self.err_console.print(
                    Text(
                        f"\nConsecutive failure threshold ({cfg.max_consecutive_failures}) "
                        "reached. Stopping.",
                        style="red",
                    )
                )
                return self._finish(TerminationReason.CONSECUTIVE_FAILURES)

        self.console.print(
            Text(f"\nMax iterations ({cfg.max_iterations}) reached.", style="bold yellow")
        )
        log.info("Max iterations reached")
        return self._finish(TerminationReason.MAX_ITERATIONS)


def run_loop(
    cfg: LoopConfig,
    *,
    backend: Backend | None = None,
    stdout: IO[str] | None = None,
    stderr: IO[str] | None = None,
) -> LoopOutcome:
    runner = LoopRunner(
        cfg,
        backend=backend or ClaudeBackend(),
        stdout=stdout,
        stderr=stderr,
    )
    return runner.run()
