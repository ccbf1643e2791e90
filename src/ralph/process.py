"""Spawn the agent binary and stream its output."""

from __future__ import annotations

import os
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Mapping

# Set by Claude Code in its own shells; the child refuses to start when it
# sees it, so the loop can be launched from inside an agent session.
NESTED_SESSION_ENV = "CLAUDECODE"


@dataclass(frozen=True)
class ExecResult:
    returncode: int


LineHandler = Callable[[str], None]
ChunkHandler = Callable[[bytes], None]


def agent_env(base: Mapping[str, str] | None = None) -> dict[str, str]:
    env = dict(os.environ if base is None else base)
    env.pop(NESTED_SESSION_ENV, None)
    return env


def _pump_stderr(stream: IO[bytes], on_stderr: ChunkHandler | None) -> None:
    for chunk in iter(lambda: stream.read1(4096), b""):
        if on_stderr:
            on_stderr(chunk)


def stream_process(
    argv: list[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    on_line: LineHandler | None = None,
    on_stderr: ChunkHandler | None = None,
) -> ExecResult:
    """Run ``argv`` to completion, feeding stdout lines and stderr chunks.

    Blocks until the process exits. Raises ``OSError`` when the binary cannot
    be spawned.
    """
    with subprocess.Popen(
        argv,
        cwd=str(cwd) if cwd else None,
        env=dict(env) if env is not None else None,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    ) as proc:
        assert proc.stdout is not None
        assert proc.stderr is not None
        pump = threading.Thread(
            target=_pump_stderr, args=(proc.stderr, on_stderr), daemon=True
        )
        pump.start()
        try:
            for raw in proc.stdout:
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if on_line:
                    on_line(line)
        except BaseException:
            proc.kill()
            raise
        finally:
            returncode = proc.wait()
            pump.join()

        return ExecResult(returncode=returncode)
