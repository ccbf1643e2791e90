"""Per-invocation loop log.

One file per loop invocation, append-only, single writer. Lines are either
raw agent output or ``[<timestamp>] [LEVEL] message`` diagnostics.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import IO

from .util import file_timestamp, utc_now_iso

LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")


def default_log_path(log_dir: Path, name: str) -> Path:
    return log_dir / name / f"{file_timestamp()}.log"


class RunLog:
    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh: IO[str] | None = self.path.open("a", encoding="utf-8")
        # Agent stderr is written from the pump thread.
        self._lock = threading.Lock()

    @classmethod
    def for_session(cls, log_dir: Path, name: str, log_path: Path | None = None) -> "RunLog":
        return cls(log_path if log_path is not None else default_log_path(log_dir, name))

    def write_raw(self, text: str) -> None:
        with self._lock:
            if self._fh is None:
                return
            self._fh.write(text)
            self._fh.flush()

    def write_line(self, text: str) -> None:
        self.write_raw(text + "\n")

    def log(self, level: str, message: str) -> None:
        if level not in LEVELS:
            raise ValueError(f"unknown log level: {level!r}")
        self.write_line(f"[{utc_now_iso()}] [{level}] {message}")

    def debug(self, message: str) -> None:
        self.log("DEBUG", message)

    def info(self, message: str) -> None:
        self.log("INFO", message)

    def warn(self, message: str) -> None:
        self.log("WARN", message)

    def error(self, message: str) -> None:
        self.log("ERROR", message)

    def summary(
        self,
        *,
        reason: str,
        iteration: int,
        total_iterations: int,
        consecutive_failures: int,
    ) -> None:
        for line in (
            "",
            "=== Session Summary ===",
            f"Reason: {reason}",
            f"Iterations: {iteration}/{total_iterations}",
            f"Consecutive failures: {consecutive_failures}",
            f"Timestamp: {utc_now_iso()}",
            "========================",
            "",
        ):
            self.info(line)

    def close(self) -> None:
        with self._lock:
            if self._fh is not None:
                self._fh.close()
                self._fh = None

    def __enter__(self) -> "RunLog":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
