"""Registry of live loop sessions, shared by concurrent CLI invocations.

The registry is one JSON object (session name -> record) on disk. Every
read-modify-write happens while holding an exclusive ``flock`` on a sibling
``<file>.lock``; writes go through a temp file and ``os.replace`` so readers
never see a half-written document.
"""

from __future__ import annotations

import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, TypedDict

from .screen import Multiplexer
from .util import utc_now_iso


class SessionRecord(TypedDict, total=False):
    name: str
    prompt_source: str
    working_path: str
    session_id: str
    model: str | None
    iterations: int
    screen_name: str
    started_at: str


Registry = dict[str, SessionRecord]


class RegistryLockError(RuntimeError):
    pass


@contextmanager
def file_lock(lock_path: Path) -> Iterator[None]:
    try:
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o644)
    except OSError as exc:
        raise RegistryLockError(f"Cannot open lock file: {lock_path}") from exc

    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
        except OSError as exc:
            raise RegistryLockError("Cannot acquire lock on tracking file.") from exc
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


def atomic_write_json(path: Path, data: Any) -> None:
    content = json.dumps(data, indent=4, ensure_ascii=False) + "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}-")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def _record_process_name(record: object) -> str | None:
    if not isinstance(record, dict):
        return None
    name = record.get("name")
    if isinstance(name, str) and name:
        return name
    return None


class SessionTracker:
    def __init__(self, tracking_file: Path, multiplexer: Multiplexer) -> None:
        self.tracking_file = Path(tracking_file)
        self.multiplexer = multiplexer

    @property
    def lock_path(self) -> Path:
        return self.tracking_file.with_name(self.tracking_file.name + ".lock")

    def _read(self) -> Registry:
        try:
            content = self.tracking_file.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        try:
            data = json.loads(content)
        except ValueError:
            return {}
        if not isinstance(data, dict):
            return {}
        return {key: rec for key, rec in data.items() if isinstance(rec, dict)}

    def _write(self, data: Registry) -> None:
        atomic_write_json(self.tracking_file, data)

    def _mutate(self, fn: Callable[[Registry], Any]) -> Any:
        with file_lock(self.lock_path):
            agents = self._read()
            out = fn(agents)
            self._write(agents)
            return out

    def _alive(self, record: object) -> bool:
        name = _record_process_name(record)
        return name is not None and self.multiplexer.is_alive(name)

    def all(self) -> Registry:
        with file_lock(self.lock_path):
            return self._read()

    def get(self, key: str) -> SessionRecord | None:
        return self.all().get(key)

    def running(self) -> Registry:
        return {key: rec for key, rec in self.all().items() if self._alive(rec)}

    def is_running(self, key: str) -> bool:
        record = self.get(key)
        if record is None:
            return False
        return self._alive(record)

    def track(self, key: str, record: SessionRecord) -> SessionRecord:
        stored: SessionRecord = {**record, "started_at": utc_now_iso()}

        def apply(agents: Registry) -> None:
            agents[key] = stored

        self._mutate(apply)
        return stored

    def untrack(self, key: str) -> None:
        self._mutate(lambda agents: agents.pop(key, None))

    def clean(self) -> list[str]:
        """Drop entries whose multiplexer session is gone; return their keys."""

        def apply(agents: Registry) -> list[str]:
            dead = [key for key, rec in agents.items() if not self._alive(rec)]
            for key in dead:
                del agents[key]
            return dead

        return self._mutate(apply)
