from __future__ import annotations

import json
import os
import subprocess
import sys
import textwrap
from pathlib import Path

import pytest

import ralph
from ralph.tracker import RegistryLockError, SessionTracker, atomic_write_json, file_lock


def _record(name: str, **extra) -> dict:
    record = {
        "name": name,
        "prompt_source": "prompt",
        "working_path": "/work",
        "session_id": f"sid-{name}",
        "model": None,
        "iterations": 10,
        "screen_name": f"ralph-{name}",
    }
    record.update(extra)
    return record


@pytest.fixture
def tracker(tmp_path: Path, multiplexer) -> SessionTracker:
    return SessionTracker(tmp_path / ".live-agents", multiplexer)


def test_missing_file_is_empty(tracker: SessionTracker) -> None:
    assert tracker.all() == {}
    assert tracker.get("nope") is None
    assert tracker.is_running("nope") is False


def test_corrupt_file_is_empty(tracker: SessionTracker) -> None:
    tracker.tracking_file.write_text("{not json", encoding="utf-8")
    assert tracker.all() == {}

    tracker.tracking_file.write_text("[1, 2]", encoding="utf-8")
    assert tracker.all() == {}


def test_non_object_entries_are_dropped(tracker: SessionTracker, multiplexer) -> None:
    tracker.tracking_file.write_text(
        json.dumps({"a": "garbage", "b": [1], "c": {"name": "c"}}), encoding="utf-8"
    )
    multiplexer.alive = {"c"}

    assert tracker.all() == {"c": {"name": "c"}}
    assert tracker.get("a") is None
    assert tracker.clean() == []
    assert json.loads(tracker.tracking_file.read_text()) == {"c": {"name": "c"}}


def test_track_then_get_round_trip(tracker: SessionTracker) -> None:
    record = _record("a")

    tracker.track("a", record)
    stored = tracker.get("a")

    assert stored is not None
    started_at = stored.pop("started_at")
    assert started_at
    assert stored == record


def test_track_overwrites_caller_started_at(tracker: SessionTracker) -> None:
    tracker.track("a", _record("a", started_at="1999-01-01T00:00:00Z"))

    assert tracker.get("a")["started_at"] != "1999-01-01T00:00:00Z"


def test_track_replaces_existing_entry(tracker: SessionTracker) -> None:
    tracker.track("a", _record("a", iterations=1))
    tracker.track("a", _record("a", iterations=2))

    assert tracker.get("a")["iterations"] == 2
    assert list(tracker.all()) == ["a"]


def test_untrack(tracker: SessionTracker) -> None:
    tracker.track("a", _record("a"))
    tracker.track("b", _record("b"))

    tracker.untrack("a")
    tracker.untrack("missing")

    assert tracker.get("a") is None
    assert set(tracker.all()) == {"b"}


def test_file_is_json_object(tracker: SessionTracker) -> None:
    tracker.track("a", _record("a"))

    data = json.loads(tracker.tracking_file.read_text(encoding="utf-8"))

    assert set(data["a"]) == {
        "name",
        "prompt_source",
        "working_path",
        "session_id",
        "model",
        "iterations",
        "screen_name",
        "started_at",
    }
    assert tracker.lock_path == tracker.tracking_file.with_name(".live-agents.lock")


def test_clean_removes_only_dead(tracker: SessionTracker, multiplexer) -> None:
    tracker.track("alive", _record("alive"))
    tracker.track("dead", _record("dead"))
    tracker.track("nameless", {"session_id": "x"})
    multiplexer.alive = {"alive"}

    cleaned = tracker.clean()

    assert sorted(cleaned) == ["dead", "nameless"]
    assert set(tracker.all()) == {"alive"}


def test_liveness_uses_record_name_not_key(tracker: SessionTracker, multiplexer) -> None:
    tracker.track("key", _record("process-name"))
    multiplexer.alive = {"key"}

    assert tracker.is_running("key") is False
    assert tracker.running() == {}

    multiplexer.alive = {"process-name"}

    assert tracker.is_running("key") is True
    assert set(tracker.running()) == {"key"}


def test_atomic_write_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "data.json"

    atomic_write_json(target, {"a": 1})
    atomic_write_json(target, {"b": 2})

    assert json.loads(target.read_text()) == {"b": 2}
    assert [p.name for p in tmp_path.iterdir()] == ["data.json"]


def test_lock_released_after_error(tmp_path: Path) -> None:
    lock = tmp_path / "x.lock"

    with pytest.raises(ValueError):
        with file_lock(lock):
            raise ValueError("inside")

    with file_lock(lock):
        pass


def test_unopenable_lock_file_raises(tmp_path: Path, multiplexer) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory")
    tracker = SessionTracker(blocker / "registry.json", multiplexer)

    with pytest.raises(RegistryLockError):
        tracker.track("a", _record("a"))


_WORKER = textwrap.dedent(
    """
    import sys
    from pathlib import Path

    from ralph.screen import ScreenManager
    from ralph.tracker import SessionTracker

    path, prefix, count = sys.argv[1], sys.argv[2], int(sys.argv[3])
    tracker = SessionTracker(Path(path), ScreenManager())
    for i in range(count):
        key = f"{prefix}-{i}"
        tracker.track(key, {"name": key, "iterations": i})
    """
)


def test_concurrent_track_from_two_processes_loses_nothing(tmp_path: Path) -> None:
    registry = tmp_path / ".live-agents"
    src_root = Path(ralph.__file__).resolve().parents[1]
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(filter(None, [str(src_root), env.get("PYTHONPATH")]))
    count = 40

    procs = [
        subprocess.Popen(
            [sys.executable, "-c", _WORKER, str(registry), prefix, str(count)],
            env=env,
        )
        for prefix in ("a", "b")
    ]
    for proc in procs:
        assert proc.wait(timeout=120) == 0

    data = json.loads(registry.read_text(encoding="utf-8"))
    expected = {f"{prefix}-{i}" for prefix in ("a", "b") for i in range(count)}
    assert set(data) == expected
