from __future__ import annotations

import re
import threading
from pathlib import Path

import pytest

from ralph.runlog import RunLog, default_log_path

LINE_RE = re.compile(r"^\[\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z\] \[(DEBUG|INFO|WARN|ERROR)\] ")


def test_default_log_path_layout(tmp_path: Path) -> None:
    path = default_log_path(tmp_path, "sess")

    assert path.parent == tmp_path / "sess"
    assert path.suffix == ".log"
    assert ":" not in path.name


def test_levels_and_raw_lines(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "run.log"
    with RunLog(path) as log:
        log.debug("d")
        log.info("i")
        log.warn("w")
        log.error("e")
        log.write_line('{"type":"raw"}')

    lines = path.read_text(encoding="utf-8").splitlines()

    assert [LINE_RE.match(line).group(1) for line in lines[:4]] == ["DEBUG", "INFO", "WARN", "ERROR"]
    assert lines[0].endswith("] d")
    assert lines[4] == '{"type":"raw"}'


def test_unknown_level_rejected(tmp_path: Path) -> None:
    with RunLog(tmp_path / "x.log") as log:
        with pytest.raises(ValueError, match="unknown log level"):
            log.log("TRACE", "nope")


def test_appends_to_existing_file(tmp_path: Path) -> None:
    path = tmp_path / "x.log"
    with RunLog(path) as log:
        log.info("first")
    with RunLog(path) as log:
        log.info("second")

    text = path.read_text(encoding="utf-8")
    assert "first" in text and "second" in text


def test_summary_block(tmp_path: Path) -> None:
    path = tmp_path / "x.log"
    with RunLog(path) as log:
        log.summary(
            reason="max_iterations_reached",
            iteration=30,
            total_iterations=30,
            consecutive_failures=0,
        )

    messages = [LINE_RE.sub("", line) for line in path.read_text().splitlines()]

    assert messages[1] == "=== Session Summary ==="
    assert "Reason: max_iterations_reached" in messages
    assert "Iterations: 30/30" in messages
    assert "Consecutive failures: 0" in messages
    assert any(m.startswith("Timestamp: ") for m in messages)


def test_writes_after_close_are_dropped(tmp_path: Path) -> None:
    path = tmp_path / "x.log"
    log = RunLog(path)
    log.close()
    log.info("late")
    log.close()

    assert path.read_text() == ""


def test_concurrent_writers_do_not_interleave(tmp_path: Path) -> None:
    path = tmp_path / "x.log"
    line = "x" * 2000

    with RunLog(path) as log:
        def write_many() -> None:
            for _ in range(200):
                log.write_line(line)

        threads = [threading.Thread(target=write_many) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    lines = path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 800
    assert set(lines) == {line}
