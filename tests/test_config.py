from __future__ import annotations

import dataclasses
from pathlib import Path

import pytest

from ralph.config import (
    DEFAULT_CONTINUATION,
    DEFAULT_SUFFIX,
    ConfigValidationError,
    load_config,
    parse_config,
)


def _write(root: Path, body: str) -> Path:
    path = root / "ralph.toml"
    path.write_text(body, encoding="utf-8")
    return path


def test_defaults_without_file(tmp_path: Path) -> None:
    cfg = load_config(tmp_path)

    assert cfg.source_path is None
    assert cfg.loop.default_iterations == 30
    assert cfg.loop.permission_mode == "acceptEdits"
    assert cfg.loop.model is None
    assert cfg.loop.completion_marker == "<promise>COMPLETE</promise>"
    assert cfg.loop.max_consecutive_failures == 3
    assert cfg.prompt.suffix == DEFAULT_SUFFIX
    assert cfg.prompt.continuation == DEFAULT_CONTINUATION
    assert dataclasses.asdict(cfg.prompt) == {"suffix": DEFAULT_SUFFIX, "continuation": DEFAULT_CONTINUATION}
    assert cfg.screen.prefix == "ralph"
    assert cfg.tracking_path == tmp_path / ".live-agents"
    assert cfg.log_dir == tmp_path / "storage" / "ralph-logs"
    assert cfg.logging.non_json_warn_threshold == 50


def test_reads_toml_values(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
[loop]
default_iterations = 5
permission_mode = "bypassPermissions"
model = "opus"
completion_marker = "DONE"
max_consecutive_failures = 2

[prompt]
suffix = "Be brief."
continuation = "Keep going."

[screen]
prefix = "rl"
shell = "bash"

[tracking]
file = "/var/tmp/agents.json"

[logging]
directory = "logs"
non_json_warn_threshold = 7
""",
    )

    cfg = load_config(tmp_path)

    assert cfg.source_path == path
    assert cfg.loop.default_iterations == 5
    assert cfg.loop.permission_mode == "bypassPermissions"
    assert cfg.loop.model == "opus"
    assert cfg.loop.completion_marker == "DONE"
    assert cfg.loop.max_consecutive_failures == 2
    assert cfg.prompt.suffix == "Be brief."
    assert cfg.prompt.continuation == "Keep going."
    assert (cfg.screen.prefix, cfg.screen.shell) == ("rl", "bash")
    assert cfg.tracking_path == Path("/var/tmp/agents.json")
    assert cfg.log_dir == tmp_path / "logs"
    assert cfg.logging.non_json_warn_threshold == 7


def test_env_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _write(tmp_path, "[loop]\ndefault_iterations = 5\nmodel = \"opus\"\n")
    monkeypatch.setenv("RALPH_LOOP_ITERATIONS", "12")
    monkeypatch.setenv("RALPH_MODEL", "sonnet")
    monkeypatch.setenv("RALPH_PERMISSION_MODE", "plan")
    monkeypatch.setenv("RALPH_SCREEN_SHELL", "sh")
    monkeypatch.setenv("RALPH_TRACKING_FILE", "agents.json")

    cfg = load_config(tmp_path)

    assert cfg.loop.default_iterations == 12
    assert cfg.loop.model == "sonnet"
    assert cfg.loop.permission_mode == "plan"
    assert cfg.screen.shell == "sh"
    assert cfg.tracking_path == tmp_path / "agents.json"


def test_blank_env_override_is_ignored(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RALPH_MODEL", "   ")
    _write(tmp_path, "[loop]\nmodel = \"opus\"\n")

    assert load_config(tmp_path).loop.model == "opus"


def test_bad_env_int_raises(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RALPH_LOOP_ITERATIONS", "lots")

    with pytest.raises(ConfigValidationError, match="RALPH_LOOP_ITERATIONS"):
        load_config(tmp_path)


def test_ralph_config_env_selects_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    other = tmp_path / "elsewhere.toml"
    other.write_text("[screen]\nprefix = \"alt\"\n", encoding="utf-8")
    monkeypatch.setenv("RALPH_CONFIG", str(other))

    cfg = load_config(tmp_path)

    assert cfg.screen.prefix == "alt"
    assert cfg.source_path == other


def test_invalid_toml(tmp_path: Path) -> None:
    _write(tmp_path, "[loop\n")

    with pytest.raises(ConfigValidationError, match="invalid TOML"):
        load_config(tmp_path)


@pytest.mark.parametrize(
    ("data", "message"),
    [
        ({"loop": "nope"}, r"\[loop\] must be a table"),
        ({"loop": {"default_iterations": 0}}, "positive integer"),
        ({"loop": {"default_iterations": True}}, "positive integer"),
        ({"loop": {"model": 3}}, "must be a string"),
        ({"logging": {"non_json_warn_threshold": "50"}}, "positive integer"),
    ],
)
def test_invalid_values(tmp_path: Path, data: dict, message: str) -> None:
    with pytest.raises(ConfigValidationError, match=message):
        parse_config(data, project_root=tmp_path)


def test_agent_env_contract(tmp_path: Path) -> None:
    cfg = parse_config(
        {"loop": {"completion_marker": "DONE"}, "prompt": {"suffix": "S"}},
        project_root=tmp_path,
    )

    env = cfg.agent_env()

    assert env == {
        "AGENT_PROMPT_SUFFIX": "S",
        "AGENT_LOG_DIR": str(tmp_path / "storage" / "ralph-logs"),
        "AGENT_COMPLETION_MARKER": "DONE",
        "AGENT_CONTINUATION_PROMPT": DEFAULT_CONTINUATION,
        "AGENT_MAX_CONSECUTIVE_FAILURES": "3",
        "AGENT_NON_JSON_WARN_THRESHOLD": "50",
    }
