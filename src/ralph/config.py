from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import tomllib

from .runner import (
    DEFAULT_COMPLETION_MARKER,
    DEFAULT_LOG_DIR,
    DEFAULT_MAX_CONSECUTIVE_FAILURES,
    DEFAULT_NON_JSON_WARN_THRESHOLD,
)

CONFIG_FILENAME = "ralph.toml"

DEFAULT_SUFFIX = (
    "Focus on one task at a time. Run tests after changes. Commit when done. "
    "Output <promise>COMPLETE</promise> when all tasks are finished."
)
DEFAULT_CONTINUATION = (
    "Continue working. Check the PRD and progress files for remaining tasks. "
    "If all tasks are complete, output the completion marker."
)


class ConfigValidationError(ValueError):
    pass


@dataclass(frozen=True)
class LoopSection:
    default_iterations: int = 30
    permission_mode: str = "acceptEdits"
    model: str | None = None
    completion_marker: str = DEFAULT_COMPLETION_MARKER
    max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES


@dataclass(frozen=True)
class PromptSection:
    suffix: str = DEFAULT_SUFFIX
    continuation: str = DEFAULT_CONTINUATION


@dataclass(frozen=True)
class ScreenSection:
    prefix: str = "ralph"
    shell: str = "zsh"


@dataclass(frozen=True)
class LoggingSection:
    directory: Path = DEFAULT_LOG_DIR
    non_json_warn_threshold: int = DEFAULT_NON_JSON_WARN_THRESHOLD


@dataclass(frozen=True)
class RalphConfig:
    project_root: Path
    loop: LoopSection = field(default_factory=LoopSection)
    prompt: PromptSection = field(default_factory=PromptSection)
    screen: ScreenSection = field(default_factory=ScreenSection)
    tracking_file: Path = Path(".live-agents")
    logging: LoggingSection = field(default_factory=LoggingSection)
    source_path: Path | None = None

    @property
    def tracking_path(self) -> Path:
        return self._resolve(self.tracking_file)

    @property
    def log_dir(self) -> Path:
        return self._resolve(self.logging.directory)

    def _resolve(self, path: Path) -> Path:
        return path if path.is_absolute() else self.project_root / path

    def agent_env(self) -> dict[str, str]:
        """Environment contract consumed by ``ralph loop``."""
        env = {
            "AGENT_PROMPT_SUFFIX": self.prompt.suffix,
            "AGENT_LOG_DIR": str(self.log_dir),
            "AGENT_COMPLETION_MARKER": self.loop.completion_marker,
            "AGENT_CONTINUATION_PROMPT": self.prompt.continuation,
            "AGENT_MAX_CONSECUTIVE_FAILURES": str(self.loop.max_consecutive_failures),
            "AGENT_NON_JSON_WARN_THRESHOLD": str(self.logging.non_json_warn_threshold),
        }
        return {k: v for k, v in env.items() if v}


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ConfigValidationError(f"[{name}] must be a table")
    return value


def _opt_str(table: dict[str, Any], key: str, *, section: str) -> str | None:
    value = table.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigValidationError(f"[{section}].{key} must be a string")
    stripped = value.strip()
    return stripped or None


def _str(table: dict[str, Any], key: str, default: str, *, section: str) -> str:
    value = _opt_str(table, key, section=section)
    return default if value is None else value


def _positive_int(table: dict[str, Any], key: str, default: int, *, section: str) -> int:
    value = table.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigValidationError(f"[{section}].{key} must be a positive integer")
    return value


def _env_override(name: str, current: str | None) -> str | None:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return current
    return raw.strip()


def _env_int_override(name: str, current: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return current
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ConfigValidationError(f"{name} must be an integer, got {raw!r}") from exc
    if value < 1:
        raise ConfigValidationError(f"{name} must be a positive integer")
    return value


def parse_config(data: dict[str, Any], *, project_root: Path, source_path: Path | None = None) -> RalphConfig:
    loop = _section(data, "loop")
    prompt = _section(data, "prompt")
    screen = _section(data, "screen")
    tracking = _section(data, "tracking")
    logging = _section(data, "logging")

    loop_cfg = LoopSection(
        default_iterations=_env_int_override(
            "RALPH_LOOP_ITERATIONS",
            _positive_int(loop, "default_iterations", 30, section="loop"),
        ),
        permission_mode=_env_override(
            "RALPH_PERMISSION_MODE",
            _str(loop, "permission_mode", "acceptEdits", section="loop"),
        )
        or "acceptEdits",
        model=_env_override("RALPH_MODEL", _opt_str(loop, "model", section="loop")),
        completion_marker=_str(
            loop, "completion_marker", DEFAULT_COMPLETION_MARKER, section="loop"
        ),
        max_consecutive_failures=_positive_int(
            loop, "max_consecutive_failures", DEFAULT_MAX_CONSECUTIVE_FAILURES, section="loop"
        ),
    )
    prompt_cfg = PromptSection(
        suffix=_str(prompt, "suffix", DEFAULT_SUFFIX, section="prompt"),
        continuation=_str(prompt, "continuation", DEFAULT_CONTINUATION, section="prompt"),
    )
    screen_cfg = ScreenSection(
        prefix=_str(screen, "prefix", "ralph", section="screen"),
        shell=_env_override("RALPH_SCREEN_SHELL", _str(screen, "shell", "zsh", section="screen"))
        or "zsh",
    )
    tracking_file = _env_override(
        "RALPH_TRACKING_FILE", _str(tracking, "file", ".live-agents", section="tracking")
    )
    logging_cfg = LoggingSection(
        directory=Path(
            _str(logging, "directory", str(DEFAULT_LOG_DIR), section="logging")
        ),
        non_json_warn_threshold=_positive_int(
            logging,
            "non_json_warn_threshold",
            DEFAULT_NON_JSON_WARN_THRESHOLD,
            section="logging",
        ),
    )
    return RalphConfig(
        project_root=project_root,
        loop=loop_cfg,
        prompt=prompt_cfg,
        screen=screen_cfg,
        tracking_file=Path(tracking_file or ".live-agents"),
        logging=logging_cfg,
        source_path=source_path,
    )


def load_config(project_root: Path, path: Path | None = None) -> RalphConfig:
    if path is None:
        env_path = os.environ.get("RALPH_CONFIG")
        path = Path(env_path) if env_path else project_root / CONFIG_FILENAME
    if not path.exists():
        return parse_config({}, project_root=project_root)
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigValidationError(f"invalid TOML in {path}: {exc}") from exc
    return parse_config(data, project_root=project_root, source_path=path)
