"""CLI entry point for ralph."""

from __future__ import annotations

import argparse
import json
import os
import shlex
import subprocess
import sys
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table
from rich.text import Text

from . import __version__
from .config import ConfigValidationError, RalphConfig, load_config
from .process import NESTED_SESSION_ENV, agent_env
from .prompting import (
    PromptError,
    resolve_prompt_source,
    resolve_prompt_text,
    validate_name,
    write_prompt_file,
)
from .runlog import RunLog, default_log_path
from .runner import LoopConfig, TerminationReason, run_loop
from .screen import Multiplexer, ScreenError, ScreenManager
from .tracker import SessionTracker
from .ui import bullet_list, error, info, render_table, warn
from .util import format_duration, format_size, new_session_id, parse_iso, utc_now, which


def _project_root() -> Path:
    return Path.cwd()


def _make_multiplexer(cfg: RalphConfig) -> Multiplexer:
    return ScreenManager(prefix=cfg.screen.prefix, shell=cfg.screen.shell)


def _make_tracker(cfg: RalphConfig, multiplexer: Multiplexer) -> SessionTracker:
    return SessionTracker(cfg.tracking_path, multiplexer)


# ---------------------------------------------------------------------------
# loop
# ---------------------------------------------------------------------------


def _loop_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ralph loop", description="Run the agent loop in the foreground")
    p.add_argument("--prompt", default=None, help="Prompt file path or inline text")
    p.add_argument("--iterations", type=int, default=30)
    p.add_argument("--name", default="ralph")
    p.add_argument("--permission-mode", default="acceptEdits")
    p.add_argument("--model", default=None)
    p.add_argument("--session-id", default=None)
    p.add_argument("--budget", default=None, help="Max USD per agent invocation")
    p.add_argument("--fresh", action="store_true", help="Every iteration is an independent session")
    p.add_argument("--log-path", default=None)
    return p


def cmd_loop(argv: list[str], console: Console, err_console: Console) -> int:
    args = _loop_parser().parse_args(argv)
    try:
        base_prompt = resolve_prompt_text(args.prompt)
        cfg = LoopConfig.from_env(
            name=args.name,
            base_prompt=base_prompt,
            max_iterations=args.iterations,
            permission_mode=args.permission_mode,
            model=args.model or None,
            budget=args.budget or None,
            fresh=args.fresh,
            session_id=args.session_id or None,
            log_path=Path(args.log_path) if args.log_path else None,
        )
    except (PromptError, ValueError) as exc:
        error(err_console, f"Error: {exc}")
        return TerminationReason.FATAL_ERROR.exit_code

    try:
        outcome = run_loop(cfg)
    except OSError as exc:
        error(err_console, f"Fatal error: {exc}")
        return TerminationReason.FATAL_ERROR.exit_code
    return outcome.exit_code


# ---------------------------------------------------------------------------
# start
# ---------------------------------------------------------------------------


def _start_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ralph start", description="Start an agent loop session")
    p.add_argument("name", nargs="?", default=None, help="Session name")
    p.add_argument("--issue", default=None, help="GitHub issue number to work on")
    p.add_argument("--prompt", default=None, help="Path to prompt file or inline text")
    p.add_argument("--iterations", type=int, default=None)
    p.add_argument("--model", default=None)
    p.add_argument("--budget", default=None)
    p.add_argument("--fresh", action="store_true")
    p.add_argument("--resume", action="store_true")
    p.add_argument("--attach", action="store_true")
    p.add_argument("--once", action="store_true", help="Run in the foreground")
    return p


def _missing_binaries(once: bool) -> list[str]:
    needed = ["claude"] if once else ["claude", "screen"]
    return [b for b in needed if which(b) is None]


def _check_sandbox_config(root: Path, console: Console) -> None:
    settings_path = root / ".claude" / "settings.json"
    if not settings_path.exists():
        warn(console, "No .claude/settings.json found. Run `ralph init` to configure sandbox permissions.")
        return
    try:
        settings = json.loads(settings_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return
    if not isinstance(settings, dict):
        return
    sandbox = settings.get("sandbox") or {}
    if not isinstance(sandbox, dict) or not (
        sandbox.get("enabled") and sandbox.get("autoAllowBashIfSandboxed")
    ):
        warn(
            console,
            "Sandbox not fully configured. Run `ralph init` to fix. "
            "Without this, Claude may hang waiting for Bash approval.",
        )


def build_loop_argv(
    *,
    prompt: Path,
    name: str,
    iterations: int,
    permission_mode: str,
    session_id: str,
    log_path: Path,
    model: str | None,
    budget: str | None,
    fresh: bool,
) -> list[str]:
    argv = [
        sys.executable,
        "-m",
        "ralph",
        "loop",
        "--prompt",
        str(prompt),
        "--name",
        name,
        "--iterations",
        str(iterations),
        "--permission-mode",
        permission_mode,
        "--session-id",
        session_id,
        "--log-path",
        str(log_path),
    ]
    if model:
        argv += ["--model", model]
    if budget:
        argv += ["--budget", budget]
    if fresh:
        argv.append("--fresh")
    return argv


def build_screen_command(loop_argv: list[str], env: dict[str, str], cwd: Path) -> str:
    parts = [f"unset {NESTED_SESSION_ENV}"]
    parts += [f"export {key}={shlex.quote(value)}" for key, value in env.items()]
    parts.append(f"cd {shlex.quote(str(cwd))}")
    parts.append(shlex.join(loop_argv))
    return " && ".join(parts)


def cmd_start(argv: list[str], console: Console, err_console: Console) -> int:
    args = _start_parser().parse_args(argv)
    if args.fresh and args.resume:
        error(err_console, "--fresh and --resume are mutually exclusive.")
        return 1

    root = _project_root()
    cfg = load_config(root)

    missing = _missing_binaries(args.once)
    if missing:
        error(err_console, "Missing required binaries: " + ", ".join(missing))
        return 1

    _check_sandbox_config(root, console)

    try:
        source = resolve_prompt_source(issue=args.issue, prompt=args.prompt, cwd=root)
        name = args.name or source.suggested_name
        if not name:
            raise PromptError("Session name is required.")
        name = validate_name(name)
    except PromptError as exc:
        error(err_console, str(exc))
        return 1

    if args.iterations is not None and args.iterations < 1:
        error(err_console, "--iterations must be a positive integer.")
        return 1

    multiplexer = _make_multiplexer(cfg)
    tracker = _make_tracker(cfg, multiplexer)

    if not args.once and (tracker.is_running(name) or multiplexer.is_alive(name)):
        error(err_console, f"Session '{name}' is already running.")
        return 1

    prompt_path = source.file or write_prompt_file(cfg.log_dir, name, source.content)

    session_id = new_session_id()
    if args.resume:
        existing = tracker.get(name) or {}
        stored = existing.get("session_id")
        if isinstance(stored, str) and stored:
            info(console, f"Resuming session ID: {stored}")
            session_id = stored
        else:
            warn(console, f"No stored session ID for '{name}', starting fresh.")

    iterations = args.iterations or cfg.loop.default_iterations
    model = args.model or cfg.loop.model

    log_path = default_log_path(cfg.log_dir, name)
    with RunLog(log_path) as log:
        log.info(f"Session: {name}")
        log.info(f"Prompt source: {source.source}")
        log.info(f"Session ID: {session_id}")
        log.info(f"Iterations: {iterations}")
        log.info(f"Model: {model or 'default'}")
        log.info(f"Mode: {'fresh' if args.fresh else 'resume'}")
        log.info(f"Working dir: {root}")
        loop_argv = build_loop_argv(
            prompt=prompt_path,
            name=name,
            iterations=iterations,
            permission_mode=cfg.loop.permission_mode,
            session_id=session_id,
            log_path=log_path,
            model=model,
            budget=args.budget,
            fresh=args.fresh,
        )
        log.debug(f"Loop command: {shlex.join(loop_argv)}")

    if args.once:
        info(console, f"Running single iteration for '{name}'...")
        env = agent_env({**os.environ, **cfg.agent_env()})
        return subprocess.call(loop_argv, cwd=str(root), env=env)

    info(console, f"Starting ralph session '{name}'...")
    screen_cmd = build_screen_command(loop_argv, cfg.agent_env(), root)
    try:
        multiplexer.spawn(name, screen_cmd, root)
    except ScreenError as exc:
        error(err_console, str(exc))
        return 1

    tracker.track(
        name,
        {
            "name": name,
            "prompt_source": source.source,
            "working_path": str(root),
            "session_id": session_id,
            "model": model,
            "iterations": iterations,
            "screen_name": multiplexer.full_name(name),
        },
    )

    info(console, f"Session '{name}' started.")
    bullet_list(
        console,
        [
            f"Screen: {multiplexer.full_name(name)}",
            f"Working dir: {root}",
            f"Iterations: {iterations}",
            f"Session ID: {session_id}",
            f"Log: {log_path}",
        ],
    )

    if args.attach:
        info(console, "Attaching to screen session...")
        return subprocess.call(multiplexer.attach_command(name))
    return 0


# ---------------------------------------------------------------------------
# status / attach / kill
# ---------------------------------------------------------------------------


def _status_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ralph status", description="List tracked sessions")
    p.add_argument("--clean", action="store_true", help="Remove dead entries")
    p.add_argument("--json", action="store_true", help="Output as JSON")
    return p


def _age(started_at: object) -> str:
    if not isinstance(started_at, str):
        return "-"
    started = parse_iso(started_at)
    if started is None:
        return "-"
    return format_duration(max(0, int((utc_now() - started).total_seconds())))


def cmd_status(argv: list[str], console: Console, err_console: Console) -> int:
    args = _status_parser().parse_args(argv)
    root = _project_root()
    cfg = load_config(root)
    multiplexer = _make_multiplexer(cfg)
    tracker = _make_tracker(cfg, multiplexer)

    if args.clean:
        cleaned = tracker.clean()
        if cleaned:
            info(console, f"Cleaned {len(cleaned)} dead entries: " + ", ".join(cleaned))
        else:
            info(console, "No dead entries found.")

    agents = tracker.all()
    if not agents:
        info(console, "No sessions tracked.")
        return 0

    if args.json:
        console.print_json(json.dumps(agents))
        return 0

    rows = []
    for key, agent in agents.items():
        agent_name = agent.get("name") if isinstance(agent.get("name"), str) else key
        running = multiplexer.is_alive(agent_name)
        session_id = str(agent.get("session_id") or "-")
        rows.append(
            [
                key,
                Text("running", style="green") if running else Text("stopped", style="red"),
                agent.get("working_path") or "-",
                session_id[:8],
                agent.get("model") or "default",
                _age(agent.get("started_at")),
                agent.get("screen_name") or "-",
            ]
        )
    render_table(
        console,
        headers=("Name", "Status", "Path", "Session", "Model", "Duration", "Screen"),
        rows=rows,
    )
    return 0


def _pick_session(
    candidates: list[str], *, what: str, console: Console, err_console: Console
) -> str | None:
    if not candidates:
        error(err_console, f"No {what} sessions found.")
        return None
    if len(candidates) == 1:
        info(console, f"Auto-selecting '{candidates[0]}'.")
        return candidates[0]
    error(err_console, "Multiple sessions found, pass one of: " + ", ".join(candidates))
    return None


def cmd_attach(argv: list[str], console: Console, err_console: Console) -> int:
    p = argparse.ArgumentParser(prog="ralph attach", description="Attach to a running session")
    p.add_argument("session", nargs="?", default=None)
    args = p.parse_args(argv)

    cfg = load_config(_project_root())
    multiplexer = _make_multiplexer(cfg)
    tracker = _make_tracker(cfg, multiplexer)

    session = args.session
    if not session:
        session = _pick_session(
            list(tracker.running()), what="running", console=console, err_console=err_console
        )
        if session is None:
            return 1

    if not multiplexer.is_alive(session):
        error(err_console, f"Session '{session}' is not running.")
        return 1
    return subprocess.call(multiplexer.attach_command(session))


def cmd_kill(argv: list[str], console: Console, err_console: Console) -> int:
    p = argparse.ArgumentParser(prog="ralph kill", description="Kill a session")
    p.add_argument("session", nargs="?", default=None)
    p.add_argument("--all", action="store_true", help="Kill all sessions")
    p.add_argument("--force", action="store_true", help="Skip confirmation")
    args = p.parse_args(argv)

    cfg = load_config(_project_root())
    multiplexer = _make_multiplexer(cfg)
    tracker = _make_tracker(cfg, multiplexer)
    agents = tracker.all()

    if args.all:
        if not agents:
            info(console, "No sessions to kill.")
            return 0
        if not args.force and not Confirm.ask(f"Kill all {len(agents)} sessions?", console=console):
            info(console, "Cancelled.")
            return 0
        for key, agent in agents.items():
            agent_name = agent.get("name") if isinstance(agent.get("name"), str) else key
            multiplexer.terminate(agent_name)
            tracker.untrack(key)
            info(console, f"Killed '{key}'.")
        return 0

    session = args.session
    if not session:
        session = _pick_session(
            list(agents), what="tracked", console=console, err_console=err_console
        )
        if session is None:
            return 1

    if not args.force and not Confirm.ask(f"Kill session '{session}'?", console=console):
        info(console, "Cancelled.")
        return 0

    multiplexer.terminate(session)
    tracker.untrack(session)
    info(console, f"Session '{session}' killed.")
    return 0


# ---------------------------------------------------------------------------
# logs / init
# ---------------------------------------------------------------------------


def _log_files(session_dir: Path) -> list[Path]:
    return sorted(session_dir.glob("*.log"), key=lambda p: p.stat().st_mtime, reverse=True)


def cmd_logs(argv: list[str], console: Console, err_console: Console) -> int:
    p = argparse.ArgumentParser(prog="ralph logs", description="View session logs")
    p.add_argument("session", nargs="?", default=None)
    p.add_argument("--lines", type=int, default=50)
    p.add_argument("--all", action="store_true", help="List all log files")
    p.add_argument("--tail", action="store_true", help="Follow the most recent log file")
    args = p.parse_args(argv)

    cfg = load_config(_project_root())
    log_dir = cfg.log_dir
    if not log_dir.is_dir():
        warn(console, "No log directory found.")
        return 0

    if not args.session:
        dirs = sorted(
            (d for d in log_dir.iterdir() if d.is_dir()),
            key=lambda d: d.stat().st_mtime,
            reverse=True,
        )
        if not dirs:
            warn(console, "No session logs found.")
            return 0
        render_table(
            console,
            headers=("Session", "Log files"),
            rows=[[d.name, len(_log_files(d))] for d in dirs],
        )
        return 0

    session_dir = log_dir / args.session
    if not session_dir.is_dir():
        error(err_console, f"No logs found for session '{args.session}'.")
        return 1

    files = _log_files(session_dir)
    if not files:
        warn(console, f"No log files found for session '{args.session}'.")
        return 0

    if args.all:
        rows = []
        for f in files:
            stat = f.stat()
            modified = datetime.fromtimestamp(stat.st_mtime).strftime("%Y-%m-%d %H:%M:%S")
            rows.append([f.name, format_size(stat.st_size), modified])
        render_table(console, headers=("File", "Size", "Modified"), rows=rows)
        return 0

    latest = files[0]
    if args.tail:
        info(console, f"Tailing: {latest}")
        return subprocess.call(["tail", "-f", str(latest)])

    info(console, f"Last {args.lines} lines of: {latest}")
    lines = latest.read_text(encoding="utf-8", errors="replace").splitlines()
    for line in (lines[-args.lines:] if args.lines > 0 else []):
        console.print(line, markup=False, highlight=False)
    return 0


REQUIRED_SETTINGS = {
    "permissions": {"defaultMode": "acceptEdits"},
    "sandbox": {"enabled": True, "autoAllowBashIfSandboxed": True},
}


def _merge(base: dict, extra: dict) -> dict:
    merged = dict(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def cmd_init(argv: list[str], console: Console, err_console: Console) -> int:
    argparse.ArgumentParser(
        prog="ralph init", description="Write sandbox settings to .claude/settings.json"
    ).parse_args(argv)
    settings_path = _project_root() / ".claude" / "settings.json"

    if settings_path.exists():
        try:
            existing = json.loads(settings_path.read_text(encoding="utf-8"))
        except ValueError:
            existing = None
        if not isinstance(existing, dict):
            error(err_console, "Existing .claude/settings.json is not valid JSON.")
            return 1
        merged = _merge(existing, REQUIRED_SETTINGS)
        verb = "Updated"
    else:
        settings_path.parent.mkdir(parents=True, exist_ok=True)
        merged = REQUIRED_SETTINGS
        verb = "Created"

    settings_path.write_text(json.dumps(merged, indent=4) + "\n", encoding="utf-8")
    info(console, f"{verb} .claude/settings.json with ralph sandbox config.")
    return 0


# ---------------------------------------------------------------------------
# dispatch
# ---------------------------------------------------------------------------

COMMANDS = {
    "loop": (cmd_loop, "Run the agent loop in the foreground"),
    "start": (cmd_start, "Start a loop session in a detached screen"),
    "status": (cmd_status, "List tracked sessions"),
    "attach": (cmd_attach, "Attach to a running session"),
    "kill": (cmd_kill, "Kill a session"),
    "logs": (cmd_logs, "View session logs"),
    "init": (cmd_init, "Write sandbox settings for the agent"),
}


def _print_help(console: Console) -> None:
    header = Text()
    header.append("ralph", style="bold")
    header.append(f" {__version__}", style="dim")
    header.append(" - drive a coding agent until it reports completion")
    console.print(header)
    console.print()

    cmds = Table(show_header=False, expand=False, show_edge=False, pad_edge=False, box=None)
    cmds.add_column("Command", style="bold cyan")
    cmds.add_column("Description")
    for name, (_, summary) in COMMANDS.items():
        cmds.add_row(f"ralph {name}", summary)
    console.print(cmds)


def main(argv: list[str] | None = None) -> None:
    raw = argv if argv is not None else sys.argv[1:]
    console = Console()
    err_console = Console(stderr=True)

    if "--version" in raw[:1]:
        console.print(Text(f"ralph {__version__}", style="bold"))
        sys.exit(0)
    if not raw or raw[0] in ("-h", "--help"):
        _print_help(console)
        sys.exit(0)

    entry = COMMANDS.get(raw[0])
    if entry is None:
        error(err_console, f"Unknown command: {raw[0]}")
        _print_help(err_console)
        sys.exit(1)

    handler, _ = entry
    try:
        code = handler(raw[1:], console, err_console)
    except ConfigValidationError as exc:
        error(err_console, f"Invalid configuration: {exc}")
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
