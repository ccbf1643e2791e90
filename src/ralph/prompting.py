from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path

from .util import CommandError, run_capture

NAME_RE = re.compile(r"[a-zA-Z0-9-]+")


class PromptError(ValueError):
    pass


@dataclass(frozen=True)
class PromptSource:
    content: str
    source: str
    suggested_name: str | None = None
    file: Path | None = None


def validate_name(name: str) -> str:
    if not NAME_RE.fullmatch(name):
        raise PromptError("Name must be alphanumeric with hyphens only.")
    return name


def resolve_prompt_text(prompt_arg: str | None) -> str:
    """Read a prompt from a file path, or treat the argument as inline text."""
    if not prompt_arg:
        raise PromptError("--prompt is required")
    path = Path(prompt_arg)
    try:
        if path.is_file():
            return path.read_text(encoding="utf-8").strip()
    except OSError:
        pass
    return prompt_arg


def issue_prompt(number: str, title: str, body: str) -> str:
    return (
        f"# GitHub Issue #{number}: {title}\n\n{body}"
        "\n\n---\n\n"
        "After completing each checklist item, update the GitHub issue to check it off."
        f" Fetch the current body with `gh issue view {number} --json body -q .body`,"
        f" then `gh issue edit {number} --body '...'` with the checkbox toggled"
        " from `- [ ]` to `- [x]`."
    )


def fetch_issue_prompt(number: str, *, cwd: Path | None = None) -> str:
    if not number.isdigit():
        raise PromptError(f"Issue number must be numeric, got {number!r}")
    try:
        out = run_capture(["gh", "issue", "view", number, "--json", "title,body"], cwd=cwd)
    except CommandError as exc:
        raise PromptError(
            f"Failed to fetch issue #{number}: {exc.stderr.strip()}"
        ) from exc
    except OSError as exc:
        raise PromptError(f"Failed to fetch issue #{number}: {exc}") from exc

    try:
        data = json.loads(out)
    except ValueError:
        data = None
    if (
        not isinstance(data, dict)
        or not isinstance(data.get("title"), str)
        or not isinstance(data.get("body"), str)
    ):
        raise PromptError(f"Invalid issue data for #{number}.")
    return issue_prompt(number, data["title"], data["body"])


def resolve_prompt_source(
    *,
    issue: str | None,
    prompt: str | None,
    cwd: Path | None = None,
) -> PromptSource:
    if issue:
        return PromptSource(
            content=fetch_issue_prompt(issue, cwd=cwd),
            source=f"issue#{issue}",
            suggested_name=issue,
        )
    if prompt:
        path = Path(prompt)
        try:
            is_file = path.is_file()
        except OSError:
            is_file = False
        if is_file:
            return PromptSource(content="", source=prompt, file=path)
        return PromptSource(content=prompt, source="prompt")
    raise PromptError("No prompt given: pass --issue or --prompt.")


def write_prompt_file(log_dir: Path, name: str, content: str) -> Path:
    path = log_dir / f"prompt-{name}.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path
