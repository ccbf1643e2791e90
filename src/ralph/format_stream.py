"""Render decoded agent events onto a rich console."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import IO, Any

from rich.console import Console
from rich.text import Text

from .events import (
    AgentEvent,
    AssistantMessage,
    ResultEvent,
    TextBlock,
    ToolUseBlock,
    Unparseable,
)

TOOL_PREVIEW_MAX = 200
RESULT_PREVIEW_MAX = 500


def truncate(text: str, max_len: int) -> str:
    if not text:
        return ""
    if len(text) <= max_len:
        return text
    return text[:max_len] + "..."


def _tool_preview(data: Any) -> str:
    try:
        encoded = json.dumps(data, ensure_ascii=False)
    except (TypeError, ValueError):
        encoded = str(data)
    return truncate(encoded, TOOL_PREVIEW_MAX)


def render_event(event: AgentEvent) -> list[Text]:
    """Project one event to display lines. Pure; empty for silent kinds."""
    lines: list[Text] = []

    if isinstance(event, AssistantMessage):
        for block in event.blocks:
            if isinstance(block, TextBlock):
                line = Text("Claude:", style="cyan")
                line.append(f" {block.text}")
                lines.append(line)
            elif isinstance(block, ToolUseBlock):
                line = Text("Tool:", style="magenta")
                line.append(f" {block.name}({_tool_preview(block.input)})")
                lines.append(line)
        return lines

    if isinstance(event, ResultEvent):
        if event.result:
            line = Text("Result:", style="green")
            line.append(f" {truncate(event.result, RESULT_PREVIEW_MAX)}")
            lines.append(line)
        elif event.cost_usd is not None:
            duration = (
                f"{event.duration_ms:.0f}ms" if event.duration_ms is not None else "?"
            )
            lines.append(
                Text(f"Cost: ${event.cost_usd:.4f} | Duration: {duration}", style="dim")
            )
        return lines

    if isinstance(event, Unparseable) and event.line.strip():
        lines.append(Text(event.line.rstrip("\n"), style="dim"))

    return lines


@dataclass
class StreamFormatter:
    stdout: IO[str]
    stderr: IO[str]

    console: Console = field(init=False)
    err_console: Console = field(init=False)

    def __post_init__(self) -> None:
        self.console = Console(file=self.stdout, highlight=False, markup=False)
        self.err_console = Console(
            file=self.stderr, highlight=False, markup=False, stderr=True
        )

    def show(self, event: AgentEvent) -> None:
        for line in render_event(event):
            self.console.print(line)

    def show_stderr(self, text: str) -> None:
        self.err_console.print(Text(text.rstrip("\n"), style="dim"))
