"""Decode Claude stream-json lines into a closed set of agent events.

Every line maps to exactly one of ``AssistantMessage``, ``ResultEvent``,
``OtherEvent`` or ``Unparseable``. ``parse_line`` never raises.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Union


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    name: str
    input: Any = None


ContentBlock = Union[TextBlock, ToolUseBlock]


@dataclass(frozen=True)
class AssistantMessage:
    blocks: tuple[ContentBlock, ...] = ()


@dataclass(frozen=True)
class ResultEvent:
    result: str | None = None
    cost_usd: float | None = None
    duration_ms: float | None = None


@dataclass(frozen=True)
class OtherEvent:
    type: str
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class Unparseable:
    line: str


AgentEvent = Union[AssistantMessage, ResultEvent, OtherEvent, Unparseable]


def _as_number(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _content_blocks(message: object) -> tuple[ContentBlock, ...]:
    if not isinstance(message, dict):
        return ()
    content = message.get("content")
    if not isinstance(content, list):
        return ()

    blocks: list[ContentBlock] = []
    for block in content:
        if not isinstance(block, dict):
            continue
        btype = block.get("type")
        if btype == "text":
            text = block.get("text")
            if isinstance(text, str):
                blocks.append(TextBlock(text))
        elif btype == "tool_use":
            name = block.get("name")
            blocks.append(
                ToolUseBlock(
                    name=name if isinstance(name, str) and name else "?",
                    input=block.get("input"),
                )
            )
    return tuple(blocks)


def decode_event(event: dict[str, Any]) -> AgentEvent:
    etype = event.get("type")
    if etype == "assistant":
        return AssistantMessage(blocks=_content_blocks(event.get("message")))
    if etype == "result":
        result = event.get("result")
        cost = event.get("cost_usd")
        if cost is None:
            cost = event.get("total_cost_usd")
        return ResultEvent(
            result=result if isinstance(result, str) else None,
            cost_usd=_as_number(cost),
            duration_ms=_as_number(event.get("duration_ms")),
        )
    return OtherEvent(type=str(etype) if etype is not None else "", raw=event)


def parse_line(line: str | bytes) -> AgentEvent:
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    raw = line.strip()
    try:
        event = json.loads(raw)
    except (ValueError, RecursionError):
        return Unparseable(line)
    if not isinstance(event, dict):
        return Unparseable(line)
    return decode_event(event)


def extract_text(event: AgentEvent) -> str:
    """Text contributed by one event to the completion-marker buffer."""
    if isinstance(event, AssistantMessage):
        return "".join(b.text for b in event.blocks if isinstance(b, TextBlock))
    if isinstance(event, ResultEvent) and event.result:
        return event.result
    return ""


def accumulate_text(events: Iterable[AgentEvent]) -> str:
    return "".join(extract_text(event) for event in events)
