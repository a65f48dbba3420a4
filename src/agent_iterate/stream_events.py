"""Structured agent output (newline-delimited JSON).

In streaming mode the agent prints one JSON object per line. Each line maps
to zero or more events from a closed set:

- ``ToolInvocation``: the assistant called a tool
- ``ToolResult``: a tool returned (possibly an error)
- ``AssistantText``: the assistant said something
- ``FinalResult``: the terminal record with the agent's final answer
- ``Unparseable``: the line was not a JSON object

Valid records of other types (``system`` init records and the like) produce
no events.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass(frozen=True)
class ToolInvocation:
    name: str
    input: Dict[str, Any] = field(default_factory=dict)
    tool_use_id: Optional[str] = None


@dataclass(frozen=True)
class ToolResult:
    content: str
    is_error: bool = False
    tool_use_id: Optional[str] = None


@dataclass(frozen=True)
class AssistantText:
    text: str


@dataclass(frozen=True)
class FinalResult:
    text: str
    is_error: bool = False
    num_turns: Optional[int] = None
    total_cost_usd: Optional[float] = None


@dataclass(frozen=True)
class Unparseable:
    line: str
    reason: str


StreamEvent = Union[ToolInvocation, ToolResult, AssistantText, FinalResult, Unparseable]

_ERROR_MARKERS = ("error", "failed", "tool_use_error", "not found")
_MAX_RESULT_LINES = 20


def _content_blocks(record: Dict[str, Any]) -> List[Dict[str, Any]]:
    message = record.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [c for c in content if isinstance(c, dict)]


def _result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text":
                return str(item.get("text", ""))
    return json.dumps(content)


def classify_record(record: Dict[str, Any]) -> List[StreamEvent]:
    """Map one decoded record to its events."""
    kind = record.get("type")
    events: List[StreamEvent] = []

    if kind == "assistant":
        for block in _content_blocks(record):
            block_type = block.get("type")
            if block_type == "tool_use":
                tool_input = block.get("input")
                events.append(
                    ToolInvocation(
                        name=str(block.get("name") or "Unknown"),
                        input=tool_input if isinstance(tool_input, dict) else {},
                        tool_use_id=block.get("id"),
                    )
                )
            elif block_type == "text":
                text = str(block.get("text") or "").strip()
                if text:
                    events.append(AssistantText(text=text))
    elif kind == "user":
        for block in _content_blocks(record):
            if block.get("type") == "tool_result":
                events.append(
                    ToolResult(
                        content=_result_text(block.get("content")),
                        is_error=bool(block.get("is_error", False)),
                        tool_use_id=block.get("tool_use_id"),
                    )
                )
    elif kind == "result":
        result = record.get("result")
        if isinstance(result, str):
            cost = record.get("total_cost_usd")
            turns = record.get("num_turns")
            events.append(
                FinalResult(
                    text=result,
                    is_error=bool(record.get("is_error", False)),
                    num_turns=turns if isinstance(turns, int) else None,
                    total_cost_usd=float(cost) if isinstance(cost, (int, float)) else None,
                )
            )

    return events


def parse_stream_line(line: str) -> List[StreamEvent]:
    """Parse one line of agent stdout. Blank lines yield nothing."""
    text = line.strip()
    if not text:
        return []
    try:
        record = json.loads(text)
    except json.JSONDecodeError as e:
        return [Unparseable(line=text, reason=f"invalid JSON: {e.msg}")]
    except (ValueError, RecursionError) as e:
        return [Unparseable(line=text, reason=f"invalid JSON: {e}")]
    if not isinstance(record, dict):
        return [Unparseable(line=text, reason="record is not an object")]
    return classify_record(record)


# -------------------------
# Human-readable rendering
# -------------------------


def _indent_block(label: str, value: str) -> List[str]:
    lines = value.split("\n")
    if len(lines) == 1:
        return [f"   {label}: {value}"]
    return [f"   {label}:"] + [f"     {line}" for line in lines]


def format_tool_invocation(event: ToolInvocation) -> str:
    tool_input = event.input
    parts = [f"🔧 {event.name} tool"]

    if tool_input.get("file_path"):
        parts.append(f"   File: {tool_input['file_path']}")
    if tool_input.get("command"):
        parts.extend(_indent_block("Command", str(tool_input["command"])))
    if tool_input.get("pattern"):
        parts.append(f"   Pattern: {tool_input['pattern']}")
    if tool_input.get("path") and not tool_input.get("file_path"):
        parts.append(f"   Path: {tool_input['path']}")

    if event.name == "Edit":
        if tool_input.get("old_string"):
            parts.extend(_indent_block("Replacing", str(tool_input["old_string"])))
        if tool_input.get("new_string"):
            parts.extend(_indent_block("With", str(tool_input["new_string"])))
        if tool_input.get("replace_all"):
            parts.append("   Mode: Replace all occurrences")
    elif event.name == "Read":
        offset = tool_input.get("offset")
        limit = tool_input.get("limit")
        if offset is not None or limit is not None:
            start = offset or 0
            end = start + limit if limit else "end"
            parts.append(f"   Range: Lines {start}-{end}")
    elif event.name == "Write" and isinstance(tool_input.get("content"), str):
        content = tool_input["content"]
        kb = len(content.encode("utf-8")) / 1024
        parts.append(f"   Content size: {kb:.1f} KB ({len(content.splitlines())} lines)")

    return "\n".join(parts)


def looks_like_error(event: ToolResult) -> bool:
    if event.is_error:
        return True
    lowered = event.content.lower()
    return any(marker in lowered for marker in _ERROR_MARKERS)


def format_tool_result(event: ToolResult) -> str:
    # errors are never truncated
    if looks_like_error(event):
        return f"❌ {event.content.strip()}"

    lines = event.content.strip().split("\n")
    if len(lines) <= 1:
        return f"✓ {lines[0] if lines else ''}".rstrip()

    parts = [f"✓ Output ({len(lines)} lines):"]
    parts.extend(f"     {line}" for line in lines[:_MAX_RESULT_LINES])
    if len(lines) > _MAX_RESULT_LINES:
        parts.append(f"   ... ({len(lines) - _MAX_RESULT_LINES} more lines)")
    return "\n".join(parts)


_WS_RE = re.compile(r"\s+")


def format_event(event: StreamEvent) -> Optional[str]:
    """Render an event for the console; None for events not worth showing."""
    if isinstance(event, ToolInvocation):
        return format_tool_invocation(event)
    if isinstance(event, ToolResult):
        return format_tool_result(event)
    if isinstance(event, AssistantText):
        return f"📝 {event.text}"
    if isinstance(event, FinalResult):
        summary = _WS_RE.sub(" ", event.text).strip()
        if len(summary) > 200:
            summary = summary[:200] + "…"
        prefix = "❌ Result" if event.is_error else "🏁 Result"
        return f"{prefix}: {summary}" if summary else None
    if isinstance(event, Unparseable):
        return None
    raise TypeError(f"unknown stream event: {event!r}")
