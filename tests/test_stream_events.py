"""Tests for newline-delimited JSON agent output parsing and rendering."""

from __future__ import annotations

import json

import pytest

from agent_iterate.stream_events import (
    AssistantText,
    FinalResult,
    ToolInvocation,
    ToolResult,
    Unparseable,
    format_event,
    format_tool_invocation,
    format_tool_result,
    looks_like_error,
    parse_stream_line,
)


def _line(record) -> str:
    return json.dumps(record) + "\n"


def test_blank_line_yields_nothing() -> None:
    assert parse_stream_line("   \n") == []


def test_invalid_json_is_unparseable() -> None:
    events = parse_stream_line("not json at all")

    assert len(events) == 1
    assert isinstance(events[0], Unparseable)
    assert events[0].line == "not json at all"
    assert "invalid JSON" in events[0].reason


def test_deeply_nested_line_is_unparseable() -> None:
    events = parse_stream_line("[" * 100_000)

    assert len(events) == 1
    assert isinstance(events[0], Unparseable)
    assert "invalid JSON" in events[0].reason


def test_non_object_is_unparseable() -> None:
    events = parse_stream_line("[1, 2, 3]")
    assert isinstance(events[0], Unparseable)


def test_system_records_yield_nothing() -> None:
    assert parse_stream_line(_line({"type": "system", "subtype": "init"})) == []


def test_assistant_record_with_tool_use_and_text() -> None:
    record = {
        "type": "assistant",
        "message": {
            "content": [
                {"type": "text", "text": "Let me look."},
                {"type": "tool_use", "id": "t1", "name": "Read", "input": {"file_path": "a.py"}},
            ]
        },
    }

    events = parse_stream_line(_line(record))

    assert events == [
        AssistantText(text="Let me look."),
        ToolInvocation(name="Read", input={"file_path": "a.py"}, tool_use_id="t1"),
    ]


def test_user_tool_result() -> None:
    record = {
        "type": "user",
        "message": {
            "content": [
                {"type": "tool_result", "tool_use_id": "t1", "content": "file contents", "is_error": False}
            ]
        },
    }

    (event,) = parse_stream_line(_line(record))

    assert event == ToolResult(content="file contents", is_error=False, tool_use_id="t1")


def test_tool_result_with_list_content() -> None:
    record = {
        "type": "user",
        "message": {
            "content": [
                {"type": "tool_result", "content": [{"type": "text", "text": "listed"}]}
            ]
        },
    }

    (event,) = parse_stream_line(_line(record))

    assert isinstance(event, ToolResult)
    assert event.content == "listed"


def test_result_record() -> None:
    record = {"type": "result", "result": "Done.", "is_error": False, "num_turns": 3, "total_cost_usd": 0.25}

    (event,) = parse_stream_line(_line(record))

    assert event == FinalResult(text="Done.", is_error=False, num_turns=3, total_cost_usd=0.25)


def test_format_edit_invocation() -> None:
    text = format_tool_invocation(
        ToolInvocation(
            name="Edit",
            input={"file_path": "x.py", "old_string": "a", "new_string": "b", "replace_all": True},
        )
    )

    assert "Edit tool" in text
    assert "File: x.py" in text
    assert "Replacing: a" in text
    assert "With: b" in text
    assert "Replace all" in text


def test_format_bash_multiline_command() -> None:
    text = format_tool_invocation(
        ToolInvocation(name="Bash", input={"command": "echo one\necho two"})
    )
    assert "Command:" in text
    assert "     echo two" in text


def test_format_read_range() -> None:
    text = format_tool_invocation(
        ToolInvocation(name="Read", input={"file_path": "f", "offset": 10, "limit": 5})
    )
    assert "Lines 10-15" in text


def test_error_results_are_detected_and_not_truncated() -> None:
    long_error = "\n".join(f"Error line {i}" for i in range(50))
    event = ToolResult(content=long_error)

    assert looks_like_error(event)
    rendered = format_tool_result(event)
    assert rendered.startswith("❌")
    assert "Error line 49" in rendered


def test_long_results_are_truncated() -> None:
    event = ToolResult(content="\n".join(f"row {i}" for i in range(30)))

    rendered = format_tool_result(event)

    assert "30 lines" in rendered
    assert "10 more lines" in rendered
    assert "row 29" not in rendered


def test_format_event_dispatch() -> None:
    assert format_event(AssistantText(text="hi")) == "📝 hi"
    assert format_event(Unparseable(line="x", reason="y")) is None
    assert format_event(FinalResult(text="")) is None
    assert "Result: ok" in format_event(FinalResult(text="ok"))


def test_format_event_rejects_unknown_types() -> None:
    with pytest.raises(TypeError):
        format_event("not an event")  # type: ignore[arg-type]
