"""Tests for agent argv construction."""

from __future__ import annotations

from agent_iterate.agents import (
    STREAM_JSON_ARGS,
    AgentBuilder,
    GenericAgentBuilder,
    build_agent_invocation,
    get_agent_builder,
    list_known_agents,
    register_agent_builder,
)
from agent_iterate.config import SKIP_PERMISSIONS_FLAG, AgentConfig, OutputMode

import pytest


def test_claude_buffered_invocation() -> None:
    cfg = AgentConfig(skip_permissions=False)

    argv, stdin = build_agent_invocation(cfg, "do it", "be brief")

    assert argv == ["claude", "--print", "--append-system-prompt", "be brief", "do it"]
    assert stdin is None


def test_claude_streaming_adds_stream_json() -> None:
    cfg = AgentConfig(skip_permissions=False, output_mode=OutputMode.STREAMING)

    argv, _ = build_agent_invocation(cfg, "go")

    assert argv[-1] == "go"
    for arg in STREAM_JSON_ARGS:
        assert arg in argv
    assert "--append-system-prompt" not in argv


def test_claude_does_not_duplicate_print_flag() -> None:
    cfg = AgentConfig(args=["-p"], skip_permissions=False)

    argv, _ = build_agent_invocation(cfg, "go")

    assert "--print" not in argv
    assert argv.count("-p") == 1


def test_skip_permissions_flag_added_once() -> None:
    cfg = AgentConfig(args=[SKIP_PERMISSIONS_FLAG], skip_permissions=True)

    argv, _ = build_agent_invocation(cfg, "go")

    assert argv.count(SKIP_PERMISSIONS_FLAG) == 1


def test_prompt_is_a_single_argument() -> None:
    prompt = "line one\nline two; rm -rf / && echo 'quoted'"
    argv, _ = build_agent_invocation(AgentConfig(skip_permissions=False), prompt)
    assert argv[-1] == prompt


def test_generic_placeholders() -> None:
    cfg = AgentConfig(
        kind="generic",
        command="agent",
        args=["--sys", "{system_prompt}", "--ask", "{prompt}"],
        skip_permissions=False,
    )

    argv, stdin = build_agent_invocation(cfg, "task", "system")

    assert argv == ["agent", "--sys", "system", "--ask", "task"]
    assert stdin is None


def test_generic_stdin_dash() -> None:
    cfg = AgentConfig(kind="generic", command="agent", args=["-"], skip_permissions=False)

    argv, stdin = build_agent_invocation(cfg, "task", "system")

    assert argv == ["agent", "-"]
    assert stdin == "system\n\ntask"


def test_generic_appends_prompt() -> None:
    cfg = AgentConfig(kind="generic", command="agent", args=["run"], skip_permissions=False)

    argv, stdin = build_agent_invocation(cfg, "task")

    assert argv == ["agent", "run", "task"]
    assert stdin is None


def test_unknown_kind_gets_generic_builder() -> None:
    builder = get_agent_builder("Aider")
    assert isinstance(builder, GenericAgentBuilder)
    assert builder.name == "aider"


def test_empty_kind_rejected() -> None:
    with pytest.raises(ValueError):
        get_agent_builder("  ")


def test_register_custom_builder() -> None:
    class EchoBuilder(AgentBuilder):
        def build_argv(self, prompt, system_prompt, config, output_mode):
            return ["echo", prompt], None

        @property
        def name(self) -> str:
            return "echo"

    register_agent_builder("echo-test", EchoBuilder())

    assert "echo-test" in list_known_agents()
    argv, _ = build_agent_invocation(AgentConfig(kind="echo-test"), "hi")
    assert argv == ["echo", "hi"]
