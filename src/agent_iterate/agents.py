"""Argument construction for agent CLIs.

Each agent kind has a builder that turns the configured command/args plus a
prompt into an argv list and optional stdin text. The client never invokes a
shell, so prompts are passed as single argv elements (or over stdin).

Usage:
    >>> from agent_iterate.agents import build_agent_invocation
    >>> argv, stdin = build_agent_invocation(cfg.agent, prompt, system_prompt)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from .config import AgentConfig, OutputMode

STREAM_JSON_ARGS = ["--output-format", "stream-json", "--verbose"]


class AgentBuilder(ABC):
    """Builds the command line for one kind of agent CLI."""

    @abstractmethod
    def build_argv(
        self,
        prompt: str,
        system_prompt: Optional[str],
        config: AgentConfig,
        output_mode: OutputMode,
    ) -> Tuple[List[str], Optional[str]]:
        """Return ``(argv, stdin_text)``; stdin_text is None when the prompt is in argv."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the agent kind."""


class ClaudeAgentBuilder(AgentBuilder):
    """Claude Code in headless print mode.

    ``claude [args] --print [--output-format stream-json --verbose]
    [--append-system-prompt TEXT] PROMPT``
    """

    def build_argv(
        self,
        prompt: str,
        system_prompt: Optional[str],
        config: AgentConfig,
        output_mode: OutputMode,
    ) -> Tuple[List[str], Optional[str]]:
        argv = config.argv_prefix()

        if "--print" not in argv and "-p" not in argv:
            argv.append("--print")

        if output_mode is OutputMode.STREAMING and "stream-json" not in argv:
            argv.extend(STREAM_JSON_ARGS)

        if system_prompt:
            argv.extend(["--append-system-prompt", system_prompt])

        argv.append(prompt)
        return argv, None

    @property
    def name(self) -> str:
        return "claude"


class GenericAgentBuilder(AgentBuilder):
    """Any other CLI.

    ``{prompt}`` and ``{system_prompt}`` placeholders in args are substituted.
    A bare ``-`` sends the prompt over stdin. Otherwise the prompt is appended
    as the final argument.
    """

    def __init__(self, name: str = "generic"):
        self._name = name.lower().strip()

    def build_argv(
        self,
        prompt: str,
        system_prompt: Optional[str],
        config: AgentConfig,
        output_mode: OutputMode,
    ) -> Tuple[List[str], Optional[str]]:
        argv = config.argv_prefix()

        if "{system_prompt}" in argv:
            argv = [(system_prompt or "") if x == "{system_prompt}" else x for x in argv]

        if "{prompt}" in argv:
            argv = [prompt if x == "{prompt}" else x for x in argv]
            return argv, None

        if "-" in argv[1:]:
            stdin = prompt if not system_prompt else f"{system_prompt}\n\n{prompt}"
            return argv, stdin

        argv.append(prompt)
        return argv, None

    @property
    def name(self) -> str:
        return self._name


_AGENT_BUILDERS: dict[str, AgentBuilder] = {
    "claude": ClaudeAgentBuilder(),
    "generic": GenericAgentBuilder(),
}


def register_agent_builder(name: str, builder: AgentBuilder) -> None:
    """Register a builder for a custom agent kind."""
    _AGENT_BUILDERS[name.lower().strip()] = builder
    logging.getLogger(__name__).info("Registered agent builder: %s", name)


def get_agent_builder(kind: str) -> AgentBuilder:
    """Return the builder for ``kind``; unknown kinds get a generic builder.

    Raises:
        ValueError: If the kind is empty
    """
    kind_l = kind.lower().strip()
    if not kind_l:
        raise ValueError("Agent kind cannot be empty")

    builder = _AGENT_BUILDERS.get(kind_l)
    if builder is None:
        return GenericAgentBuilder(kind_l)
    return builder


def build_agent_invocation(
    config: AgentConfig,
    prompt: str,
    system_prompt: Optional[str] = None,
    output_mode: Optional[OutputMode] = None,
) -> Tuple[List[str], Optional[str]]:
    """Build ``(argv, stdin_text)`` for one invocation."""
    builder = get_agent_builder(config.kind)
    return builder.build_argv(
        prompt, system_prompt, config, output_mode or config.output_mode
    )


def list_known_agents() -> List[str]:
    return sorted(_AGENT_BUILDERS.keys())
