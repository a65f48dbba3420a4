"""Tests for prompt construction."""

from __future__ import annotations

from pathlib import Path

import pytest

from agent_iterate.config import Mode
from agent_iterate.prompts import (
    IterativeModeStrategy,
    LoopModeStrategy,
    build_iteration_prompt,
    build_system_prompt,
    get_strategy,
)


def test_strategy_lookup() -> None:
    assert isinstance(get_strategy(Mode.LOOP), LoopModeStrategy)
    assert isinstance(get_strategy(Mode.ITERATIVE), IterativeModeStrategy)


def test_system_prompt_mentions_paths(tmp_path: Path) -> None:
    ws = tmp_path / "ws"

    text = build_system_prompt(Mode.LOOP, ws, project_root=tmp_path)

    assert str(ws) in text
    assert f"Project root: {tmp_path}" in text
    assert "small, well-defined batch" in text


def test_iteration_prompt_includes_number_and_instructions() -> None:
    text = build_iteration_prompt("  Count to ten.  ", 4, Mode.LOOP)

    assert text.startswith("# Iteration 4")
    assert "Count to ten." in text
    assert "Status tracking" not in text


def test_status_instructions_are_appended(tmp_path: Path) -> None:
    text = build_iteration_prompt("Do it", 1, Mode.LOOP, workspace_path=tmp_path)

    prompt, status = text.split("\n\n---\n\n")
    assert "Do it" in prompt
    assert f"write {tmp_path / '.status.json'} as JSON" in status
    assert '"progress"' in status


def test_iterative_status_instructions_mention_worked(tmp_path: Path) -> None:
    text = build_iteration_prompt("Do it", 2, Mode.ITERATIVE, workspace_path=tmp_path)

    assert '"worked"' in text
    assert "as much as possible" in text


def test_prompts_are_pure(tmp_path: Path) -> None:
    first = build_iteration_prompt("x", 3, Mode.ITERATIVE, tmp_path)
    second = build_iteration_prompt("x", 3, Mode.ITERATIVE, tmp_path)
    assert first == second


def test_unknown_mode() -> None:
    with pytest.raises(ValueError):
        get_strategy("sideways")  # type: ignore[arg-type]
