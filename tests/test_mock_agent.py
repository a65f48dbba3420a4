"""Tests for the bundled mock agent used by --dry-run."""

from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path

from agent_iterate.mock_agent import advance_status, find_status_path, main
from agent_iterate.prompts import build_iteration_prompt
from agent_iterate.config import Mode


def test_finds_status_path_in_generated_prompt(tmp_path: Path) -> None:
    prompt = build_iteration_prompt("Count.", 1, Mode.LOOP, workspace_path=tmp_path)

    assert find_status_path(prompt) == tmp_path / ".status.json"


def test_advance_status_counts_up_to_completion(tmp_path: Path) -> None:
    path = tmp_path / ".status.json"

    first = advance_status(path, total=2)
    second = advance_status(path, total=2)
    third = advance_status(path, total=2)

    assert first["progress"] == {"completed": 1, "total": 2}
    assert first["complete"] is False
    assert second["complete"] is True
    assert third["progress"]["completed"] == 2


def test_main_prints_summary(tmp_path: Path, capsys) -> None:
    prompt = build_iteration_prompt("Count.", 1, Mode.LOOP, workspace_path=tmp_path)

    assert main(["--print", "--dangerously-skip-permissions", prompt]) == 0

    assert "item 1 of 3" in capsys.readouterr().out
    data = json.loads((tmp_path / ".status.json").read_text(encoding="utf-8"))
    assert data["progress"] == {"completed": 1, "total": 3}


def test_stream_json_output(tmp_path: Path, capsys) -> None:
    prompt = build_iteration_prompt("Count.", 1, Mode.LOOP, workspace_path=tmp_path)

    main(["--print", "--output-format", "stream-json", "--verbose", prompt])

    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert lines[-1]["type"] == "result"


def test_runs_as_module() -> None:
    proc = subprocess.run(
        [sys.executable, "-m", "agent_iterate.mock_agent", "--version"],
        capture_output=True,
        text=True,
    )

    assert proc.returncode == 0
    assert proc.stdout.startswith("mock-agent")
