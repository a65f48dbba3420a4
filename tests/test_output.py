"""Unit tests for console verbosity control."""

from __future__ import annotations

import pytest

from agent_iterate.output import (
    OutputConfig,
    get_output_config,
    print_output,
    set_output_config,
)


@pytest.fixture(autouse=True)
def reset_output_config(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("AGENT_ITERATE_VERBOSITY", raising=False)
    set_output_config(None)
    yield
    set_output_config(None)


def test_env_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_ITERATE_VERBOSITY", "quiet")
    assert get_output_config().verbosity == "quiet"

    monkeypatch.setenv("AGENT_ITERATE_VERBOSITY", "shouty")
    assert get_output_config().verbosity == "normal"


@pytest.mark.parametrize(
    "verbosity,printed",
    [
        ("quiet", ["quiet"]),
        ("normal", ["quiet", "normal"]),
        ("verbose", ["quiet", "normal", "verbose"]),
    ],
)
def test_levels(verbosity: str, printed, capsys) -> None:
    set_output_config(OutputConfig(verbosity=verbosity))

    for level in ("quiet", "normal", "verbose"):
        print_output(level, level=level)

    assert capsys.readouterr().out.split() == printed


def test_errors_always_go_to_stderr(capsys) -> None:
    set_output_config(OutputConfig(verbosity="quiet"))

    print_output("bad thing", level="error")

    captured = capsys.readouterr()
    assert captured.out == ""
    assert "bad thing" in captured.err
