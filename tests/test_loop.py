"""Tests for the iteration loop controller.

A scripted in-process client stands in for the agent: each invocation runs
the next step, which typically rewrites the status artifact.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from agent_iterate.cancellation import CancelToken
from agent_iterate.config import Config, EngineConfig, Mode
from agent_iterate.errors import (
    FatalIterationError,
    IterationCancelled,
    ProcessExecutionError,
    ProcessLaunchError,
)
from agent_iterate.events import (
    Completion,
    EventBus,
    EventRecorder,
    IterationComplete,
    IterationError,
    Milestone,
)
from agent_iterate.loop import (
    IterationLoop,
    LoopState,
    RunOutcome,
    RunSession,
    TerminalReason,
    run_workspace,
)
from agent_iterate.status import STATUS_FILENAME
from agent_iterate.workspace import Workspace

Step = Callable[[Path], None]


def write_status(**fields: Any) -> Step:
    def step(ws: Path) -> None:
        (ws / STATUS_FILENAME).write_text(json.dumps(fields), encoding="utf-8")

    return step


def do_nothing(ws: Path) -> None:
    return None


def raise_error(exc: BaseException) -> Step:
    def step(ws: Path) -> None:
        raise exc

    return step


class ScriptedClient:
    """Runs one step per invocation; repeats the last step when the script runs out."""

    def __init__(self, workspace: Path, steps: List[Step], available: bool = True):
        self.workspace = workspace
        self.steps = steps
        self.prompts: List[str] = []
        self.system_prompts: List[Optional[str]] = []
        self.available = available

    def invoke(self, prompt: str, system_prompt=None, output_mode=None, callbacks=None, cancel_token=None, cwd=None):
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        self.prompts.append(prompt)
        self.system_prompts.append(system_prompt)
        index = min(len(self.prompts), len(self.steps)) - 1
        self.steps[index](self.workspace)

    def is_available(self) -> bool:
        return self.available


def make_loop(
    ws: Path,
    steps: List[Step],
    events: Optional[EventBus] = None,
    token: Optional[CancelToken] = None,
    **engine: Any,
) -> IterationLoop:
    engine.setdefault("delay_seconds", 0)
    return IterationLoop(
        ScriptedClient(ws, steps),  # type: ignore[arg-type]
        ws,
        "Count from 1 to 3.",
        EngineConfig(**engine),
        events=events,
        cancel_token=token,
    )


@pytest.fixture
def ws(tmp_path: Path) -> Path:
    path = tmp_path / "counting"
    path.mkdir()
    (path / "INSTRUCTIONS.md").write_text("Count from 1 to 3.\n", encoding="utf-8")
    return path


def test_loop_mode_counts_down_to_completion(ws: Path) -> None:
    bus = EventBus()
    recorder = EventRecorder()
    bus.subscribe(recorder)
    loop = make_loop(
        ws,
        [
            write_status(complete=False, progress={"completed": 1, "total": 3}),
            write_status(complete=False, progress={"completed": 2, "total": 3}),
            write_status(complete=True, progress={"completed": 3, "total": 3}),
        ],
        events=bus,
        max_iterations=10,
    )

    result = loop.run()

    assert result.iteration_count == 3
    assert result.terminal_reason is TerminalReason.EXPLICIT_COMPLETION
    assert result.outcome is RunOutcome.COMPLETED
    assert result.remaining == 0
    assert loop.session is not None and loop.session.state is LoopState.COMPLETED
    assert [e.remaining for e in recorder.of_type(IterationComplete)] == [2, 1, 0]
    assert recorder.names() == [
        "execution-start",
        "iteration-start",
        "iteration-complete",
        "iteration-start",
        "iteration-complete",
        "iteration-start",
        "iteration-complete",
        "completion",
    ]


def test_iteration_budget_is_never_exceeded(ws: Path) -> None:
    loop = make_loop(ws, [write_status(complete=False)], max_iterations=4)

    result = loop.run()

    assert result.iteration_count == 4
    assert result.terminal_reason is TerminalReason.MAX_ITERATIONS
    assert result.outcome is RunOutcome.MAX_ITERATIONS
    assert len(loop._client.prompts) == 4  # type: ignore[attr-defined]


def test_missing_status_artifact_degrades_instead_of_crashing(ws: Path) -> None:
    loop = make_loop(ws, [do_nothing], max_iterations=2)

    result = loop.run()

    assert result.terminal_reason is TerminalReason.MAX_ITERATIONS
    assert result.remaining is None
    assert all(o.succeeded for o in result.outcomes)


def test_corrupt_status_artifact_is_not_completion(ws: Path) -> None:
    def corrupt(path: Path) -> None:
        (path / STATUS_FILENAME).write_text('{"complete": tr', encoding="utf-8")

    result = make_loop(ws, [corrupt], max_iterations=2).run()

    assert result.terminal_reason is TerminalReason.MAX_ITERATIONS


@pytest.mark.parametrize(
    "garbage",
    [
        "[" * 100_000,
        '{"complete": false, "progress": {"completed": 1' + "0" * 5000 + ', "total": 1}}',
    ],
    ids=["deep-nesting", "oversized-int"],
)
def test_pathological_status_artifact_does_not_halt_the_run(ws: Path, garbage: str) -> None:
    def write_garbage(path: Path) -> None:
        (path / STATUS_FILENAME).write_text(garbage, encoding="utf-8")

    loop = make_loop(ws, [write_garbage], max_iterations=3)

    result = loop.run()

    assert result.iteration_count == 3
    assert result.terminal_reason is TerminalReason.MAX_ITERATIONS
    assert len(loop._client.prompts) == 3  # type: ignore[attr-defined]


def test_iterative_mode_stagnates_after_threshold(ws: Path) -> None:
    loop = make_loop(
        ws,
        [
            write_status(complete=False, worked=True),
            write_status(complete=False, worked=False),
            write_status(complete=False, worked=False),
        ],
        mode=Mode.ITERATIVE,
        max_iterations=10,
        stagnation_threshold=2,
    )

    result = loop.run()

    assert result.iteration_count == 3
    assert result.terminal_reason is TerminalReason.STAGNATION
    assert result.outcome is RunOutcome.COMPLETED
    assert loop.session is not None
    assert loop.session.state is LoopState.STAGNATED
    assert loop.session.consecutive_no_work == 2


def test_interleaved_work_prevents_stagnation(ws: Path) -> None:
    loop = make_loop(
        ws,
        [
            write_status(complete=False, worked=False),
            write_status(complete=False, worked=True),
            write_status(complete=False, worked=False),
        ],
        mode=Mode.ITERATIVE,
        max_iterations=3,
        stagnation_threshold=2,
    )

    assert loop.run().terminal_reason is TerminalReason.MAX_ITERATIONS


def test_stagnation_needs_an_unbroken_streak(ws: Path) -> None:
    loop = make_loop(
        ws,
        [
            write_status(complete=False, worked=True),
            write_status(complete=False, worked=False),
            write_status(complete=False, worked=True),
            write_status(complete=False, worked=False),
            write_status(complete=False, worked=False),
        ],
        mode=Mode.ITERATIVE,
        max_iterations=10,
        stagnation_threshold=2,
    )

    result = loop.run()

    assert result.iteration_count == 5
    assert result.terminal_reason is TerminalReason.STAGNATION


def test_zero_threshold_disables_stagnation(ws: Path) -> None:
    loop = make_loop(
        ws,
        [write_status(complete=False, worked=False)],
        mode=Mode.ITERATIVE,
        max_iterations=5,
        stagnation_threshold=0,
    )

    result = loop.run()

    assert result.iteration_count == 5
    assert result.terminal_reason is TerminalReason.MAX_ITERATIONS


def test_loop_mode_ignores_worked_flag(ws: Path) -> None:
    loop = make_loop(
        ws,
        [write_status(complete=False, worked=False)],
        mode=Mode.LOOP,
        max_iterations=4,
        stagnation_threshold=1,
    )

    assert loop.run().terminal_reason is TerminalReason.MAX_ITERATIONS


def test_explicit_completion_wins_over_stagnation(ws: Path) -> None:
    loop = make_loop(
        ws,
        [write_status(complete=False, worked=False), write_status(complete=True, worked=False)],
        mode=Mode.ITERATIVE,
        max_iterations=5,
        stagnation_threshold=2,
    )

    assert loop.run().terminal_reason is TerminalReason.EXPLICIT_COMPLETION


def test_process_failure_halts_and_keeps_session(ws: Path) -> None:
    bus = EventBus()
    recorder = EventRecorder()
    bus.subscribe(recorder)
    failure = ProcessExecutionError("agent exited with code 3", returncode=3)

    def partial_then_fail(path: Path) -> None:
        write_status(complete=False, progress={"completed": 1, "total": 4})(path)
        raise failure

    loop = make_loop(
        ws,
        [write_status(complete=False, progress={"completed": 0, "total": 4}), partial_then_fail],
        events=bus,
        max_iterations=10,
    )

    with pytest.raises(ProcessExecutionError):
        loop.run()

    session = loop.session
    assert session is not None
    assert session.iteration_count == 2
    assert session.terminal_reason is TerminalReason.FATAL_ERROR
    assert session.state is LoopState.ERRORED
    assert session.error is failure
    assert session.last_remaining == 3
    assert loop.result().outcome is RunOutcome.FAILED
    errors = recorder.of_type(IterationError)
    assert len(errors) == 1 and errors[0].iteration == 2
    assert recorder.of_type(Completion) == []


def test_launch_failure_counts_the_attempt(ws: Path) -> None:
    loop = make_loop(ws, [raise_error(ProcessLaunchError("claude", "command not found"))])

    with pytest.raises(ProcessLaunchError):
        loop.run()

    assert loop.session is not None
    assert loop.session.iteration_count == 1
    assert loop.session.terminal_reason is TerminalReason.FATAL_ERROR


def test_unexpected_exception_is_wrapped(ws: Path) -> None:
    loop = make_loop(ws, [raise_error(KeyError("boom"))])

    with pytest.raises(FatalIterationError) as exc:
        loop.run()

    assert exc.value.iteration == 1
    assert isinstance(exc.value.cause, KeyError)


def test_cancel_during_delay_stops_promptly(ws: Path) -> None:
    token = CancelToken()
    bus = EventBus()
    recorder = EventRecorder()
    bus.subscribe(recorder)
    bus.subscribe(lambda e: threading.Timer(0.1, token.cancel).start(), kinds=[IterationComplete])
    loop = make_loop(
        ws,
        [write_status(complete=False)],
        events=bus,
        token=token,
        max_iterations=5,
        delay_seconds=60,
    )

    result = loop.run()

    assert result.iteration_count == 1
    assert result.terminal_reason is TerminalReason.CANCELLED
    assert result.outcome is RunOutcome.CANCELLED
    completions = recorder.of_type(Completion)
    assert len(completions) == 1 and completions[0].reason == "cancelled"


def test_cancelled_before_start_runs_nothing(ws: Path) -> None:
    token = CancelToken()
    token.cancel()
    loop = make_loop(ws, [write_status(complete=True)], token=token)

    result = loop.run()

    assert result.iteration_count == 0
    assert result.terminal_reason is TerminalReason.CANCELLED


def test_cancel_during_invocation(ws: Path) -> None:
    loop = make_loop(ws, [raise_error(IterationCancelled("interrupted by SIGINT"))])

    result = loop.run()

    assert result.terminal_reason is TerminalReason.CANCELLED
    assert result.outcomes[-1].succeeded is False


def test_milestone_every_ten_iterations(ws: Path) -> None:
    bus = EventBus()
    recorder = EventRecorder()
    bus.subscribe(recorder, kinds=[Milestone])

    make_loop(ws, [write_status(complete=False)], events=bus, max_iterations=25).run()

    assert [e.iteration for e in recorder.events] == [10, 20]


def test_no_delay_after_final_iteration(ws: Path) -> None:
    token = CancelToken()
    loop = make_loop(
        ws,
        [write_status(complete=False)],
        token=token,
        max_iterations=1,
        delay_seconds=60,
    )

    # would block for a minute if the delay ran after the last iteration
    result = loop.run()

    assert result.terminal_reason is TerminalReason.MAX_ITERATIONS


def test_prompts_carry_iteration_number_and_status_instructions(ws: Path) -> None:
    loop = make_loop(ws, [write_status(complete=False)], max_iterations=2)
    loop.run()

    prompts: List[str] = loop._client.prompts  # type: ignore[attr-defined]
    assert prompts[0].startswith("# Iteration 1")
    assert prompts[1].startswith("# Iteration 2")
    assert all(str(ws / STATUS_FILENAME) in p for p in prompts)


def test_run_twice_rejected(ws: Path) -> None:
    loop = make_loop(ws, [write_status(complete=True)])
    loop.run()
    with pytest.raises(RuntimeError):
        loop.run()


def test_terminal_reason_is_set_once() -> None:
    session = RunSession.from_config(EngineConfig())
    session.finish(TerminalReason.EXPLICIT_COMPLETION)

    with pytest.raises(RuntimeError):
        session.finish(TerminalReason.MAX_ITERATIONS)
    with pytest.raises(ValueError):
        RunSession.from_config(EngineConfig()).finish(TerminalReason.NONE)


def test_run_workspace_records_metadata(ws: Path) -> None:
    client = ScriptedClient(ws, [write_status(complete=True, progress={"completed": 1, "total": 1})])
    cfg = Config(engine=EngineConfig(delay_seconds=0))

    result = run_workspace(Workspace(ws), cfg, client=client)  # type: ignore[arg-type]

    assert result.outcome is RunOutcome.COMPLETED
    meta: Dict[str, Any] = json.loads((ws / ".metadata.json").read_text(encoding="utf-8"))
    assert meta["totalIterations"] == 1
    assert meta["executionIterations"] == 1
    assert meta["status"] == "completed"
    assert "lastRun" in meta


def test_run_workspace_records_metadata_on_failure(ws: Path) -> None:
    client = ScriptedClient(ws, [raise_error(ProcessExecutionError("exit 1", returncode=1))])

    with pytest.raises(ProcessExecutionError):
        run_workspace(Workspace(ws), Config(), client=client)  # type: ignore[arg-type]

    meta = json.loads((ws / ".metadata.json").read_text(encoding="utf-8"))
    assert meta["status"] == "error"
    assert meta["totalIterations"] == 1


def test_run_workspace_requires_available_agent(ws: Path) -> None:
    client = ScriptedClient(ws, [do_nothing], available=False)

    with pytest.raises(ProcessLaunchError):
        run_workspace(Workspace(ws), Config(), client=client)  # type: ignore[arg-type]

    assert client.prompts == []
