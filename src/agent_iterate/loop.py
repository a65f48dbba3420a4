"""Iteration loop controller.

One ``IterationLoop`` drives one run against one workspace:

    idle -> running -> completed | stagnated | max-iterations-reached | errored
                       (| cancelled)

Each pass counts the iteration first, invokes the agent, reads the status
artifact fresh, consults the stagnation tracker (iterative mode only) and
either stops or sleeps before the next pass. A failed invocation halts the
run; nothing is retried here. Hitting the iteration budget is a normal,
resumable outcome, not an error.

Only one run may target a workspace at a time. Nothing enforces this.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .cancellation import CancelToken
from .client import AgentClient, StreamCallbacks
from .config import Config, EngineConfig, Mode, OutputMode
from .errors import (
    FatalIterationError,
    IterationCancelled,
    ProcessExecutionError,
    ProcessLaunchError,
)
from .events import (
    Completion,
    EventBus,
    ExecutionStart,
    IterationComplete,
    IterationError,
    IterationStart,
    Milestone,
    is_milestone,
)
from .prompts import build_iteration_prompt, build_system_prompt, get_strategy
from .stagnation import StagnationTracker
from .status import StatusArtifact, is_complete, read_status, remaining
from .workspace import Workspace

logger = logging.getLogger(__name__)


class TerminalReason(str, enum.Enum):
    NONE = "none"
    EXPLICIT_COMPLETION = "explicit-completion"
    STAGNATION = "stagnation"
    MAX_ITERATIONS = "max-iterations"
    FATAL_ERROR = "fatal-error"
    CANCELLED = "cancelled"


class LoopState(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    STAGNATED = "stagnated"
    MAX_ITERATIONS_REACHED = "max-iterations-reached"
    ERRORED = "errored"
    CANCELLED = "cancelled"


class RunOutcome(str, enum.Enum):
    """What the caller should report: mapped to process exit codes by the CLI."""

    COMPLETED = "completed"
    MAX_ITERATIONS = "max-iterations"
    FAILED = "failed"
    CANCELLED = "cancelled"


_STATE_BY_REASON = {
    TerminalReason.EXPLICIT_COMPLETION: LoopState.COMPLETED,
    TerminalReason.STAGNATION: LoopState.STAGNATED,
    TerminalReason.MAX_ITERATIONS: LoopState.MAX_ITERATIONS_REACHED,
    TerminalReason.FATAL_ERROR: LoopState.ERRORED,
    TerminalReason.CANCELLED: LoopState.CANCELLED,
}

_OUTCOME_BY_REASON = {
    TerminalReason.NONE: RunOutcome.FAILED,
    TerminalReason.EXPLICIT_COMPLETION: RunOutcome.COMPLETED,
    TerminalReason.STAGNATION: RunOutcome.COMPLETED,
    TerminalReason.MAX_ITERATIONS: RunOutcome.MAX_ITERATIONS,
    TerminalReason.FATAL_ERROR: RunOutcome.FAILED,
    TerminalReason.CANCELLED: RunOutcome.CANCELLED,
}


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunSession:
    mode: Mode
    max_iterations: int
    delay_seconds: int
    stagnation_threshold: int
    iteration_count: int = 0
    consecutive_no_work: int = 0
    terminal_reason: TerminalReason = TerminalReason.NONE
    state: LoopState = LoopState.IDLE
    last_remaining: Optional[int] = None
    last_status: Optional[StatusArtifact] = None
    error: Optional[BaseException] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_config(cls, engine: EngineConfig) -> "RunSession":
        return cls(
            mode=engine.mode,
            max_iterations=engine.max_iterations,
            delay_seconds=engine.delay_seconds,
            stagnation_threshold=engine.stagnation_threshold,
        )

    @property
    def is_terminal(self) -> bool:
        return self.terminal_reason is not TerminalReason.NONE

    def finish(self, reason: TerminalReason, error: Optional[BaseException] = None) -> None:
        """Set the terminal reason. It can be set once and never changes afterwards."""
        if reason is TerminalReason.NONE:
            raise ValueError("terminal reason cannot be NONE")
        if self.is_terminal:
            raise RuntimeError(
                f"run already terminated ({self.terminal_reason.value}); "
                f"cannot change to {reason.value}"
            )
        self.terminal_reason = reason
        self.state = _STATE_BY_REASON[reason]
        self.error = error
        self.finished_at = utc_now()


@dataclass
class IterationOutcome:
    iteration: int
    succeeded: bool
    remaining: Optional[int]
    is_complete: bool
    error: Optional[BaseException] = None


@dataclass
class RunResult:
    session: RunSession
    outcomes: List[IterationOutcome] = field(default_factory=list)

    @property
    def mode(self) -> Mode:
        return self.session.mode

    @property
    def iteration_count(self) -> int:
        return self.session.iteration_count

    @property
    def terminal_reason(self) -> TerminalReason:
        return self.session.terminal_reason

    @property
    def remaining(self) -> Optional[int]:
        return self.session.last_remaining

    @property
    def outcome(self) -> RunOutcome:
        return _OUTCOME_BY_REASON[self.session.terminal_reason]


class IterationLoop:
    """Runs the agent against a workspace until a terminal state is reached.

    ``run`` may be called once. After it returns, or raises, ``session``
    holds the final counters and terminal reason.
    """

    def __init__(
        self,
        client: AgentClient,
        workspace_path: Path,
        instructions: str,
        engine: EngineConfig,
        events: Optional[EventBus] = None,
        cancel_token: Optional[CancelToken] = None,
        output_mode: Optional[OutputMode] = None,
        callbacks: Optional[StreamCallbacks] = None,
        project_root: Optional[Path] = None,
        workspace_name: Optional[str] = None,
    ):
        self._client = client
        self._workspace_path = workspace_path
        self._instructions = instructions
        self._engine = engine
        self.events = events or EventBus()
        self._cancel = cancel_token or CancelToken()
        self._output_mode = output_mode
        self._callbacks = callbacks
        self._project_root = project_root
        self._workspace_name = workspace_name or workspace_path.name
        self.session: Optional[RunSession] = None
        self.outcomes: List[IterationOutcome] = []

    @property
    def status_path(self) -> Path:
        return Workspace(self._workspace_path).status_path

    @property
    def cancel_token(self) -> CancelToken:
        return self._cancel

    def result(self) -> RunResult:
        if self.session is None:
            raise RuntimeError("run() has not been started")
        return RunResult(session=self.session, outcomes=list(self.outcomes))

    def run(self) -> RunResult:
        """Iterate until completion, stagnation, the iteration budget, an error or cancellation.

        Raises:
            ProcessLaunchError: The agent could not be started
            ProcessExecutionError: The agent exited unsuccessfully
            FatalIterationError: Anything else went wrong during a pass
        """
        if self.session is not None:
            raise RuntimeError("IterationLoop.run() may only be called once")

        session = RunSession.from_config(self._engine)
        self.session = session
        tracker = StagnationTracker(session.stagnation_threshold)
        system_prompt = build_system_prompt(
            session.mode, self._workspace_path, self._project_root
        )

        session.state = LoopState.RUNNING
        session.started_at = utc_now()
        logger.info(
            "Starting run: mode=%s max_iterations=%d delay=%ds",
            session.mode.value,
            session.max_iterations,
            session.delay_seconds,
        )
        self.events.emit(
            ExecutionStart(
                workspace=self._workspace_name,
                mode=session.mode,
                max_iterations=session.max_iterations,
                instructions=self._instructions,
                system_prompt=system_prompt,
                status_instructions=get_strategy(session.mode).status_instructions(
                    self._workspace_path
                ),
            )
        )

        while session.iteration_count < session.max_iterations and not session.is_terminal:
            if self._cancel.cancelled:
                session.finish(TerminalReason.CANCELLED)
                break
            try:
                self._run_iteration(session, tracker, system_prompt)
            except IterationCancelled as e:
                self._record_cancelled(session, e)
                break

        if not session.is_terminal:
            session.finish(TerminalReason.MAX_ITERATIONS)
            logger.warning("Reached maximum iterations (%d)", session.max_iterations)

        self.events.emit(
            Completion(
                iteration=session.iteration_count,
                reason=session.terminal_reason.value,
                remaining=session.last_remaining,
            )
        )
        return self.result()

    def _run_iteration(
        self,
        session: RunSession,
        tracker: StagnationTracker,
        system_prompt: str,
    ) -> None:
        # counted before invoking, so a crash still shows as an attempted iteration
        session.iteration_count += 1
        n = session.iteration_count
        logger.info("Running iteration %d/%d", n, session.max_iterations)
        self.events.emit(IterationStart(iteration=n))

        try:
            prompt = build_iteration_prompt(
                self._instructions, n, session.mode, self._workspace_path
            )
            self._client.invoke(
                prompt,
                system_prompt=system_prompt,
                output_mode=self._output_mode,
                callbacks=self._callbacks,
                cancel_token=self._cancel,
                cwd=self._project_root,
            )
            self._after_invocation(session, tracker, n)
        except IterationCancelled:
            raise
        except ProcessExecutionError as e:
            # the agent may have updated the artifact before failing
            self._observe_status()
            self._fail(session, n, e)
            raise
        except ProcessLaunchError as e:
            self._fail(session, n, e)
            raise
        except Exception as e:
            err = FatalIterationError(n, e)
            self._fail(session, n, err)
            raise err from e

    def _observe_status(self) -> StatusArtifact:
        assert self.session is not None
        status = read_status(self.status_path)
        self.session.last_status = status
        self.session.last_remaining = remaining(status)
        return status

    def _after_invocation(
        self, session: RunSession, tracker: StagnationTracker, n: int
    ) -> None:
        status = self._observe_status()
        complete = is_complete(status)
        reason = TerminalReason.EXPLICIT_COMPLETION if complete else None

        if session.mode is Mode.ITERATIVE:
            stagnated = tracker.update(status)
            session.consecutive_no_work = tracker.count
            if stagnated and not complete:
                logger.warning(
                    "Stagnation detected: %d consecutive iterations with no work",
                    tracker.count,
                )
                complete = True
                reason = TerminalReason.STAGNATION

        self.outcomes.append(
            IterationOutcome(
                iteration=n,
                succeeded=True,
                remaining=session.last_remaining,
                is_complete=complete,
            )
        )
        self.events.emit(
            IterationComplete(
                iteration=n,
                remaining=session.last_remaining,
                summary=status.summary,
                worked=status.worked,
            )
        )
        if is_milestone(n):
            self.events.emit(Milestone(iteration=n, remaining=session.last_remaining))

        if complete and reason is not None:
            session.finish(reason)
            logger.info("Run finished after %d iteration(s): %s", n, reason.value)
            return

        if session.delay_seconds > 0 and n < session.max_iterations:
            logger.debug("Waiting %ds before next iteration", session.delay_seconds)
            self._cancel.sleep(session.delay_seconds)

    def _fail(self, session: RunSession, n: int, error: BaseException) -> None:
        logger.error("Iteration %d failed: %s", n, error)
        session.finish(TerminalReason.FATAL_ERROR, error)
        self.outcomes.append(
            IterationOutcome(
                iteration=n,
                succeeded=False,
                remaining=session.last_remaining,
                is_complete=False,
                error=error,
            )
        )
        self.events.emit(IterationError(iteration=n, error=error))

    def _record_cancelled(self, session: RunSession, error: IterationCancelled) -> None:
        n = session.iteration_count
        logger.warning("Run cancelled during iteration %d: %s", n, error)
        if not self.outcomes or self.outcomes[-1].iteration != n:
            self.outcomes.append(
                IterationOutcome(
                    iteration=n,
                    succeeded=False,
                    remaining=session.last_remaining,
                    is_complete=False,
                    error=error,
                )
            )
        session.finish(TerminalReason.CANCELLED, error)


def run_workspace(
    workspace: Workspace,
    cfg: Config,
    client: Optional[AgentClient] = None,
    events: Optional[EventBus] = None,
    cancel_token: Optional[CancelToken] = None,
    callbacks: Optional[StreamCallbacks] = None,
    project_root: Optional[Path] = None,
    record: bool = True,
) -> RunResult:
    """Probe the agent, run the loop against ``workspace`` and record counters.

    Counters are written to workspace metadata even when the run fails.

    Raises:
        WorkspaceError: Missing workspace or instructions
        ProcessLaunchError: The agent command is not available
        ProcessExecutionError, FatalIterationError: As raised by IterationLoop.run
    """
    workspace.ensure_exists()
    instructions = workspace.read_instructions()
    client = client or AgentClient(cfg.agent, cwd=project_root)

    if not client.is_available():
        raise ProcessLaunchError(
            cfg.agent.command,
            "not available (the --version probe failed); is it installed and in PATH?",
        )

    loop = IterationLoop(
        client,
        workspace.path,
        instructions,
        cfg.engine,
        events=events,
        cancel_token=cancel_token,
        output_mode=cfg.agent.output_mode,
        callbacks=callbacks,
        project_root=project_root,
        workspace_name=workspace.name,
    )
    try:
        return loop.run()
    finally:
        if record and loop.session is not None and loop.session.is_terminal:
            workspace.record_run(loop.result())
