from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from dataclasses import asdict, replace
from pathlib import Path
from typing import Any, Dict, Optional

from . import __version__
from .agents import list_known_agents
from .cancellation import CancelToken
from .client import AgentClient, StreamCallbacks
from .config import (
    Config,
    OutputMode,
    apply_overrides,
    load_config,
    parse_mode,
    parse_output_mode,
)
from .errors import ConfigError, FatalIterationError, IterateError, StreamParseError
from .events import (
    Completion,
    EventBus,
    ExecutionStart,
    IterationComplete,
    IterationError,
    IterationStart,
    LifecycleEvent,
    Milestone,
    StatusChanged,
)
from .logging_config import setup_logging
from .loop import RunOutcome, RunResult, TerminalReason, run_workspace
from .output import OutputConfig, print_output, set_output_config
from .run_log import RunLog, default_log_path
from .status import progress_percentage, read_status, remaining, validate_status
from .stream_events import StreamEvent, format_event
from .watch import StatusFileWatcher
from .workspace import Workspace

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_MAX_ITERATIONS = 2
EXIT_CANCELLED = 130

_EXIT_BY_OUTCOME = {
    RunOutcome.COMPLETED: EXIT_OK,
    RunOutcome.MAX_ITERATIONS: EXIT_MAX_ITERATIONS,
    RunOutcome.FAILED: EXIT_FAILURE,
    RunOutcome.CANCELLED: EXIT_CANCELLED,
}

MOCK_AGENT_ARGS = ["-m", "agent_iterate.mock_agent"]


def _load_cfg(args: argparse.Namespace) -> Config:
    path = Path(args.config) if getattr(args, "config", None) else None
    return load_config(path)


def _dry_run_config(cfg: Config) -> Config:
    """Point the agent at the bundled mock agent."""
    return replace(
        cfg,
        agent=replace(cfg.agent, kind="claude", command=sys.executable, args=list(MOCK_AGENT_ARGS)),
    )


def resolve_run_config(
    cfg: Config, workspace: Workspace, args: argparse.Namespace
) -> Config:
    """Apply workspace metadata, then command-line flags, over the config file."""
    meta: Dict[str, Any] = {}
    if workspace.metadata_path.exists():
        md = workspace.load_metadata()
        meta = {
            "mode": md.mode,
            "max_iterations": md.max_iterations,
            "delay_seconds": md.delay_seconds,
            "stagnation_threshold": md.stagnation_threshold,
        }
    cfg = apply_overrides(cfg, **meta)

    delay = args.delay
    if args.no_delay:
        delay = 0
    output_mode = parse_output_mode(args.output) if args.output else None
    if args.stream:
        output_mode = OutputMode.STREAMING

    cfg = apply_overrides(
        cfg,
        mode=parse_mode(args.mode) if args.mode else None,
        max_iterations=args.max_iterations,
        delay_seconds=delay,
        stagnation_threshold=args.stagnation_threshold,
        output_mode=output_mode,
        skip_permissions=True if args.dangerously_skip_permissions else None,
    )
    if args.dry_run:
        cfg = _dry_run_config(cfg)
    return cfg


# -------------------------
# Console reporting
# -------------------------


class ConsoleReporter:
    """Lifecycle observer printing progress through print_output."""

    def __init__(self) -> None:
        self.last_iteration = 0

    def _remaining(self, value: Optional[int]) -> str:
        return "unknown" if value is None else str(value)

    def __call__(self, event: LifecycleEvent) -> None:
        if isinstance(event, ExecutionStart):
            print_output(
                f"Running {event.workspace} in {event.mode.value} mode "
                f"(max {event.max_iterations} iterations)"
            )
        elif isinstance(event, IterationStart):
            self.last_iteration = event.iteration
            print_output(f"\n=== Iteration {event.iteration} ===")
        elif isinstance(event, IterationComplete):
            line = f"Iteration {event.iteration} done, remaining: {self._remaining(event.remaining)}"
            if event.summary:
                line += f" ({event.summary})"
            print_output(line)
        elif isinstance(event, Milestone):
            print_output(
                f"Milestone: {event.iteration} iterations, "
                f"remaining: {self._remaining(event.remaining)}"
            )
        elif isinstance(event, StatusChanged):
            delta = event.delta
            if delta.progress_changed:
                print_output(
                    f"  status: {delta.completed_delta:+d} completed, {delta.total_delta:+d} total",
                    level="verbose",
                )
        elif isinstance(event, IterationError):
            print_output(f"Iteration {event.iteration} failed: {event.error}", level="error")
        elif isinstance(event, Completion):
            self.last_iteration = event.iteration


def _describe_result(result: RunResult) -> str:
    n = result.iteration_count
    reason = result.terminal_reason
    if reason is TerminalReason.EXPLICIT_COMPLETION:
        return f"Task completed after {n} iteration(s)"
    if reason is TerminalReason.STAGNATION:
        return f"Stopped after {n} iteration(s): no work reported (stagnation)"
    if reason is TerminalReason.MAX_ITERATIONS:
        left = result.remaining
        tail = f", {left} item(s) remaining" if left is not None else ""
        return f"Reached maximum iterations ({n}){tail}; run again to continue"
    if reason is TerminalReason.CANCELLED:
        return f"Run cancelled after {n} iteration(s)"
    return f"Run ended after {n} iteration(s): {reason.value}"


def _make_callbacks(run_log: Optional[RunLog], output_mode: OutputMode) -> StreamCallbacks:
    def on_raw_output(chunk: str) -> None:
        if run_log is not None:
            run_log.append_output(chunk)
        if output_mode is OutputMode.BUFFERED:
            print_output(chunk, level="verbose", end="")

    def on_tool_event(event: StreamEvent) -> None:
        text = format_event(event)
        if text:
            print_output(text, level="verbose")

    def on_error(err: StreamParseError) -> None:
        logger.debug("%s", err)

    return StreamCallbacks(
        on_tool_event=on_tool_event, on_raw_output=on_raw_output, on_error=on_error
    )


def _install_signal_handlers(token: CancelToken, client: AgentClient) -> Dict[int, Any]:
    previous: Dict[int, Any] = {}

    def handler(signum: int, frame: object) -> None:
        if token.cancelled:
            print_output("\nForcing exit", level="error")
            client.kill(getattr(signal, "SIGKILL", signal.SIGTERM))
            raise SystemExit(EXIT_FAILURE)
        name = signal.Signals(signum).name
        print_output(f"\nReceived {name}, stopping after cleanup (again to force)", level="error")
        token.cancel(f"interrupted by {name}")

    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, handler)
    return previous


def _restore_signal_handlers(previous: Dict[int, Any]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


# -------------------------
# Commands
# -------------------------


def cmd_run(args: argparse.Namespace) -> int:
    workspace = Workspace(Path(args.workspace).resolve())
    try:
        workspace.ensure_exists()
        cfg = resolve_run_config(_load_cfg(args), workspace, args)
    except (IterateError, ValueError) as e:
        print_output(str(e), level="error")
        return EXIT_FAILURE

    project_root = Path(args.project_root).resolve() if args.project_root else Path.cwd()
    if args.dry_run:
        print_output("Dry run: using the bundled mock agent", level="normal")

    events = EventBus()
    reporter = ConsoleReporter()
    events.subscribe(reporter)

    run_log: Optional[RunLog] = None
    if cfg.output.run_log and not args.no_log:
        run_log = RunLog(default_log_path(workspace.path))
        events.subscribe(run_log)
        print_output(f"Logging to: {run_log.path}", level="verbose")

    watcher: Optional[StatusFileWatcher] = None
    if cfg.watch.enabled and not args.no_watch:
        watcher = StatusFileWatcher(
            workspace.path, events, cfg.watch, iteration=lambda: reporter.last_iteration
        )

    token = CancelToken()
    client = AgentClient(cfg.agent, cwd=project_root)
    previous_handlers = _install_signal_handlers(token, client)

    try:
        if watcher is not None:
            watcher.start()
        result = run_workspace(
            workspace,
            cfg,
            client=client,
            events=events,
            cancel_token=token,
            callbacks=_make_callbacks(run_log, cfg.agent.output_mode),
            project_root=project_root,
        )
    except IterateError as e:
        n = e.iteration if isinstance(e, FatalIterationError) else reporter.last_iteration
        print_output(f"Run failed after {n} iteration(s): {e}", level="error")
        return EXIT_FAILURE
    finally:
        if watcher is not None:
            watcher.stop()
        if run_log is not None:
            run_log.close()
        # make sure no agent outlives the command
        client.shutdown(cfg.agent.shutdown_grace_seconds)
        _restore_signal_handlers(previous_handlers)

    print_output(_describe_result(result), level="quiet")
    return _EXIT_BY_OUTCOME[result.outcome]


def cmd_status(args: argparse.Namespace) -> int:
    workspace = Workspace(Path(args.workspace).resolve())
    try:
        workspace.ensure_exists()
    except IterateError as e:
        print_output(str(e), level="error")
        return EXIT_FAILURE

    status = read_status(workspace.status_path)
    validation = validate_status(workspace.status_path)

    if args.json:
        payload: Dict[str, Any] = {
            "workspace": workspace.name,
            "valid": validation.valid,
            "complete": status.complete,
            "progress": asdict(status.progress) if status.progress else None,
            "remaining": remaining(status),
            "worked": status.worked,
            "summary": status.summary,
            "phase": status.phase,
            "blockers": list(status.blockers),
            "lastUpdated": status.last_updated,
            "errors": validation.errors,
            "warnings": validation.warnings,
        }
        print(json.dumps(payload, indent=2))
        return EXIT_OK if validation.valid else EXIT_FAILURE

    print_output(f"Workspace: {workspace.name}", level="quiet")
    if not validation.valid:
        for err in validation.errors:
            print_output(f"Status: invalid ({err})", level="quiet")
        return EXIT_FAILURE

    print_output(f"Complete: {'yes' if status.complete else 'no'}", level="quiet")
    if status.progress is not None:
        p = status.progress
        print_output(
            f"Progress: {p.completed}/{p.total} ({progress_percentage(status)}%)",
            level="quiet",
        )
        left = remaining(status)
        print_output(f"Remaining: {'unknown' if left is None else left}", level="quiet")
    if status.worked is not None:
        print_output(f"Worked last iteration: {'yes' if status.worked else 'no'}")
    if status.phase:
        print_output(f"Phase: {status.phase}")
    if status.summary:
        print_output(f"Summary: {status.summary}")
    for blocker in status.blockers:
        print_output(f"Blocker: {blocker}")
    if status.last_updated:
        print_output(f"Last updated: {status.last_updated}", level="verbose")
    for warning in validation.warnings:
        print_output(f"Warning: {warning}", level="quiet")

    if workspace.metadata_path.exists():
        try:
            md = workspace.load_metadata()
        except IterateError as e:
            print_output(f"Metadata: {e}", level="error")
        else:
            print_output(
                f"Runs: {md.total_iterations} iteration(s) total, status {md.status}"
                + (f", last run {md.last_run}" if md.last_run else "")
            )
    return EXIT_OK


def cmd_doctor(args: argparse.Namespace) -> int:
    try:
        cfg = _load_cfg(args)
    except ConfigError as e:
        print_output(str(e), level="error")
        return EXIT_FAILURE
    if args.dry_run:
        cfg = _dry_run_config(cfg)

    client = AgentClient(cfg.agent)
    version = client.get_version()
    print_output(f"agent-iterate {__version__}", level="quiet")
    print_output(f"Agent kind: {cfg.agent.kind} (known: {', '.join(list_known_agents())})")
    if version is None:
        print_output(
            f"✗ {cfg.agent.command}: not available (`{cfg.agent.command} --version` failed)",
            level="quiet",
        )
        return EXIT_FAILURE
    print_output(f"✓ {cfg.agent.command}: {version}", level="quiet")
    return EXIT_OK


# -------------------------
# Parser
# -------------------------


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="agent-iterate",
        description="Run a non-interactive AI agent against a workspace until the task is done",
    )
    p.add_argument("--version", action="version", version=f"agent-iterate {__version__}")
    p.add_argument("--config", default=None, help="Path to agent-iterate.toml")
    p.add_argument("-v", "--verbose", action="store_true", help="Show agent output and tool events")
    p.add_argument("-q", "--quiet", action="store_true", help="Only print results and errors")
    p.add_argument("--log-file", default=None, help="Also write debug logs to this file")

    sub = p.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Iterate the agent on a workspace")
    p_run.add_argument("workspace", help="Workspace directory (contains INSTRUCTIONS.md)")
    p_run.add_argument(
        "--mode", default=None, help="Execution mode: loop (default) or iterative"
    )
    p_run.add_argument(
        "-m", "--max-iterations", type=int, default=None, help="Iteration budget for this run"
    )
    p_run.add_argument(
        "-d", "--delay", type=int, default=None, help="Seconds to wait between iterations"
    )
    p_run.add_argument("--no-delay", action="store_true", help="Do not wait between iterations")
    p_run.add_argument(
        "--stagnation-threshold",
        type=int,
        default=None,
        help="Stop after N consecutive no-work iterations (iterative mode, 0 disables)",
    )
    p_run.add_argument(
        "--output", default=None, help="Agent output handling: buffered or streaming"
    )
    p_run.add_argument(
        "--stream", action="store_true", help="Shorthand for --output streaming"
    )
    p_run.add_argument(
        "--dangerously-skip-permissions",
        action="store_true",
        help="Pass the permission-bypass flag to the agent",
    )
    p_run.add_argument(
        "--dry-run", action="store_true", help="Use the bundled mock agent instead of the real one"
    )
    p_run.add_argument("--no-log", action="store_true", help="Do not write a run log")
    p_run.add_argument(
        "--no-watch", action="store_true", help="Do not watch the status file during iterations"
    )
    p_run.add_argument(
        "--project-root", default=None, help="Working directory for the agent (default: cwd)"
    )
    p_run.set_defaults(func=cmd_run)

    p_status = sub.add_parser("status", help="Show the workspace status artifact")
    p_status.add_argument("workspace")
    p_status.add_argument("--json", action="store_true", help="Print as JSON")
    p_status.set_defaults(func=cmd_status)

    p_doc = sub.add_parser("doctor", help="Check that the agent CLI is available")
    p_doc.add_argument(
        "--dry-run", action="store_true", help="Check the bundled mock agent instead"
    )
    p_doc.set_defaults(func=cmd_doctor)

    return p


def main(argv: Optional[list] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.quiet:
        verbosity = "quiet"
    elif args.verbose:
        verbosity = "verbose"
    else:
        verbosity = "normal"
        try:
            verbosity = _load_cfg(args).output.verbosity
        except ConfigError:
            # reported by the command itself
            pass
    set_output_config(OutputConfig(verbosity=verbosity))
    setup_logging(verbosity, log_file=Path(args.log_file) if args.log_file else None)
    logger.debug("agent-iterate v%s, command: %s", __version__, args.cmd)

    try:
        return int(args.func(args))
    except KeyboardInterrupt:
        return EXIT_CANCELLED


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
