"""Agent process client.

Runs the external agent once per iteration as a child process and returns
only after that child has exited. Output is consumed either buffered (all of
stdout collected, raw chunks forwarded to a callback) or streaming (stdout
parsed line by line into stream events as it arrives).

Lifecycle:

- ``invoke`` spawns, pumps the pipes on reader threads, and polls for exit so
  a ``CancelToken`` can interrupt the wait.
- ``shutdown`` sends SIGTERM, waits out a grace period, then SIGKILLs. After
  it returns no child of this client is running, and the client refuses new
  invocations.
"""

from __future__ import annotations

import logging
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

from .agents import build_agent_invocation
from .cancellation import CancelToken
from .config import AgentConfig, OutputMode
from .errors import (
    IterationCancelled,
    ProcessExecutionError,
    ProcessLaunchError,
    StreamParseError,
)
from .stream_events import FinalResult, StreamEvent, Unparseable, parse_stream_line
from .subprocess_helper import (
    popen_session_kwargs,
    run_subprocess,
    signal_process,
    start_line_reader,
)

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SECONDS = 0.1
_READER_JOIN_SECONDS = 5.0
_VERSION_PROBE_TIMEOUT_SECONDS = 15.0
_STDERR_TAIL_CHARS = 2000
_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


@dataclass
class StreamCallbacks:
    """Observers for one invocation. All are optional and run on reader threads.

    Attributes:
        on_tool_event: called once per parsed stream event (streaming mode)
        on_raw_output: called with every raw stdout/stderr chunk
        on_error: called with a StreamParseError for each malformed record
    """

    on_tool_event: Optional[Callable[[StreamEvent], None]] = None
    on_raw_output: Optional[Callable[[str], None]] = None
    on_error: Optional[Callable[[StreamParseError], None]] = None


@dataclass
class AgentResult:
    output: str
    stdout: str
    stderr: str
    returncode: int
    duration_seconds: float
    events: int = 0
    parse_errors: int = 0


class _InvocationState:
    """Accumulates one invocation's output; fed from the reader threads."""

    def __init__(self, streaming: bool, callbacks: StreamCallbacks):
        self.streaming = streaming
        self.callbacks = callbacks
        self.stdout_lines: List[str] = []
        self.stderr_lines: List[str] = []
        self.final_result: Optional[str] = None
        self.events = 0
        self.parse_errors = 0

    def on_stdout(self, line: str) -> None:
        self.stdout_lines.append(line)
        if self.callbacks.on_raw_output:
            self.callbacks.on_raw_output(line)
        if self.streaming:
            self._dispatch(line)

    def on_stderr(self, line: str) -> None:
        self.stderr_lines.append(line)
        if self.callbacks.on_raw_output:
            self.callbacks.on_raw_output(line)

    def _dispatch(self, line: str) -> None:
        for event in parse_stream_line(line):
            if isinstance(event, Unparseable):
                self.parse_errors += 1
                err = StreamParseError(event.line, event.reason)
                logger.debug("Stream parse error: %s", err)
                if self.callbacks.on_error:
                    self.callbacks.on_error(err)
                continue
            self.events += 1
            if isinstance(event, FinalResult):
                self.final_result = event.text
            if self.callbacks.on_tool_event:
                self.callbacks.on_tool_event(event)

    @property
    def stdout(self) -> str:
        return "".join(self.stdout_lines)

    @property
    def stderr(self) -> str:
        return "".join(self.stderr_lines)


class AgentClient:
    def __init__(self, config: AgentConfig, cwd: Optional[Path] = None):
        self._config = config
        self._cwd = cwd
        self._lock = threading.Lock()
        self._child: Optional[subprocess.Popen] = None
        self._shutting_down = False

    @property
    def config(self) -> AgentConfig:
        return self._config

    # -------------------------
    # Invocation
    # -------------------------

    def invoke(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        output_mode: Optional[OutputMode] = None,
        callbacks: Optional[StreamCallbacks] = None,
        cancel_token: Optional[CancelToken] = None,
        cwd: Optional[Path] = None,
    ) -> AgentResult:
        """Run the agent once and wait for it to exit.

        Raises:
            ValueError: If the prompt is empty
            ProcessLaunchError: If the agent cannot be started
            ProcessExecutionError: If the agent exits non-zero, or the client is shut down
            IterationCancelled: If ``cancel_token`` fires before or during the run
        """
        if not prompt or not prompt.strip():
            raise ValueError("Prompt cannot be empty")
        if self._shutting_down:
            raise ProcessExecutionError("client is shutting down")
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()

        mode = output_mode or self._config.output_mode
        callbacks = callbacks or StreamCallbacks()
        argv, stdin_text = build_agent_invocation(
            self._config, prompt, system_prompt, mode
        )
        workdir = cwd or self._cwd

        logger.debug(
            "Executing (%s): %s with %d args", mode.value, argv[0], len(argv) - 1
        )

        started = time.monotonic()
        try:
            proc = subprocess.Popen(
                argv,
                cwd=str(workdir) if workdir is not None else None,
                stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                **popen_session_kwargs(),
            )
        except FileNotFoundError as e:
            raise ProcessLaunchError(argv[0], "command not found in PATH") from e
        except PermissionError as e:
            raise ProcessLaunchError(argv[0], "permission denied") from e
        except OSError as e:
            raise ProcessLaunchError(argv[0], str(e)) from e

        with self._lock:
            self._child = proc

        try:
            # shutdown() may have run between Popen and registration
            if self._shutting_down:
                self._terminate(proc, self._config.shutdown_grace_seconds)
                raise IterationCancelled("execution cancelled during shutdown")
            return self._collect(proc, mode, stdin_text, callbacks, cancel_token, started)
        finally:
            # unwinding on a forced exit; the child must not outlive the call
            if proc.poll() is None:
                signal_process(proc, _SIGKILL)
                proc.wait()
            with self._lock:
                if self._child is proc:
                    self._child = None

    def _collect(
        self,
        proc: subprocess.Popen,
        mode: OutputMode,
        stdin_text: Optional[str],
        callbacks: StreamCallbacks,
        cancel_token: Optional[CancelToken],
        started: float,
    ) -> AgentResult:
        state = _InvocationState(mode is OutputMode.STREAMING, callbacks)

        readers = []
        if proc.stdout is not None:
            readers.append(start_line_reader(proc.stdout, state.on_stdout, "agent-stdout"))
        if proc.stderr is not None:
            readers.append(start_line_reader(proc.stderr, state.on_stderr, "agent-stderr"))

        if stdin_text is not None and proc.stdin is not None:
            try:
                proc.stdin.write(stdin_text)
                proc.stdin.flush()
            except OSError:
                # child exited before reading stdin; its exit code tells the story
                pass
            finally:
                try:
                    proc.stdin.close()
                except OSError:
                    pass

        cancelled = False
        while True:
            try:
                proc.wait(timeout=_POLL_INTERVAL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                if cancel_token is not None and cancel_token.cancelled:
                    cancelled = True
                    logger.debug("Cancellation requested; stopping agent (PID: %s)", proc.pid)
                    self.shutdown(self._config.shutdown_grace_seconds)
                    break

        for reader in readers:
            reader.join(timeout=_READER_JOIN_SECONDS)

        duration = time.monotonic() - started
        returncode = proc.returncode if proc.returncode is not None else -1

        if cancelled or self._shutting_down:
            raise IterationCancelled(
                cancel_token.reason if cancel_token is not None and cancel_token.reason
                else "execution cancelled during shutdown"
            )

        if returncode != 0:
            exit_info = f"signal {-returncode}" if returncode < 0 else f"code {returncode}"
            stderr = state.stderr
            logger.debug("Agent exited with %s\nstderr: %s", exit_info, stderr)
            raise ProcessExecutionError(
                f"agent exited with {exit_info}",
                returncode=returncode,
                stderr=stderr[-_STDERR_TAIL_CHARS:],
            )

        stdout = state.stdout
        return AgentResult(
            output=state.final_result if state.final_result is not None else stdout,
            stdout=stdout,
            stderr=state.stderr,
            returncode=returncode,
            duration_seconds=duration,
            events=state.events,
            parse_errors=state.parse_errors,
        )

    # -------------------------
    # Lifecycle
    # -------------------------

    def shutdown(self, timeout: float = 5.0) -> None:
        """Stop the active child: SIGTERM, wait ``timeout`` seconds, then SIGKILL.

        Idempotent; a no-op when nothing is running. The client accepts no
        further invocations afterwards.
        """
        self._shutting_down = True

        with self._lock:
            child = self._child

        if child is None or child.poll() is not None:
            logger.debug("No child process to shut down")
            return

        self._terminate(child, timeout)

    def _terminate(self, child: subprocess.Popen, timeout: float) -> None:
        pid = child.pid
        logger.debug("Sending SIGTERM to child process (PID: %s)", pid)
        signal_process(child, signal.SIGTERM)
        try:
            child.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.warning(
                "Grace period expired, sending SIGKILL to child process (PID: %s)", pid
            )
            signal_process(child, _SIGKILL)
            child.wait()
        logger.debug("Child process (PID: %s) exited", pid)

    def kill(self, sig: int = signal.SIGTERM) -> bool:
        """Send ``sig`` to the running child without waiting. True if one was running."""
        with self._lock:
            child = self._child
        if child is None or child.poll() is not None:
            return False
        logger.debug("Killing child process (PID: %s) with signal %s", child.pid, sig)
        signal_process(child, sig)
        return True

    def is_shutdown(self) -> bool:
        return self._shutting_down

    def has_running_child(self) -> bool:
        with self._lock:
            child = self._child
        return child is not None and child.poll() is None

    # -------------------------
    # Probes
    # -------------------------

    def get_version(self) -> Optional[str]:
        try:
            result = run_subprocess(
                [self._config.command, "--version"],
                timeout=_VERSION_PROBE_TIMEOUT_SECONDS,
            )
        except (ProcessLaunchError, ProcessExecutionError) as e:
            logger.debug("Version probe failed: %s", e)
            return None
        if not result.success:
            return None
        return result.stdout.strip()

    def is_available(self) -> bool:
        """True if ``<command> --version`` runs and exits 0."""
        return self.get_version() is not None
