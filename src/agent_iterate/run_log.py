"""Per-run execution log written into the workspace.

The log is a plain text file (``iterate-<timestamp>.log``) holding the run
metadata, the prompts sent with every iteration, and each iteration's raw
agent output framed by a header and footer. It is a lifecycle-event observer
plus an ``append_output`` sink for raw output chunks.

Logging must never affect the run: the first write failure disables the log.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .events import (
    Completion,
    ExecutionStart,
    IterationComplete,
    IterationError,
    IterationStart,
    LifecycleEvent,
    StatusChanged,
)

logger = logging.getLogger(__name__)

BUFFER_LIMIT = 10 * 1024
_RULE = "=" * 80


def _iso(ts: Optional[datetime] = None) -> str:
    return (ts or datetime.now(timezone.utc)).isoformat()


def default_log_path(workspace_path: Path, now: Optional[datetime] = None) -> Path:
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H-%M-%S")
    return workspace_path / f"iterate-{stamp}.log"


def _section(title: str, body: str) -> str:
    return f"{_RULE}\n{title}\n{_RULE}\n{body}\n\n"


class RunLog:
    def __init__(self, path: Path, enabled: bool = True):
        self.path = path
        self._enabled = enabled
        self._initialized = False
        self._buffer: List[str] = []
        self._buffered = 0
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    # -------------------------
    # Writing
    # -------------------------

    def _write(self, text: str, mode: str = "a") -> None:
        if not self._enabled:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, mode, encoding="utf-8") as fh:
                fh.write(text)
        except OSError as e:
            logger.warning("Run log disabled after write failure (%s): %s", self.path, e)
            self._enabled = False

    def _ensure_started(self) -> None:
        if self._initialized or not self._enabled:
            return
        header = f"{_RULE}\nAGENT ITERATE - EXECUTION LOG\nStarted: {_iso()}\n{_RULE}\n\n"
        self._write(header, mode="w")
        self._initialized = True

    def _append(self, text: str) -> None:
        with self._lock:
            self._ensure_started()
            self._flush_locked()
            self._write(text)

    def _flush_locked(self) -> None:
        if not self._buffer:
            return
        data = "".join(self._buffer)
        self._buffer = []
        self._buffered = 0
        self._write(data)

    def flush(self) -> None:
        with self._lock:
            if self._buffer and self._enabled:
                self._ensure_started()
            self._flush_locked()

    def append_output(self, chunk: str) -> None:
        """Buffer a raw output chunk; flushed when the buffer passes 10 KB."""
        if not self._enabled:
            return
        with self._lock:
            self._buffer.append(chunk)
            self._buffered += len(chunk)
            if self._buffered > BUFFER_LIMIT:
                self._ensure_started()
                self._flush_locked()

    # -------------------------
    # Sections
    # -------------------------

    def log_run_start(
        self,
        workspace: str,
        mode: str,
        max_iterations: int,
        start_time: Optional[datetime] = None,
    ) -> None:
        body = (
            f"Workspace: {workspace}\n"
            f"Mode: {mode}\n"
            f"Max Iterations: {max_iterations}\n"
            f"Start Time: {_iso(start_time)}"
        )
        self._append(_section("RUN METADATA", body))

    def log_instructions(self, content: str) -> None:
        self._append(_section("INSTRUCTIONS", content))

    def log_system_prompt(self, prompt: str) -> None:
        self._append(_section("SYSTEM PROMPT", prompt))

    def log_status_instructions(self, text: str) -> None:
        self._append(_section("STATUS INSTRUCTIONS", text))

    def log_iteration_start(self, iteration: int, start_time: Optional[datetime] = None) -> None:
        self._append(
            f"{_RULE}\nITERATION {iteration}\nStarted: {_iso(start_time)}\n{_RULE}\n\n"
            "AGENT OUTPUT:\n"
        )

    def log_iteration_complete(
        self, iteration: int, status: str, remaining: Optional[int] = None
    ) -> None:
        footer = f"\n\nSTATUS: {status}\nCompleted: {_iso()}\n"
        if remaining is not None:
            footer += f"Remaining: {remaining}\n"
        self._append(footer)

    def log_error(self, iteration: int, error: BaseException) -> None:
        self._append(
            f"\n\nERROR (Iteration {iteration}):\n"
            f"Time: {_iso()}\n"
            f"Type: {type(error).__name__}\n"
            f"Message: {error}\n"
        )

    def log_completion(self, iteration: int, reason: str, remaining: Optional[int]) -> None:
        body = f"Reason: {reason}\nIterations: {iteration}"
        if remaining is not None:
            body += f"\nRemaining: {remaining}"
        self._append(_section("RUN FINISHED", body))

    # -------------------------
    # Observer
    # -------------------------

    def __call__(self, event: LifecycleEvent) -> None:
        if isinstance(event, ExecutionStart):
            self.log_run_start(
                event.workspace, event.mode.value, event.max_iterations, event.timestamp
            )
            if event.instructions is not None:
                self.log_instructions(event.instructions)
            if event.system_prompt is not None:
                self.log_system_prompt(event.system_prompt)
            if event.status_instructions is not None:
                self.log_status_instructions(event.status_instructions)
        elif isinstance(event, IterationStart):
            self.log_iteration_start(event.iteration, event.timestamp)
        elif isinstance(event, IterationComplete):
            self.log_iteration_complete(event.iteration, "success", event.remaining)
        elif isinstance(event, IterationError):
            self.log_error(event.iteration, event.error)
        elif isinstance(event, Completion):
            self.log_completion(event.iteration, event.reason, event.remaining)
        elif isinstance(event, StatusChanged):
            self._append(f"\n[status update] {_describe_delta(event)}\n")

    def close(self) -> None:
        self.flush()


def _describe_delta(event: StatusChanged) -> str:
    delta = event.delta
    parts = []
    if delta.progress_changed:
        parts.append(f"progress {delta.completed_delta:+d} completed, {delta.total_delta:+d} total")
    if delta.completion_changed:
        parts.append("completion changed")
    if delta.summary_changed:
        parts.append("summary changed")
    return "; ".join(parts) or "artifact rewritten"
