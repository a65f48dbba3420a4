"""Exception taxonomy for the iteration engine.

Only launch failures, non-zero agent exits and unexpected errors halt a run.
Stream parse problems and broken status artifacts are absorbed where they
happen and surface as degraded information instead.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class IterateError(Exception):
    """Base class for all agent-iterate errors."""


class ConfigError(IterateError):
    """Invalid engine or agent configuration."""

    def __init__(self, message: str):
        super().__init__(f"Invalid configuration: {message}")


class WorkspaceError(IterateError):
    """The workspace is missing something the engine needs."""


class ProcessLaunchError(IterateError):
    """The agent binary could not be started (missing, not executable)."""

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to launch agent '{command}': {reason}")


class ProcessExecutionError(IterateError):
    """The agent ran but exited unsuccessfully."""

    def __init__(
        self,
        message: str,
        returncode: Optional[int] = None,
        stderr: str = "",
    ):
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"Agent execution failed: {message}")


class IterationCancelled(IterateError):
    """A cancellation request interrupted the current iteration or delay."""


class StreamParseError(IterateError):
    """A line of structured agent output could not be parsed.

    Never raised out of the client; handed to ``on_error`` callbacks.
    """

    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        preview = line if len(line) <= 120 else line[:120] + "…"
        super().__init__(f"Unparseable stream record ({reason}): {preview}")


class InvalidStatusArtifact(IterateError):
    """The status artifact is missing or does not match the expected shape.

    Built by the status reader to describe a warning; never propagated.
    """

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Invalid status artifact {path}: {reason}")


class FatalIterationError(IterateError):
    """An unexpected exception escaped an iteration."""

    def __init__(self, iteration: int, cause: BaseException):
        self.iteration = iteration
        self.cause = cause
        super().__init__(f"Iteration {iteration} failed: {cause}")
