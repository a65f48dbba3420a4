"""Subprocess utilities shared by the agent client.

- ``run_subprocess`` for short, blocking commands (version probes)
- ``start_line_reader`` to pump a child's pipe on a daemon thread
- ``signal_process`` to deliver a signal to a child and its process group

Commands are always executed as argv lists, never through a shell.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, List, Optional

from .errors import ProcessExecutionError, ProcessLaunchError

logger = logging.getLogger(__name__)

IS_POSIX = os.name == "posix"


@dataclass
class SubprocessResult:
    """Result of a blocking subprocess execution.

    Attributes:
        returncode: The exit code of the process (0 = success)
        stdout: Captured standard output
        stderr: Captured standard error
        cmd_str: String representation of the command (for logging)
    """

    returncode: int
    stdout: str
    stderr: str
    cmd_str: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0


def run_subprocess(
    argv: List[str],
    cwd: Optional[Path] = None,
    timeout: Optional[float] = None,
    env: Optional[dict] = None,
) -> SubprocessResult:
    """Run a command to completion and capture its output.

    Raises:
        ProcessLaunchError: If the command cannot be started
        ProcessExecutionError: If the command exceeds ``timeout``
    """
    cmd_str = " ".join(argv)

    kwargs: dict = {
        "capture_output": True,
        "text": True,
        "encoding": "utf-8",
        "errors": "replace",
        "stdin": subprocess.DEVNULL,
    }
    if cwd is not None:
        kwargs["cwd"] = str(cwd)
    if timeout is not None:
        kwargs["timeout"] = timeout
    if env is not None:
        kwargs["env"] = env

    try:
        cp = subprocess.run(argv, **kwargs)
    except subprocess.TimeoutExpired as e:
        raise ProcessExecutionError(f"command timed out after {timeout}s: {cmd_str}") from e
    except FileNotFoundError as e:
        raise ProcessLaunchError(argv[0], "command not found in PATH") from e
    except PermissionError as e:
        raise ProcessLaunchError(argv[0], "permission denied") from e
    except OSError as e:
        raise ProcessLaunchError(argv[0], str(e)) from e

    return SubprocessResult(
        returncode=cp.returncode,
        stdout=cp.stdout or "",
        stderr=cp.stderr or "",
        cmd_str=cmd_str,
    )


def start_line_reader(
    stream: IO[str],
    on_line: Callable[[str], None],
    name: str = "pipe-reader",
) -> threading.Thread:
    """Read ``stream`` line by line on a daemon thread until EOF.

    Exceptions raised by ``on_line`` are logged and reading continues, so a
    faulty consumer cannot leave the child blocked on a full pipe.
    """

    def _pump() -> None:
        try:
            for line in iter(stream.readline, ""):
                try:
                    on_line(line)
                except Exception:
                    logger.exception("Output consumer failed on line from %s", name)
        except (OSError, ValueError) as e:
            # pipe closed underneath us during a forced shutdown
            logger.debug("Reader %s stopped: %s", name, e)

    thread = threading.Thread(target=_pump, name=name, daemon=True)
    thread.start()
    return thread


def popen_session_kwargs() -> dict:
    """Put the child in its own process group so signals reach its helpers too."""
    if IS_POSIX:
        return {"start_new_session": True}
    return {}


def signal_process(proc: subprocess.Popen, sig: int) -> None:
    """Send ``sig`` to the child's process group (POSIX) or the child itself."""
    if proc.poll() is not None:
        return
    try:
        if IS_POSIX:
            os.killpg(proc.pid, sig)
        elif sig == getattr(signal, "SIGKILL", None):
            proc.kill()
        else:
            proc.terminate()
    except ProcessLookupError:
        pass
    except PermissionError:
        # group contains processes we may not signal; fall back to the child
        proc.send_signal(sig)
