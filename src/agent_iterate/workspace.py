"""Workspace files the engine touches.

A workspace is a directory holding the task instructions, the agent's
status artifact and a small metadata document with durable counters. This
module only reads instructions and updates counters after a run; creating,
listing and deleting workspaces is handled elsewhere.

Layout::

    <workspace>/
        INSTRUCTIONS.md     task description (read-only here)
        .status.json        written by the agent, read by status.read_status
        .metadata.json      mode and counters, updated by record_run
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Optional

from .atomic_file import atomic_write_json
from .config import Mode, parse_mode
from .errors import ConfigError, WorkspaceError
from .status import STATUS_FILENAME

if TYPE_CHECKING:
    from .loop import RunResult

logger = logging.getLogger(__name__)

INSTRUCTIONS_FILENAME = "INSTRUCTIONS.md"
METADATA_FILENAME = ".metadata.json"

# durable workspace status per terminal reason
_STATUS_BY_REASON = {
    "explicit-completion": "completed",
    "stagnation": "stagnated",
    "max-iterations": "in_progress",
    "fatal-error": "error",
    "cancelled": "cancelled",
    "none": "in_progress",
}


@dataclass
class WorkspaceMetadata:
    name: str
    mode: Mode = Mode.LOOP
    status: str = "in_progress"
    total_iterations: int = 0
    setup_iterations: int = 0
    execution_iterations: int = 0
    created: Optional[str] = None
    last_run: Optional[str] = None
    max_iterations: Optional[int] = None
    delay_seconds: Optional[int] = None
    stagnation_threshold: Optional[int] = None


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _opt_int(data: Dict[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


class Workspace:
    def __init__(self, path: Path):
        self.path = path

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def status_path(self) -> Path:
        return self.path / STATUS_FILENAME

    @property
    def instructions_path(self) -> Path:
        return self.path / INSTRUCTIONS_FILENAME

    @property
    def metadata_path(self) -> Path:
        return self.path / METADATA_FILENAME

    def ensure_exists(self) -> None:
        if not self.path.is_dir():
            raise WorkspaceError(f"Workspace not found: {self.path}")

    def has_instructions(self) -> bool:
        return self.instructions_path.is_file()

    def read_instructions(self) -> str:
        if not self.has_instructions():
            raise WorkspaceError(
                f"Instructions not found: {self.instructions_path}. "
                "Write the task description there before running."
            )
        return self.instructions_path.read_text(encoding="utf-8")

    # -------------------------
    # Metadata
    # -------------------------

    def _read_raw_metadata(self) -> Dict[str, Any]:
        if not self.metadata_path.exists():
            return {}
        try:
            data = json.loads(self.metadata_path.read_text(encoding="utf-8"))
        except (ValueError, RecursionError) as e:
            raise WorkspaceError(f"Invalid metadata in {self.metadata_path}: {e}") from e
        if not isinstance(data, dict):
            raise WorkspaceError(f"Invalid metadata in {self.metadata_path}: not an object")
        return data

    def load_metadata(self) -> WorkspaceMetadata:
        data = self._read_raw_metadata()
        try:
            mode = parse_mode(data.get("mode", Mode.LOOP.value))
        except ConfigError as e:
            raise WorkspaceError(f"{self.metadata_path}: {e}") from e
        return WorkspaceMetadata(
            name=str(data.get("name") or self.name),
            mode=mode,
            status=str(data.get("status", "in_progress")),
            total_iterations=_opt_int(data, "totalIterations") or 0,
            setup_iterations=_opt_int(data, "setupIterations") or 0,
            execution_iterations=_opt_int(data, "executionIterations") or 0,
            created=data.get("created"),
            last_run=data.get("lastRun"),
            max_iterations=_opt_int(data, "maxIterations"),
            delay_seconds=_opt_int(data, "delay"),
            stagnation_threshold=_opt_int(data, "stagnationThreshold"),
        )

    def record_run(self, result: "RunResult") -> WorkspaceMetadata:
        """Add the run's iterations to the durable counters and store its outcome.

        Unknown keys already in the metadata file are preserved.
        """
        data = self._read_raw_metadata()
        iterations = result.iteration_count
        data.setdefault("name", self.name)
        data.setdefault("created", _utc_now_iso())
        data.setdefault("mode", result.mode.value)
        data["totalIterations"] = (_opt_int(data, "totalIterations") or 0) + iterations
        data["executionIterations"] = (_opt_int(data, "executionIterations") or 0) + iterations
        data["status"] = _STATUS_BY_REASON.get(result.terminal_reason.value, "in_progress")
        data["lastRun"] = _utc_now_iso()

        atomic_write_json(self.metadata_path, data)
        logger.debug(
            "Recorded %d iteration(s) for %s (status=%s)",
            iterations,
            self.name,
            data["status"],
        )
        return self.load_metadata()
