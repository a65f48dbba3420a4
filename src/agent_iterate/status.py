"""Status artifact reader.

The agent maintains a small JSON document (``.status.json``) in the
workspace. This module turns it into a typed, validated record once per read.
Nothing here raises for a missing or broken file: the reader falls back to
"not complete, progress unknown" and records why.

Completion is decided by the ``complete`` field alone. No other field, and
no other file in the workspace, can finish a run.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import InvalidStatusArtifact

logger = logging.getLogger(__name__)

STATUS_FILENAME = ".status.json"


@dataclass(frozen=True)
class Progress:
    completed: int
    total: int


@dataclass(frozen=True)
class StatusArtifact:
    """Normalized view of the status document.

    Attributes:
        complete: True only when the agent explicitly reported completion
        progress: completed/total counters (loop mode)
        worked: whether the last iteration did anything (iterative mode)
        summary: free text for display
        phase: free text for display
        notes: free text for display
        blockers: free text items for display
        last_updated: ISO-8601 timestamp, informational only
        warnings: problems found while reading; empty for a clean read
        valid: False when the file was missing or rejected
    """

    complete: bool = False
    progress: Optional[Progress] = None
    worked: Optional[bool] = None
    summary: Optional[str] = None
    phase: Optional[str] = None
    notes: Optional[str] = None
    blockers: List[str] = field(default_factory=list)
    last_updated: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    valid: bool = True


@dataclass
class StatusValidation:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_iso8601(value: str) -> bool:
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        datetime.fromisoformat(text)
    except ValueError:
        return False
    return True


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"'{key}' must be a string")
    return value


def parse_status(data: Any) -> StatusArtifact:
    """Validate decoded JSON into a StatusArtifact.

    Raises:
        ValueError: describing the first schema violation found
    """
    if not isinstance(data, dict):
        raise ValueError("top-level value must be an object")

    if "complete" not in data:
        raise ValueError("'complete' is required")
    complete = data["complete"]
    if not isinstance(complete, bool):
        raise ValueError("'complete' must be a boolean")

    progress: Optional[Progress] = None
    progress_raw = data.get("progress")
    if progress_raw is not None:
        if not isinstance(progress_raw, dict):
            raise ValueError("'progress' must be an object")
        completed = progress_raw.get("completed")
        total = progress_raw.get("total")
        if not _is_int(completed) or completed < 0:
            raise ValueError("'progress.completed' must be a non-negative integer")
        if not _is_int(total) or total < 0:
            raise ValueError("'progress.total' must be a non-negative integer")
        progress = Progress(completed=completed, total=total)

    worked = data.get("worked")
    if worked is not None and not isinstance(worked, bool):
        raise ValueError("'worked' must be a boolean")

    blockers_raw = data.get("blockers")
    blockers: List[str] = []
    if blockers_raw is not None:
        if not isinstance(blockers_raw, list) or not all(
            isinstance(b, str) for b in blockers_raw
        ):
            raise ValueError("'blockers' must be a list of strings")
        blockers = list(blockers_raw)

    last_updated = _optional_str(data, "lastUpdated")
    if last_updated is not None and not _is_iso8601(last_updated):
        raise ValueError("'lastUpdated' must be an ISO-8601 timestamp")

    return StatusArtifact(
        complete=complete,
        progress=progress,
        worked=worked,
        summary=_optional_str(data, "summary"),
        phase=_optional_str(data, "phase"),
        notes=_optional_str(data, "notes"),
        blockers=blockers,
        last_updated=last_updated,
        warnings=consistency_warnings(complete, progress),
    )


def consistency_warnings(complete: bool, progress: Optional[Progress]) -> List[str]:
    """Numeric inconsistencies worth reporting; they never block the loop."""
    warnings: List[str] = []
    if progress is None:
        return warnings
    if progress.completed > progress.total:
        warnings.append(
            f"Completed ({progress.completed}) exceeds total ({progress.total})"
        )
    if complete and progress.completed != progress.total:
        warnings.append(
            f"Marked complete but progress is {progress.completed}/{progress.total}"
        )
    return warnings


def _fallback(problem: InvalidStatusArtifact) -> StatusArtifact:
    return StatusArtifact(complete=False, warnings=[problem.reason], valid=False)


def read_status(path: Path) -> StatusArtifact:
    """Read and validate the status artifact at ``path``.

    Accepts either the file itself or a workspace directory. Never raises:
    a missing, unreadable, torn or schema-violating file yields
    ``StatusArtifact(complete=False, valid=False)`` with the reason in
    ``warnings``.
    """
    if path.is_dir():
        path = path / STATUS_FILENAME

    if not path.exists():
        problem = InvalidStatusArtifact(path, "status file does not exist")
        logger.debug("%s", problem)
        return _fallback(problem)

    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        problem = InvalidStatusArtifact(path, f"unreadable: {e}")
        logger.warning("%s", problem)
        return _fallback(problem)

    try:
        data = json.loads(raw)
    except (ValueError, RecursionError) as e:
        # JSONDecodeError, oversized int literals, pathological nesting
        problem = InvalidStatusArtifact(path, f"invalid JSON: {e}")
        logger.warning("%s", problem)
        return _fallback(problem)

    try:
        status = parse_status(data)
    except ValueError as e:
        problem = InvalidStatusArtifact(path, f"invalid format: {e}")
        logger.warning("%s", problem)
        return _fallback(problem)

    for warning in status.warnings:
        logger.warning("Status artifact %s: %s", path, warning)
    return status


def is_complete(status: StatusArtifact) -> bool:
    return status.complete is True


def remaining(status: StatusArtifact) -> Optional[int]:
    """``total - completed`` when progress is known and consistent, else None."""
    progress = status.progress
    if progress is None or progress.completed > progress.total:
        return None
    return progress.total - progress.completed


def progress_percentage(status: StatusArtifact) -> int:
    progress = status.progress
    if progress is None or progress.total <= 0:
        return 0
    return round(min(progress.completed, progress.total) / progress.total * 100)


def validate_status(path: Path) -> StatusValidation:
    """Report schema errors and consistency warnings for display."""
    status = read_status(path)
    if not status.valid:
        return StatusValidation(valid=False, errors=list(status.warnings))
    return StatusValidation(valid=True, warnings=list(status.warnings))
