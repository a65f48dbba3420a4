"""Status artifact watcher.

Watches the workspace directory with watchdog and emits ``StatusChanged``
on an ``EventBus`` when the agent rewrites ``.status.json`` mid-iteration.
Bursts of writes are debounced; only valid artifacts are considered, and by
default only progress, completion or summary changes are reported.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import WatchConfig
from .events import EventBus, StatusChanged, StatusDelta
from .status import STATUS_FILENAME, StatusArtifact, read_status

logger = logging.getLogger(__name__)


def _counts(status: Optional[StatusArtifact]) -> tuple:
    if status is None or status.progress is None:
        return (0, 0)
    return (status.progress.completed, status.progress.total)


def compute_delta(previous: Optional[StatusArtifact], current: StatusArtifact) -> StatusDelta:
    prev_completed, prev_total = _counts(previous)
    cur_completed, cur_total = _counts(current)
    if previous is None:
        return StatusDelta(
            progress_changed=True,
            completed_delta=cur_completed,
            total_delta=cur_total,
            completion_changed=current.complete,
            summary_changed=True,
        )
    return StatusDelta(
        progress_changed=(prev_completed, prev_total) != (cur_completed, cur_total),
        completed_delta=cur_completed - prev_completed,
        total_delta=cur_total - prev_total,
        completion_changed=previous.complete != current.complete,
        summary_changed=previous.summary != current.summary,
    )


def has_meaningful_change(
    previous: Optional[StatusArtifact],
    current: StatusArtifact,
    only_meaningful: bool = True,
) -> bool:
    if previous is None or not only_meaningful:
        return True
    delta = compute_delta(previous, current)
    return delta.progress_changed or delta.completion_changed or delta.summary_changed


class _StatusFileHandler(FileSystemEventHandler):
    def __init__(self, status_path: Path, on_change: Callable[[], None]):
        super().__init__()
        self._name = status_path.name
        self._on_change = on_change

    def _touches_status(self, event: FileSystemEvent) -> bool:
        if event.is_directory:
            return False
        paths = [event.src_path, getattr(event, "dest_path", "")]
        return any(p and Path(str(p)).name == self._name for p in paths)

    def on_modified(self, event: FileSystemEvent) -> None:
        if self._touches_status(event):
            self._on_change()

    def on_created(self, event: FileSystemEvent) -> None:
        self.on_modified(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        # atomic writers rename a temp file over the artifact
        self.on_modified(event)


class StatusFileWatcher:
    def __init__(
        self,
        workspace_path: Path,
        events: EventBus,
        config: Optional[WatchConfig] = None,
        iteration: Optional[Callable[[], int]] = None,
    ):
        cfg = config or WatchConfig()
        self.status_path = workspace_path / STATUS_FILENAME
        self._events = events
        self._debounce_seconds = max(0, cfg.debounce_ms) / 1000.0
        self._only_meaningful = cfg.notify_only_meaningful
        self._iteration = iteration or (lambda: 0)
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._observer: Optional[Observer] = None
        self._previous: Optional[StatusArtifact] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def _read_valid(self) -> Optional[StatusArtifact]:
        if not self.status_path.exists():
            return None
        status = read_status(self.status_path)
        return status if status.valid else None

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._previous = self._read_valid()

        handler = _StatusFileHandler(self.status_path, self._schedule)
        observer = Observer()
        observer.schedule(handler, str(self.status_path.parent), recursive=False)
        observer.daemon = True
        try:
            observer.start()
        except OSError as e:
            logger.warning("Could not start status watcher on %s: %s", self.status_path.parent, e)
            self._running = False
            return
        self._observer = observer
        logger.debug("Watching %s (debounce %.1fs)", self.status_path, self._debounce_seconds)

    def stop(self) -> None:
        self._running = False
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5.0)
            self._observer = None

    def _schedule(self) -> None:
        if not self._running:
            return
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(self._debounce_seconds, self.check_now)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def check_now(self) -> Optional[StatusChanged]:
        """Read the artifact and emit ``StatusChanged`` if it changed meaningfully."""
        current = self._read_valid()
        if current is None:
            return None
        previous = self._previous
        if not has_meaningful_change(previous, current, self._only_meaningful):
            return None
        event = StatusChanged(
            previous=previous,
            current=current,
            delta=compute_delta(previous, current),
            iteration=self._iteration(),
        )
        self._previous = current
        self._events.emit(event)
        return event

    def __enter__(self) -> "StatusFileWatcher":
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()
