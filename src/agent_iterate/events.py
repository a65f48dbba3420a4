"""Lifecycle events emitted by the iteration loop.

Observers (console reporting, the run log, anything that wants to forward
notifications) subscribe to an ``EventBus``. Delivery is synchronous on the
emitting thread. A failing observer is logged and skipped; it never affects
the run.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Tuple, Type, Union

from .config import Mode

logger = logging.getLogger(__name__)

MILESTONE_INTERVAL = 10


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ExecutionStart:
    workspace: str
    mode: Mode
    max_iterations: int
    timestamp: datetime = field(default_factory=_now)
    # text the run sends the agent, fixed for the whole run
    instructions: Optional[str] = None
    system_prompt: Optional[str] = None
    status_instructions: Optional[str] = None

    name = "execution-start"


@dataclass(frozen=True)
class IterationStart:
    iteration: int
    timestamp: datetime = field(default_factory=_now)

    name = "iteration-start"


@dataclass(frozen=True)
class IterationComplete:
    iteration: int
    remaining: Optional[int]
    summary: Optional[str] = None
    worked: Optional[bool] = None
    timestamp: datetime = field(default_factory=_now)

    name = "iteration-complete"


@dataclass(frozen=True)
class Milestone:
    iteration: int
    remaining: Optional[int]
    timestamp: datetime = field(default_factory=_now)

    name = "milestone"


@dataclass(frozen=True)
class Completion:
    """The run reached a terminal state other than an error.

    ``reason`` is a TerminalReason value: explicit-completion, stagnation,
    max-iterations or cancelled.
    """

    iteration: int
    reason: str
    remaining: Optional[int] = None
    timestamp: datetime = field(default_factory=_now)

    name = "completion"


@dataclass(frozen=True)
class IterationError:
    iteration: int
    error: BaseException
    timestamp: datetime = field(default_factory=_now)

    name = "error"


@dataclass(frozen=True)
class StatusDelta:
    progress_changed: bool
    completed_delta: int
    total_delta: int
    completion_changed: bool
    summary_changed: bool


@dataclass(frozen=True)
class StatusChanged:
    """Emitted by the status watcher when the artifact changes meaningfully."""

    previous: Optional[object]
    current: object
    delta: StatusDelta
    iteration: int = 0
    timestamp: datetime = field(default_factory=_now)

    name = "status-update"


LifecycleEvent = Union[
    ExecutionStart,
    IterationStart,
    IterationComplete,
    Milestone,
    Completion,
    IterationError,
    StatusChanged,
]

Observer = Callable[[LifecycleEvent], None]


def is_milestone(iteration: int) -> bool:
    return iteration > 0 and iteration % MILESTONE_INTERVAL == 0


class EventBus:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: List[Tuple[Observer, Optional[Tuple[Type, ...]]]] = []

    def subscribe(
        self,
        callback: Observer,
        kinds: Optional[Iterable[Type]] = None,
    ) -> Observer:
        """Register ``callback``; restrict to event classes in ``kinds`` if given."""
        filt = tuple(kinds) if kinds is not None else None
        with self._lock:
            self._subscribers.append((callback, filt))
        return callback

    def unsubscribe(self, callback: Observer) -> None:
        with self._lock:
            self._subscribers = [s for s in self._subscribers if s[0] is not callback]

    def emit(self, event: LifecycleEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback, kinds in subscribers:
            if kinds is not None and not isinstance(event, kinds):
                continue
            try:
                callback(event)
            except Exception:
                logger.exception("Observer %r failed handling %s", callback, event.name)

    def __len__(self) -> int:
        return len(self._subscribers)


class EventRecorder:
    """Observer that keeps every event; handy for callers and tests."""

    def __init__(self) -> None:
        self.events: List[LifecycleEvent] = []

    def __call__(self, event: LifecycleEvent) -> None:
        self.events.append(event)

    def names(self) -> List[str]:
        return [e.name for e in self.events]

    def of_type(self, kind: Type) -> List[LifecycleEvent]:
        return [e for e in self.events if isinstance(e, kind)]

