"""Stagnation detection for iterative mode.

An iterative-mode agent reports ``worked: false`` when an iteration found
nothing to do. After ``threshold`` such iterations in a row the run is
stopped as stagnated. Any iteration that reports ``worked: true``, or omits
the field, resets the streak. A threshold of 0 disables detection.
"""

from __future__ import annotations

import logging

from .status import StatusArtifact

logger = logging.getLogger(__name__)


class StagnationTracker:
    def __init__(self, threshold: int):
        if threshold < 0:
            raise ValueError(f"stagnation threshold must be >= 0 (got {threshold})")
        self._threshold = threshold
        self._count = 0

    @property
    def threshold(self) -> int:
        return self._threshold

    @property
    def count(self) -> int:
        """Consecutive iterations that reported no work."""
        return self._count

    @property
    def enabled(self) -> bool:
        return self._threshold > 0

    def reset(self) -> None:
        self._count = 0

    def update(self, status: StatusArtifact) -> bool:
        """Record one iteration's status; True once the streak reaches the threshold."""
        if status.worked is False:
            self._count += 1
            logger.debug("No work detected (%d/%d)", self._count, self._threshold)
        else:
            self._count = 0
        return self.is_stagnated()

    def is_stagnated(self) -> bool:
        return self.enabled and self._count >= self._threshold
