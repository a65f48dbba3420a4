"""Cooperative cancellation.

A ``CancelToken`` is created per run and handed to everything that can
block: the agent client checks it before spawning and while waiting on the
child, the loop checks it between iterations and sleeps on it during the
inter-iteration delay. Setting it is safe from a signal handler.
"""

from __future__ import annotations

import threading
from typing import Optional

from .errors import IterationCancelled


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise IterationCancelled(self._reason or "cancelled")

    def wait(self, timeout: float) -> bool:
        """Block up to ``timeout`` seconds; True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first.

        Raises:
            IterationCancelled: if the token is set before or during the sleep
        """
        self.raise_if_cancelled()
        if seconds > 0 and self._event.wait(seconds):
            self.raise_if_cancelled()
