from __future__ import annotations

import threading
import time
from typing import Optional


class CancelToken:
    """
    Cooperative cancellation for one pipeline run.

    Work checks `cancelled` before starting a network call; calls already in
    flight are allowed to finish.
    """

    def __init__(self, deadline_sec: Optional[float] = None):
        self._event = threading.Event()
        self._deadline = (time.monotonic() + deadline_sec) if deadline_sec else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._event.set()
            return True
        return False

    def remaining(self) -> Optional[float]:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def wait(self, seconds: float) -> bool:
        """Sleep up to `seconds`; returns True if cancelled meanwhile."""
        timeout = max(0.0, seconds)
        remaining = self.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)
        self._event.wait(timeout)
        return self.cancelled
