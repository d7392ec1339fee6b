"""Last-event-timestamp guard for connection lifecycle events."""

import time
from threading import RLock
from typing import Callable, Optional


class EventDebouncer:
    """
    Suppress lifecycle events that follow another one too closely.

    Connected and Disconnected events share one timestamp, so a platform
    that reports a link change twice in quick succession produces a single
    event. Each check supplies its own window.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.monotonic
        self._lock = RLock()
        self._last_event_at: Optional[float] = None

    @property
    def last_event_at(self) -> Optional[float]:
        with self._lock:
            return self._last_event_at

    def should_emit(self, window: float) -> bool:
        """
        Record an emission and return True unless the previous one is younger than `window` seconds.
        """
        with self._lock:
            now = self._clock()
            if self._last_event_at is not None and now - self._last_event_at <= window:
                return False
            self._last_event_at = now
            return True

    def mark(self) -> None:
        """Record an emission that bypassed the guard."""
        with self._lock:
            self._last_event_at = self._clock()

    def reset(self) -> None:
        with self._lock:
            self._last_event_at = None
