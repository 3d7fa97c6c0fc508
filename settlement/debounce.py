from __future__ import annotations

import logging
import threading
from datetime import date
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RecomputeDebouncer:
    """Coalesce bursts of "this day changed" triggers into one recompute.

    Each trigger restarts the quiet period; the callback runs once per day
    key after ``delay`` seconds without further triggers for that day.
    """

    def __init__(self, delay: float, callback: Callable[[date], None]) -> None:
        self.delay = delay
        self._callback = callback
        self._timers: dict[date, threading.Timer] = {}
        self._lock = threading.Lock()

    def trigger(self, day: date) -> None:
        with self._lock:
            pending = self._timers.pop(day, None)
            if pending is not None:
                pending.cancel()
            timer = threading.Timer(self.delay, self._fire, args=(day,))
            timer.daemon = True
            self._timers[day] = timer
            timer.start()

    def _fire(self, day: date) -> None:
        with self._lock:
            self._timers.pop(day, None)
        try:
            self._callback(day)
        except Exception:
            logger.exception("snapshot recompute for %s failed", day)

    def pending(self) -> list[date]:
        with self._lock:
            return sorted(self._timers)

    def flush(self, day: Optional[date] = None) -> None:
        """Run pending recomputes now instead of waiting for the quiet period."""
        with self._lock:
            days = [day] if day is not None else list(self._timers)
            due = []
            for d in days:
                timer = self._timers.pop(d, None)
                if timer is not None:
                    timer.cancel()
                    due.append(d)
        for d in due:
            self._callback(d)

    def cancel(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()
