from __future__ import annotations

import threading
import time
from typing import Any, Callable, Hashable, NamedTuple, Optional

from settlement.records import DateRange
from settlement.scope import Scope


class _Entry(NamedTuple):
    value: Any
    expires_at: float


class StatsCache:
    """Computed statistics keyed by (scope, date range), each with an expiry time."""

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, _Entry] = {}
        self._lock = threading.Lock()

    @staticmethod
    def key(scope: Scope, date_range: DateRange, *extra: Hashable) -> tuple:
        return (scope.cache_key(), date_range.start, date_range.end, *extra)

    def get(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return None
            return entry.value

    def put(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = _Entry(value, self._clock() + self.ttl_seconds)

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        value = self.get(key)
        if value is None:
            value = compute()
            self.put(key, value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
