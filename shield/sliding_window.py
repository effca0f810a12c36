"""Sliding window of timestamped security events for one IP.

Backs the in-memory event log.  Deque-based: O(1) append, amortized O(1)
eviction.  The window length is the store's retention, not a detection
window; detectors ask for narrower ranges with `since()`.
"""

import time
from collections import deque
from typing import Callable, Iterator

from shield.events import SecurityEvent

# Events with timestamps more than this many seconds in the future are
# dropped so a bogus clock cannot pin an IP's counts high.
_MAX_DRIFT_SECONDS = 5


class SlidingWindow:
    __slots__ = ("max_age", "_buf", "_clock")

    def __init__(self, max_age_seconds: int, clock: Callable[[], float] = time.time):
        self.max_age = max_age_seconds
        self._clock = clock
        self._buf: deque[SecurityEvent] = deque()

    def add(self, event: SecurityEvent) -> bool:
        """Append event. Returns False (and drops) if timestamp is bogus or already expired."""
        now = self._clock()
        if event.timestamp > now + _MAX_DRIFT_SECONDS:
            return False
        if event.timestamp < now - self.max_age:
            return False
        self._evict(now)
        if self._buf and event.timestamp < self._buf[-1].timestamp:
            # Late arrival: keep the buffer ordered so eviction stays a popleft.
            items = list(self._buf)
            idx = len(items)
            while idx > 0 and items[idx - 1].timestamp > event.timestamp:
                idx -= 1
            items.insert(idx, event)
            self._buf = deque(items)
        else:
            self._buf.append(event)
        return True

    def since(self, cutoff: float) -> Iterator[SecurityEvent]:
        """Yield events with timestamp >= cutoff, oldest first."""
        self._evict(self._clock())
        for event in self._buf:
            if event.timestamp >= cutoff:
                yield event

    def events(self) -> list[SecurityEvent]:
        """Return all events currently inside the window."""
        self._evict(self._clock())
        return list(self._buf)

    def expire(self) -> int:
        """Evict aged-out events; returns how many remain."""
        self._evict(self._clock())
        return len(self._buf)

    def remove(self, predicate: Callable[[SecurityEvent], bool]) -> int:
        """Drop matching events; returns how many were removed."""
        before = len(self._buf)
        self._buf = deque(e for e in self._buf if not predicate(e))
        return before - len(self._buf)

    def clear(self) -> None:
        self._buf.clear()

    def _evict(self, now: float) -> None:
        cutoff = now - self.max_age
        while self._buf and self._buf[0].timestamp < cutoff:
            self._buf.popleft()

    def __len__(self) -> int:
        return len(self._buf)
