"""In-memory event log and reputation store.

State: dict[ip, SlidingWindow] for events, dict[ip, IPListEntry] for lists.
One lock per store; every public method takes it, so concurrent callers see
read-committed results just like the SQL adapter.  Not shared across
processes: use the SQL adapter for that.
"""

import threading
import time
from collections import Counter
from typing import Callable, Iterable

from shield.events import (
    EventSummary,
    EventType,
    IPListEntry,
    ListType,
    SecurityEvent,
)
from shield.sliding_window import SlidingWindow
from shield.stores import DISTINCT_FIELDS, SUMMARY_KEYS, EventLog, ReputationStore

# Retention: the baseline needs 7 days; keep a spare day.
DEFAULT_RETENTION_SECONDS = 8 * 24 * 3600

# Emptied per-IP windows are dropped at most this often.
PRUNE_INTERVAL_SECONDS = 60


class MemoryEventLog(EventLog):

    def __init__(self, clock: Callable[[], float] = time.time,
                 retention_seconds: int = DEFAULT_RETENTION_SECONDS):
        super().__init__(clock)
        self.retention_seconds = retention_seconds
        self._windows: dict[str, SlidingWindow] = {}
        self._last_prune = self.clock()
        self._lock = threading.Lock()

    def append(self, event: SecurityEvent) -> None:
        with self._lock:
            window = self._windows.get(event.ip)
            if window is None:
                self._prune_empty()
                window = SlidingWindow(self.retention_seconds, clock=self.clock)
                self._windows[event.ip] = window
            window.add(event)

    def count(self, *, since_seconds=None, start=None, ip=None, identifier=None,
              event_types=None, endpoint=None) -> int:
        return sum(1 for _ in self._select(
            self._cutoff(since_seconds, start), ip=ip, identifier=identifier,
            event_types=event_types, endpoint=endpoint,
        ))

    def count_errors(self, ip, since_seconds):
        errors = total = 0
        for event in self._select(self._cutoff(since_seconds, None), ip=ip):
            total += 1
            if event.is_error:
                errors += 1
        return errors, total

    def count_distinct(self, field, *, since_seconds, ip=None, event_types=None) -> int:
        self._check_field(field, DISTINCT_FIELDS)
        values = {
            getattr(e, field)
            for e in self._select(self._cutoff(since_seconds, None), ip=ip,
                                  event_types=event_types)
        }
        values.discard(None)
        return len(values)

    def hourly_counts(self, ip, since_seconds) -> dict[int, int]:
        return dict(Counter(
            int(e.timestamp // 3600)
            for e in self._select(self._cutoff(since_seconds, None), ip=ip)
        ))

    def active_ips(self, since_seconds, event_types=None) -> list[str]:
        cutoff = self._cutoff(since_seconds, None)
        return sorted({
            e.ip for e in self._select(cutoff, event_types=event_types)
        })

    def summarize(self, event_type, since_seconds, *, ip=None, endpoint=None,
                  group_by="ip", limit=20) -> list[EventSummary]:
        self._check_field(group_by, SUMMARY_KEYS)
        groups: dict[tuple[str, str], list[float]] = {}
        for e in self._select(self._cutoff(since_seconds, None), ip=ip,
                              event_types=[event_type], endpoint=endpoint):
            key = (e.ip, getattr(e, group_by))
            groups.setdefault(key, []).append(e.timestamp)
        summaries = [
            EventSummary(ip=k[0], key=k[1], count=len(ts),
                         first_seen=min(ts), last_seen=max(ts))
            for k, ts in groups.items()
        ]
        summaries.sort(key=lambda s: (-s.count, s.ip, s.key))
        return summaries[:limit]

    def recent(self, event_types, since_seconds, *, ip=None, limit=20) -> list[SecurityEvent]:
        events = list(self._select(self._cutoff(since_seconds, None), ip=ip,
                                   event_types=event_types))
        events.sort(key=lambda e: e.timestamp, reverse=True)
        return events[:limit]

    def delete(self, ip, event_type, endpoint=None) -> int:
        event_type = EventType(event_type)
        with self._lock:
            window = self._windows.get(ip)
            if window is None:
                return 0
            return window.remove(
                lambda e: e.event_type == event_type
                and (endpoint is None or e.endpoint == endpoint)
            )

    def _prune_empty(self) -> None:
        """Drop windows with nothing left in retention. Caller holds the lock."""
        now = self.clock()
        if now - self._last_prune < PRUNE_INTERVAL_SECONDS:
            return
        self._last_prune = now
        for ip in [ip for ip, w in self._windows.items() if w.expire() == 0]:
            del self._windows[ip]

    def _select(self, cutoff: float, *, ip=None, identifier=None,
                event_types: Iterable[EventType] | None = None, endpoint=None):
        types = self._types(event_types)
        with self._lock:
            if ip is not None:
                windows = [self._windows[ip]] if ip in self._windows else []
            else:
                windows = list(self._windows.values())
            matched = []
            for window in windows:
                for e in window.since(cutoff):
                    if identifier is not None and e.identifier != identifier:
                        continue
                    if types is not None and e.event_type.value not in types:
                        continue
                    if endpoint is not None and e.endpoint != endpoint:
                        continue
                    matched.append(e)
        return matched


class MemoryReputationStore(ReputationStore):

    def __init__(self, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self._entries: dict[str, IPListEntry] = {}
        self._lock = threading.Lock()

    def get_entry(self, ip):
        with self._lock:
            return self._entries.get(ip)

    def upsert(self, ip, list_type, reason="", expires_at=None, created_by="system"):
        entry = IPListEntry(
            ip=ip,
            list_type=ListType(list_type),
            reason=reason,
            created_at=self.clock(),
            expires_at=expires_at,
            created_by=created_by,
        )
        with self._lock:
            self._entries[ip] = entry
        return entry

    def delete(self, ip, list_types) -> int:
        types = {ListType(t) for t in list_types}
        with self._lock:
            entry = self._entries.get(ip)
            if entry is None or entry.list_type not in types:
                return 0
            del self._entries[ip]
            return 1

    def entries(self, list_type=None, active_only=False):
        now = self.clock()
        with self._lock:
            found = [
                e for e in self._entries.values()
                if (list_type is None or e.list_type == ListType(list_type))
                and (not active_only or e.is_active(now))
            ]
        found.sort(key=lambda e: e.created_at, reverse=True)
        return found

    def cleanup_expired(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [
                ip for ip, e in self._entries.items()
                if e.list_type == ListType.TEMP_BLOCK and not e.is_active(now)
            ]
            for ip in expired:
                del self._entries[ip]
        return len(expired)
