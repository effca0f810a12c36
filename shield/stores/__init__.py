# Storage interfaces for the policy engine.
#
# The engine never talks to a database directly: everything goes through an
# EventLog (append-only, time-windowed counts) and a ReputationStore (one
# list entry per IP).  Two adapters ship with the repo:
#
#   memory.py  per-IP deques behind a lock, single process, used by tests
#   sql.py     SQLAlchemy Core, SQLite/PostgreSQL, parameterized statements
#
# Both raise TransientDependencyError when the backend is unreachable and
# nothing else for infrastructure failures, so detectors have exactly one
# exception to fail open on.

import time
from typing import Callable, Iterable

from shield.events import (
    BLOCKING_LISTS,
    EventSummary,
    EventType,
    IPListEntry,
    ListType,
    SecurityEvent,
    ViolationStats,
)

# Columns that count_distinct() accepts.
DISTINCT_FIELDS = ("ip", "endpoint", "user_agent")

SUMMARY_KEYS = ("ip", "identifier")


class EventLog:
    """Append-only log of security events. Subclass and implement every query."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    def append(self, event: SecurityEvent) -> None:
        raise NotImplementedError

    def record(self, event_type: EventType | str, ip: str, endpoint: str | None = None,
               metadata: dict | None = None, **fields) -> SecurityEvent:
        """Build an event stamped with the log's clock and append it."""
        event = SecurityEvent(
            event_type=EventType(event_type),
            ip=ip,
            endpoint=endpoint or None,
            metadata=dict(metadata or {}),
            timestamp=self.clock(),
            **fields,
        )
        self.append(event)
        return event

    def count(self, *, since_seconds: float | None = None, start: float | None = None,
              ip: str | None = None, identifier: str | None = None,
              event_types: Iterable[EventType] | None = None,
              endpoint: str | None = None) -> int:
        """Events matching every given filter with timestamp in [start, now]."""
        raise NotImplementedError

    def count_errors(self, ip: str, since_seconds: float) -> tuple[int, int]:
        """(4xx/5xx events, all events) for *ip* in the window."""
        raise NotImplementedError

    def count_distinct(self, field: str, *, since_seconds: float, ip: str | None = None,
                       event_types: Iterable[EventType] | None = None) -> int:
        """Distinct non-null values of *field* (one of DISTINCT_FIELDS)."""
        raise NotImplementedError

    def hourly_counts(self, ip: str, since_seconds: float) -> dict[int, int]:
        """{hour bucket (epoch // 3600): event count} for hours that had events."""
        raise NotImplementedError

    def active_ips(self, since_seconds: float,
                   event_types: Iterable[EventType] | None = None) -> list[str]:
        """Sorted distinct IPs with at least one matching event in the window."""
        raise NotImplementedError

    def summarize(self, event_type: EventType, since_seconds: float, *,
                  ip: str | None = None, endpoint: str | None = None,
                  group_by: str = "ip", limit: int = 20) -> list[EventSummary]:
        """Per-group counts, busiest first."""
        raise NotImplementedError

    def recent(self, event_types: Iterable[EventType], since_seconds: float, *,
               ip: str | None = None, limit: int = 20) -> list[SecurityEvent]:
        """Newest matching events first."""
        raise NotImplementedError

    def delete(self, ip: str, event_type: EventType, endpoint: str | None = None) -> int:
        raise NotImplementedError

    def violation_stats(self, event_type: EventType, since_seconds: float,
                        limit: int = 10) -> ViolationStats:
        """Totals, distinct IPs, last occurrence and busiest IPs for one type."""
        types = [event_type]
        latest = self.recent(types, since_seconds, limit=1)
        return ViolationStats(
            event_type=EventType(event_type),
            window_seconds=since_seconds,
            total=self.count(event_types=types, since_seconds=since_seconds),
            unique_ips=self.count_distinct("ip", event_types=types, since_seconds=since_seconds),
            last_seen=latest[0].timestamp if latest else None,
            top=self.summarize(event_type, since_seconds, limit=limit),
        )

    # ------------------------------------------------------------------
    # Helpers shared by adapters
    # ------------------------------------------------------------------

    def _cutoff(self, since_seconds: float | None, start: float | None) -> float:
        if start is not None:
            return start
        if since_seconds is None:
            raise ValueError("either since_seconds or start is required")
        return self.clock() - since_seconds

    @staticmethod
    def _types(event_types: Iterable[EventType] | None) -> list[str] | None:
        if event_types is None:
            return None
        return [EventType(t).value for t in event_types]

    @staticmethod
    def _check_field(field: str, allowed: tuple[str, ...]) -> None:
        if field not in allowed:
            raise ValueError(f"unsupported field {field!r}, expected one of {allowed}")


class ReputationStore:
    """Whitelist / blacklist / temp_block entries, unique per IP.

    Subclasses implement the raw row operations; precedence and expiry are
    evaluated here so every adapter agrees on them.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock

    def get_entry(self, ip: str) -> IPListEntry | None:
        """Raw entry for *ip*, expired or not."""
        raise NotImplementedError

    def upsert(self, ip: str, list_type: ListType, reason: str = "",
               expires_at: float | None = None, created_by: str = "system") -> IPListEntry:
        raise NotImplementedError

    def delete(self, ip: str, list_types: Iterable[ListType]) -> int:
        raise NotImplementedError

    def entries(self, list_type: ListType | None = None,
                active_only: bool = False) -> list[IPListEntry]:
        """Entries, newest first."""
        raise NotImplementedError

    def cleanup_expired(self) -> int:
        """Delete temp_block entries whose expiry has passed."""
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Precedence
    # ------------------------------------------------------------------

    def active_entry(self, ip: str) -> IPListEntry | None:
        entry = self.get_entry(ip)
        if entry is None or not entry.is_active(self.clock()):
            return None
        return entry

    def is_whitelisted(self, ip: str) -> bool:
        entry = self.active_entry(ip)
        return entry is not None and entry.list_type == ListType.WHITELIST

    def is_blacklisted_or_blocked(self, ip: str) -> bool:
        entry = self.active_entry(ip)
        return entry is not None and entry.list_type in BLOCKING_LISTS
