"""Records shared by every component: security events and IP list entries.

Events are append-only.  Nothing in the engine mutates or deletes a single
event; the only deletions are the operator `reset` (rate_limit events of one
IP) and whatever retention policy the backing store runs.
"""

import time
from dataclasses import dataclass, field
from enum import Enum


class EventType(str, Enum):
    RATE_LIMIT = "rate_limit"
    DDOS = "ddos"
    ABUSE = "abuse"
    BLOCK = "block"
    UNBLOCK = "unblock"


class ListType(str, Enum):
    WHITELIST = "whitelist"
    BLACKLIST = "blacklist"
    TEMP_BLOCK = "temp_block"


# Event types that count as violations for escalation history.
VIOLATION_TYPES = (EventType.ABUSE, EventType.DDOS)

# Event types that represent inbound traffic for volumetric checks.
TRAFFIC_TYPES = (EventType.RATE_LIMIT, EventType.DDOS)

BLOCKING_LISTS = (ListType.BLACKLIST, ListType.TEMP_BLOCK)


@dataclass(frozen=True)
class SecurityEvent:
    event_type: EventType
    ip: str
    endpoint: str | None = None
    identifier: str | None = None
    user_agent: str | None = None
    status_code: int | None = None
    metadata: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        # Identifier defaults to the bare IP so every event is addressable
        # by identifier queries.
        if self.identifier is None:
            object.__setattr__(self, "identifier", self.ip)
        object.__setattr__(self, "event_type", EventType(self.event_type))

    @property
    def is_error(self) -> bool:
        """True for 4xx/5xx responses."""
        return self.status_code is not None and 400 <= self.status_code < 600


@dataclass(frozen=True)
class IPListEntry:
    ip: str
    list_type: ListType
    reason: str = ""
    created_at: float = field(default_factory=time.time)
    expires_at: float | None = None
    created_by: str = "system"

    def __post_init__(self):
        object.__setattr__(self, "list_type", ListType(self.list_type))

    def is_active(self, now: float) -> bool:
        """An entry whose expiry has passed is logically absent."""
        return self.expires_at is None or self.expires_at > now


@dataclass(frozen=True)
class EventSummary:
    """Per-key aggregate returned by EventLog.summarize()."""

    ip: str
    key: str
    count: int
    first_seen: float
    last_seen: float


@dataclass(frozen=True)
class ViolationStats:
    """Aggregate of one violation type over a trailing window."""

    event_type: EventType
    window_seconds: float
    total: int
    unique_ips: int
    last_seen: float | None
    top: list = field(default_factory=list)  # list[EventSummary]
