"""SQLAlchemy adapter for the event log and reputation store.

Two tables:

  security_events  append-only, indexed on (ip, event_type, ts) and
                   (identifier, event_type, ts)
  ip_lists         one row per IP, indexed on (list_type, expires_at)

Timestamps are stored as epoch seconds; `hour_bucket` (ts // 3600) is
written at insert time so the hourly baseline groups on an integer column
on every dialect.  Every statement is built with SQLAlchemy Core, so
IP/endpoint values are always bound parameters.
"""

import functools
import logging
import time
from typing import Callable

from sqlalchemy import (
    JSON,
    Column,
    Float,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    delete,
    distinct,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import (
    ArgumentError,
    IntegrityError,
    InterfaceError,
    NoSuchModuleError,
    OperationalError,
)
from sqlalchemy.pool import StaticPool

from shield.errors import ConfigurationError, TransientDependencyError
from shield.events import (
    EventSummary,
    EventType,
    IPListEntry,
    ListType,
    SecurityEvent,
)
from shield.stores import DISTINCT_FIELDS, SUMMARY_KEYS, EventLog, ReputationStore

logger = logging.getLogger(__name__)

metadata = MetaData()

security_events = Table(
    "security_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("ts", Float, nullable=False),
    Column("hour_bucket", Integer, nullable=False),
    Column("event_type", String(16), nullable=False),
    Column("ip", String(45), nullable=False),
    Column("endpoint", String(512)),
    Column("identifier", String(600), nullable=False),
    Column("user_agent", String(512)),
    Column("status_code", Integer),
    Column("details", JSON),
    Index("ix_security_events_ip_type_ts", "ip", "event_type", "ts"),
    Index("ix_security_events_identifier_type_ts", "identifier", "event_type", "ts"),
    Index("ix_security_events_ts", "ts"),
)

ip_lists = Table(
    "ip_lists",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("ip", String(45), nullable=False, unique=True),
    Column("list_type", String(16), nullable=False),
    Column("reason", String(1024), nullable=False, default=""),
    Column("created_at", Float, nullable=False),
    Column("expires_at", Float),
    Column("created_by", String(128), nullable=False, default="system"),
    Index("ix_ip_lists_type_expires", "list_type", "expires_at"),
)


def _normalized_database_url(raw_url: str) -> str:
    """postgres:// URLs (Heroku/Render style) -> the psycopg dialect."""
    raw_url = raw_url.strip()
    if raw_url.startswith("postgres://"):
        return "postgresql+psycopg://" + raw_url[len("postgres://"):]
    if raw_url.startswith("postgresql://"):
        return "postgresql+psycopg://" + raw_url[len("postgresql://"):]
    return raw_url


def make_engine(url: str) -> Engine:
    """Create an engine and make sure both tables exist."""
    url = _normalized_database_url(url)
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url == "sqlite://":
            # One shared connection so every session sees the same database.
            kwargs["poolclass"] = StaticPool
    try:
        engine = create_engine(url, **kwargs)
    except (ArgumentError, NoSuchModuleError) as e:
        raise ConfigurationError(f"storage.url: {e}") from e
    try:
        metadata.create_all(engine)
    except (OperationalError, InterfaceError) as e:
        raise TransientDependencyError(f"database unreachable: {e}") from e
    return engine


def _transient(method):
    """Translate connectivity failures into TransientDependencyError."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except (OperationalError, InterfaceError) as e:
            logger.error("%s.%s failed: %s", type(self).__name__, method.__name__, e)
            raise TransientDependencyError(str(e)) from e

    return wrapper


def _to_event(row) -> SecurityEvent:
    return SecurityEvent(
        event_type=EventType(row.event_type),
        ip=row.ip,
        endpoint=row.endpoint,
        identifier=row.identifier,
        user_agent=row.user_agent,
        status_code=row.status_code,
        metadata=row.details or {},
        timestamp=row.ts,
    )


def _to_entry(row) -> IPListEntry:
    return IPListEntry(
        ip=row.ip,
        list_type=ListType(row.list_type),
        reason=row.reason,
        created_at=row.created_at,
        expires_at=row.expires_at,
        created_by=row.created_by,
    )


class SqlEventLog(EventLog):

    def __init__(self, engine: Engine, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self.engine = engine

    @_transient
    def append(self, event: SecurityEvent) -> None:
        with self.engine.begin() as conn:
            conn.execute(insert(security_events).values(
                ts=event.timestamp,
                hour_bucket=int(event.timestamp // 3600),
                event_type=event.event_type.value,
                ip=event.ip,
                endpoint=event.endpoint,
                identifier=event.identifier,
                user_agent=event.user_agent,
                status_code=event.status_code,
                details=event.metadata or {},
            ))

    @_transient
    def count(self, *, since_seconds=None, start=None, ip=None, identifier=None,
              event_types=None, endpoint=None) -> int:
        stmt = self._where(
            select(func.count()).select_from(security_events),
            self._cutoff(since_seconds, start), ip=ip, identifier=identifier,
            event_types=event_types, endpoint=endpoint,
        )
        return self._scalar(stmt)

    @_transient
    def count_errors(self, ip, since_seconds):
        cutoff = self._cutoff(since_seconds, None)
        total = self._scalar(self._where(
            select(func.count()).select_from(security_events), cutoff, ip=ip))
        errors = self._scalar(self._where(
            select(func.count()).select_from(security_events), cutoff, ip=ip,
        ).where(security_events.c.status_code >= 400, security_events.c.status_code < 600))
        return errors, total

    @_transient
    def count_distinct(self, field, *, since_seconds, ip=None, event_types=None) -> int:
        self._check_field(field, DISTINCT_FIELDS)
        column = security_events.c[field]
        stmt = self._where(
            select(func.count(distinct(column))), self._cutoff(since_seconds, None),
            ip=ip, event_types=event_types,
        )
        return self._scalar(stmt)

    @_transient
    def hourly_counts(self, ip, since_seconds) -> dict[int, int]:
        bucket = security_events.c.hour_bucket
        stmt = self._where(
            select(bucket, func.count()), self._cutoff(since_seconds, None), ip=ip,
        ).group_by(bucket).order_by(bucket)
        with self.engine.connect() as conn:
            return {row[0]: row[1] for row in conn.execute(stmt)}

    @_transient
    def active_ips(self, since_seconds, event_types=None) -> list[str]:
        ip = security_events.c.ip
        stmt = self._where(
            select(distinct(ip)), self._cutoff(since_seconds, None),
            event_types=event_types,
        ).order_by(ip)
        with self.engine.connect() as conn:
            return [row[0] for row in conn.execute(stmt)]

    @_transient
    def summarize(self, event_type, since_seconds, *, ip=None, endpoint=None,
                  group_by="ip", limit=20) -> list[EventSummary]:
        self._check_field(group_by, SUMMARY_KEYS)
        c = security_events.c
        key = c[group_by]
        n = func.count().label("n")
        columns = [c.ip] if group_by == "ip" else [c.ip, key]
        stmt = self._where(
            select(*columns, n, func.min(c.ts), func.max(c.ts)),
            self._cutoff(since_seconds, None), ip=ip, event_types=[event_type],
            endpoint=endpoint,
        ).group_by(*columns).order_by(n.desc(), c.ip).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).all()
        summaries = []
        for row in rows:
            if group_by == "ip":
                ip_value, count, first, last = row
                key_value = ip_value
            else:
                ip_value, key_value, count, first, last = row
            summaries.append(EventSummary(ip=ip_value, key=key_value, count=count,
                                          first_seen=first, last_seen=last))
        return summaries

    @_transient
    def recent(self, event_types, since_seconds, *, ip=None, limit=20) -> list[SecurityEvent]:
        stmt = self._where(
            select(security_events), self._cutoff(since_seconds, None), ip=ip,
            event_types=event_types,
        ).order_by(security_events.c.ts.desc()).limit(limit)
        with self.engine.connect() as conn:
            return [_to_event(row) for row in conn.execute(stmt)]

    @_transient
    def delete(self, ip, event_type, endpoint=None) -> int:
        c = security_events.c
        stmt = delete(security_events).where(
            c.ip == ip, c.event_type == EventType(event_type).value)
        if endpoint is not None:
            stmt = stmt.where(c.endpoint == endpoint)
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _where(self, stmt, cutoff, *, ip=None, identifier=None, event_types=None,
               endpoint=None):
        c = security_events.c
        stmt = stmt.where(c.ts >= cutoff)
        if ip is not None:
            stmt = stmt.where(c.ip == ip)
        if identifier is not None:
            stmt = stmt.where(c.identifier == identifier)
        types = self._types(event_types)
        if types is not None:
            stmt = stmt.where(c.event_type.in_(types))
        if endpoint is not None:
            stmt = stmt.where(c.endpoint == endpoint)
        return stmt

    def _scalar(self, stmt) -> int:
        with self.engine.connect() as conn:
            return conn.execute(stmt).scalar() or 0


class SqlReputationStore(ReputationStore):

    def __init__(self, engine: Engine, clock: Callable[[], float] = time.time):
        super().__init__(clock)
        self.engine = engine

    @_transient
    def get_entry(self, ip):
        stmt = select(ip_lists).where(ip_lists.c.ip == ip)
        with self.engine.connect() as conn:
            row = conn.execute(stmt).first()
        return _to_entry(row) if row is not None else None

    @_transient
    def upsert(self, ip, list_type, reason="", expires_at=None, created_by="system"):
        values = dict(
            list_type=ListType(list_type).value,
            reason=reason,
            created_at=self.clock(),
            expires_at=expires_at,
            created_by=created_by,
        )
        # Portable upsert: update, insert when nothing matched, and retry the
        # update if a concurrent writer inserted first.
        try:
            with self.engine.begin() as conn:
                result = conn.execute(update(ip_lists).where(ip_lists.c.ip == ip).values(**values))
                if result.rowcount == 0:
                    conn.execute(insert(ip_lists).values(ip=ip, **values))
        except IntegrityError:
            with self.engine.begin() as conn:
                conn.execute(update(ip_lists).where(ip_lists.c.ip == ip).values(**values))
        return IPListEntry(ip=ip, **values)

    @_transient
    def delete(self, ip, list_types) -> int:
        types = [ListType(t).value for t in list_types]
        stmt = delete(ip_lists).where(ip_lists.c.ip == ip, ip_lists.c.list_type.in_(types))
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount

    @_transient
    def entries(self, list_type=None, active_only=False):
        c = ip_lists.c
        stmt = select(ip_lists)
        if list_type is not None:
            stmt = stmt.where(c.list_type == ListType(list_type).value)
        if active_only:
            stmt = stmt.where((c.expires_at.is_(None)) | (c.expires_at > self.clock()))
        stmt = stmt.order_by(c.created_at.desc())
        with self.engine.connect() as conn:
            return [_to_entry(row) for row in conn.execute(stmt)]

    @_transient
    def cleanup_expired(self) -> int:
        c = ip_lists.c
        stmt = delete(ip_lists).where(
            c.list_type == ListType.TEMP_BLOCK.value,
            c.expires_at.is_not(None),
            c.expires_at <= self.clock(),
        )
        with self.engine.begin() as conn:
            return conn.execute(stmt).rowcount
