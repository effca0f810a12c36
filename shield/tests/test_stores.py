"""Event log and reputation store behavior, run against both adapters."""

import pytest
from sqlalchemy.exc import OperationalError

from shield.errors import ConfigurationError, TransientDependencyError
from shield.events import EventType, ListType, SecurityEvent
from shield.stores.memory import MemoryEventLog, MemoryReputationStore
from shield.stores.sql import SqlEventLog, SqlReputationStore, make_engine
from shield.testing import FakeClock


class _EventLogContract:
    def make_log(self, clock):
        raise NotImplementedError

    def setup_method(self):
        self.clock = FakeClock()
        self.log = self.make_log(self.clock)

    def _add(self, ip="10.0.0.1", ago=0, event_type=EventType.RATE_LIMIT, **fields):
        self.log.append(SecurityEvent(event_type, ip, timestamp=self.clock() - ago, **fields))

    def test_count_by_ip_and_type(self):
        self._add(ago=5)
        self._add(ago=5, event_type=EventType.DDOS)
        self._add(ip="10.0.0.2")
        assert self.log.count(ip="10.0.0.1", since_seconds=60) == 2
        assert self.log.count(ip="10.0.0.1", since_seconds=60,
                              event_types=[EventType.DDOS]) == 1

    def test_count_respects_window(self):
        self._add(ago=120)
        self._add(ago=30)
        assert self.log.count(ip="10.0.0.1", since_seconds=60) == 1
        assert self.log.count(ip="10.0.0.1", since_seconds=300) == 2

    def test_count_by_identifier(self):
        self._add(identifier="api_key:k1")
        self._add(identifier="api_key:k1", ip="10.0.0.9")
        self._add()
        assert self.log.count(identifier="api_key:k1", since_seconds=60) == 2
        # identifier defaults to the bare IP
        assert self.log.count(identifier="10.0.0.1", since_seconds=60) == 1

    def test_count_since_start(self):
        self._add(ago=100)
        self._add(ago=10)
        assert self.log.count(ip="10.0.0.1", start=self.clock() - 50) == 1

    def test_count_requires_a_range(self):
        with pytest.raises(ValueError):
            self.log.count(ip="10.0.0.1")

    def test_record_stamps_with_clock(self):
        event = self.log.record(EventType.BLOCK, "10.0.0.1", metadata={"reason": "x"})
        assert event.timestamp == self.clock()
        assert self.log.recent([EventType.BLOCK], 60)[0].metadata == {"reason": "x"}

    def test_count_errors(self):
        for status in (200, 404, 500, 302):
            self._add(status_code=status)
        self._add()
        assert self.log.count_errors("10.0.0.1", 60) == (2, 5)

    def test_count_distinct(self):
        for endpoint in ("/a", "/b", "/a", None):
            self._add(endpoint=endpoint, user_agent="curl")
        assert self.log.count_distinct("endpoint", ip="10.0.0.1", since_seconds=60) == 2
        assert self.log.count_distinct("user_agent", ip="10.0.0.1", since_seconds=60) == 1

    def test_count_distinct_rejects_unknown_field(self):
        with pytest.raises(ValueError):
            self.log.count_distinct("metadata", since_seconds=60)

    def test_hourly_counts(self):
        self._add(ago=3600)
        self._add(ago=3600)
        self._add()
        now_bucket = int(self.clock() // 3600)
        assert self.log.hourly_counts("10.0.0.1", 7200) == {now_bucket - 1: 2, now_bucket: 1}

    def test_active_ips_sorted_and_filtered(self):
        self._add(ip="10.0.0.3")
        self._add(ip="10.0.0.1")
        self._add(ip="10.0.0.2", event_type=EventType.ABUSE)
        self._add(ip="10.0.0.4", ago=7200)
        assert self.log.active_ips(3600) == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
        assert self.log.active_ips(3600, [EventType.RATE_LIMIT]) == ["10.0.0.1", "10.0.0.3"]

    def test_summarize_by_identifier(self):
        for _ in range(3):
            self._add(identifier="10.0.0.1:/notes", endpoint="/notes")
        self._add(identifier="10.0.0.1:/users", endpoint="/users", ago=10)
        rows = self.log.summarize(EventType.RATE_LIMIT, 3600, group_by="identifier")
        assert [(r.key, r.count) for r in rows] == [("10.0.0.1:/notes", 3),
                                                    ("10.0.0.1:/users", 1)]
        assert rows[1].first_seen == self.clock() - 10

    def test_recent_newest_first(self):
        self._add(ago=20, event_type=EventType.ABUSE)
        self._add(ago=10, event_type=EventType.ABUSE)
        self._add(ago=5)
        events = self.log.recent([EventType.ABUSE], 60)
        assert [self.clock() - e.timestamp for e in events] == [10, 20]

    def test_delete_only_matching_events(self):
        self._add(endpoint="/a")
        self._add(endpoint="/b")
        self._add(event_type=EventType.ABUSE)
        assert self.log.delete("10.0.0.1", EventType.RATE_LIMIT, "/a") == 1
        assert self.log.delete("10.0.0.1", EventType.RATE_LIMIT) == 1
        assert self.log.count(ip="10.0.0.1", since_seconds=60) == 1

    def test_violation_stats(self):
        self._add(ip="10.0.0.1", event_type=EventType.DDOS, ago=100)
        self._add(ip="10.0.0.1", event_type=EventType.DDOS, ago=50)
        self._add(ip="10.0.0.2", event_type=EventType.DDOS, ago=10)
        stats = self.log.violation_stats(EventType.DDOS, 3600)
        assert stats.total == 3
        assert stats.unique_ips == 2
        assert stats.last_seen == self.clock() - 10
        assert stats.top[0].ip == "10.0.0.1"


class _ReputationContract:
    def make_store(self, clock):
        raise NotImplementedError

    def setup_method(self):
        self.clock = FakeClock()
        self.store = self.make_store(self.clock)

    def test_unknown_ip_is_unrestricted(self):
        assert self.store.get_entry("10.0.0.1") is None
        assert not self.store.is_whitelisted("10.0.0.1")
        assert not self.store.is_blacklisted_or_blocked("10.0.0.1")

    def test_upsert_transitions_list_type(self):
        self.store.upsert("10.0.0.1", ListType.TEMP_BLOCK, "abuse",
                          expires_at=self.clock() + 900)
        assert self.store.is_blacklisted_or_blocked("10.0.0.1")
        self.store.upsert("10.0.0.1", ListType.WHITELIST, "partner")
        entry = self.store.get_entry("10.0.0.1")
        assert entry.list_type == ListType.WHITELIST
        assert entry.expires_at is None
        assert self.store.is_whitelisted("10.0.0.1")
        assert not self.store.is_blacklisted_or_blocked("10.0.0.1")

    def test_expired_block_is_logically_absent(self):
        self.store.upsert("10.0.0.1", ListType.TEMP_BLOCK, "x", expires_at=self.clock() + 60)
        self.clock.advance(60)
        assert not self.store.is_blacklisted_or_blocked("10.0.0.1")
        assert self.store.active_entry("10.0.0.1") is None
        # still present until cleaned up
        assert self.store.get_entry("10.0.0.1") is not None

    def test_blacklist_never_expires(self):
        self.store.upsert("10.0.0.1", ListType.BLACKLIST, "manual")
        self.clock.advance(365 * 86400)
        assert self.store.is_blacklisted_or_blocked("10.0.0.1")

    def test_delete_matches_list_type(self):
        self.store.upsert("10.0.0.1", ListType.WHITELIST)
        assert self.store.delete("10.0.0.1", [ListType.TEMP_BLOCK, ListType.BLACKLIST]) == 0
        assert self.store.delete("10.0.0.1", [ListType.WHITELIST]) == 1
        assert self.store.get_entry("10.0.0.1") is None

    def test_entries_filters_and_orders(self):
        self.store.upsert("10.0.0.1", ListType.BLACKLIST)
        self.clock.advance(1)
        self.store.upsert("10.0.0.2", ListType.TEMP_BLOCK, expires_at=self.clock() + 10)
        self.clock.advance(1)
        self.store.upsert("10.0.0.3", ListType.TEMP_BLOCK, expires_at=self.clock() - 1)
        assert [e.ip for e in self.store.entries()] == ["10.0.0.3", "10.0.0.2", "10.0.0.1"]
        assert [e.ip for e in self.store.entries(ListType.TEMP_BLOCK, active_only=True)] == ["10.0.0.2"]

    def test_cleanup_expired_only_touches_temp_blocks(self):
        self.store.upsert("10.0.0.1", ListType.TEMP_BLOCK, expires_at=self.clock() + 10)
        self.store.upsert("10.0.0.2", ListType.TEMP_BLOCK, expires_at=self.clock() + 100)
        self.store.upsert("10.0.0.3", ListType.BLACKLIST)
        self.clock.advance(50)
        assert self.store.cleanup_expired() == 1
        assert {e.ip for e in self.store.entries()} == {"10.0.0.2", "10.0.0.3"}


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------

class TestMemoryEventLog(_EventLogContract):
    def make_log(self, clock):
        return MemoryEventLog(clock)

    def test_idle_ips_are_pruned(self):
        clock = FakeClock()
        log = MemoryEventLog(clock, retention_seconds=120)
        log.record(EventType.RATE_LIMIT, "10.0.0.1")
        clock.advance(121)
        log.record(EventType.RATE_LIMIT, "10.0.0.2")
        assert set(log._windows) == {"10.0.0.2"}
        assert log.active_ips(3600) == ["10.0.0.2"]


class TestMemoryReputationStore(_ReputationContract):
    def make_store(self, clock):
        return MemoryReputationStore(clock)


class TestSqlEventLog(_EventLogContract):
    def make_log(self, clock):
        return SqlEventLog(make_engine("sqlite://"), clock)


class TestSqlReputationStore(_ReputationContract):
    def make_store(self, clock):
        return SqlReputationStore(make_engine("sqlite://"), clock)


class TestSqlFailures:
    def test_operational_error_becomes_transient(self):
        log = SqlEventLog(make_engine("sqlite://"), FakeClock())

        def broken(*args, **kwargs):
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        log._scalar = broken
        with pytest.raises(TransientDependencyError):
            log.count(ip="10.0.0.1", since_seconds=60)

    def test_metadata_round_trips_as_json(self):
        clock = FakeClock()
        log = SqlEventLog(make_engine("sqlite://"), clock)
        log.record(EventType.ABUSE, "10.0.0.1",
                   metadata={"patterns": ["rapid_requests:12"], "findings": [{"value": 12}]})
        [event] = log.recent([EventType.ABUSE], 60)
        assert event.metadata["patterns"] == ["rapid_requests:12"]
        assert event.event_type == EventType.ABUSE

    @pytest.mark.parametrize("url", ["not a url", "nosuchdb://localhost/shield"])
    def test_bad_url_is_configuration_error(self, url):
        with pytest.raises(ConfigurationError, match="storage.url"):
            make_engine(url)
