"""Tests for EscalationEngine — tiers, side effects, whitelist/blacklist, failure modes."""

import pytest

from shield.config import EscalationConfig
from shield.errors import TransientDependencyError
from shield.escalation import EscalationEngine, tier_minutes
from shield.events import EventType, ListType
from shield.stores.memory import MemoryEventLog, MemoryReputationStore
from shield.testing import FakeClock, RecordingDispatcher


class _DownReputation(MemoryReputationStore):
    def upsert(self, *args, **kwargs):
        raise TransientDependencyError("connection refused")


class _DownHistory(MemoryEventLog):
    def count(self, **kwargs):
        raise TransientDependencyError("connection refused")


def _engine(clock, events=None, reputation=None, alerts=None):
    return EscalationEngine(
        EscalationConfig(),
        events or MemoryEventLog(clock),
        reputation or MemoryReputationStore(clock),
        alerts or RecordingDispatcher(),
        clock,
    )


class TestTiers:
    @pytest.mark.parametrize("count,minutes", [
        (0, 15), (1, 15), (2, 60), (3, 1440), (10, 1440),
    ])
    def test_default_tiers(self, count, minutes):
        assert tier_minutes(count, EscalationConfig()) == minutes

    def test_monotonic(self):
        config = EscalationConfig()
        durations = [tier_minutes(n, config) for n in range(0, 20)]
        assert durations == sorted(durations)
        assert set(durations) == {15, 60, 1440}

    def test_custom_tiers(self):
        config = EscalationConfig(tiers=((2, 30), (5, 600)), default_minutes=5)
        assert [tier_minutes(n, config) for n in (1, 2, 4, 5)] == [5, 30, 30, 600]


class TestRespond:
    def setup_method(self):
        self.clock = FakeClock()
        self.engine = _engine(self.clock)

    def _violation(self, ip="10.0.0.1", event_type=EventType.ABUSE):
        self.engine.events.record(event_type, ip, metadata={"patterns": ["x"]})

    def test_first_offense_blocks_for_default_tier(self):
        self._violation()
        outcome = self.engine.respond("10.0.0.1", EventType.ABUSE, "rapid requests")
        assert outcome.applied
        assert outcome.violation_count == 1
        assert outcome.duration_minutes == 15
        entry = self.engine.reputation.get_entry("10.0.0.1")
        assert entry.list_type == ListType.TEMP_BLOCK
        assert entry.expires_at == self.clock() + 15 * 60

    def test_unrecorded_violation_still_counts_as_first(self):
        outcome = self.engine.respond("10.0.0.1", "abuse", "manual")
        assert outcome.violation_count == 1
        assert outcome.duration_minutes == 15

    def test_side_effects(self):
        self._violation(event_type=EventType.DDOS)
        self.engine.respond("10.0.0.1", EventType.DDOS, "DDoS")
        [block] = self.engine.events.recent([EventType.BLOCK], 60)
        assert block.metadata["duration_minutes"] == 15
        assert block.metadata["violation_type"] == "ddos"
        [alert] = self.engine.alerts.alerts
        assert alert.alert_type == "ddos_ip_blocked"
        assert alert.severity.value == "CRITICAL"

    def test_abuse_alert_is_warning(self):
        self._violation()
        self.engine.respond("10.0.0.1", EventType.ABUSE, "abuse")
        [alert] = self.engine.alerts.alerts
        assert alert.alert_type == "abuse_detected"
        assert alert.severity.value == "WARNING"

    def test_history_escalates(self):
        durations = []
        for _ in range(3):
            self._violation()
            durations.append(self.engine.respond("10.0.0.1", EventType.ABUSE, "x").duration_minutes)
            self.clock.advance(3600)
        assert durations == [15, 60, 1440]

    def test_ddos_and_abuse_share_history(self):
        self._violation(event_type=EventType.DDOS)
        self._violation(event_type=EventType.ABUSE)
        assert self.engine.respond("10.0.0.1", EventType.ABUSE, "x").duration_minutes == 60

    def test_old_violations_fall_out_of_history(self):
        self._violation()
        self._violation()
        self.clock.advance(24 * 3600 + 1)
        self._violation()
        assert self.engine.respond("10.0.0.1", EventType.ABUSE, "x").duration_minutes == 15

    def test_whitelisted_never_blocked(self):
        self.engine.reputation.upsert("10.0.0.1", ListType.WHITELIST)
        self._violation()
        outcome = self.engine.respond("10.0.0.1", EventType.ABUSE, "x")
        assert not outcome.applied
        assert outcome.note == "whitelisted"
        assert self.engine.reputation.is_whitelisted("10.0.0.1")
        assert self.engine.alerts.alerts == []

    def test_blacklist_is_not_downgraded(self):
        self.engine.reputation.upsert("10.0.0.1", ListType.BLACKLIST, "manual")
        self._violation()
        outcome = self.engine.respond("10.0.0.1", EventType.DDOS, "x")
        assert not outcome.applied
        assert self.engine.reputation.get_entry("10.0.0.1").list_type == ListType.BLACKLIST


class TestFailureModes:
    def test_failed_alert_keeps_block(self):
        clock = FakeClock()
        engine = _engine(clock, alerts=RecordingDispatcher(fail=True))
        outcome = engine.respond("10.0.0.1", EventType.ABUSE, "x")
        assert outcome.applied
        assert engine.reputation.is_blacklisted_or_blocked("10.0.0.1")

    def test_failed_history_read_uses_first_tier(self):
        clock = FakeClock()
        engine = _engine(clock, events=_DownHistory(clock))
        outcome = engine.respond("10.0.0.1", EventType.ABUSE, "x")
        assert outcome.applied
        assert outcome.duration_minutes == 15

    def test_failed_block_write_alerts(self):
        clock = FakeClock()
        engine = _engine(clock, reputation=_DownReputation(clock))
        outcome = engine.respond("10.0.0.1", EventType.ABUSE, "x")
        assert not outcome.applied
        assert [a.alert_type for a in engine.alerts.alerts] == ["block_failed"]
