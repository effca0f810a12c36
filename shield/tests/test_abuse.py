"""Tests for AbuseDetector — union of checks, recording, escalation, batch runs."""

from shield.abuse import AbuseDetector
from shield.config import AbuseConfig, EscalationConfig
from shield.errors import TransientDependencyError
from shield.escalation import EscalationEngine
from shield.events import EventType, ListType
from shield.stores.memory import MemoryEventLog, MemoryReputationStore
from shield.testing import FakeClock, RecordingDispatcher

IP = "10.0.0.7"


class _DownEventLog(MemoryEventLog):
    def count(self, **kwargs):
        raise TransientDependencyError("connection refused")


class _Base:
    def setup_method(self):
        self.clock = FakeClock()
        self.build()

    def build(self, events=None, **config):
        self.events = events or MemoryEventLog(self.clock)
        self.reputation = MemoryReputationStore(self.clock)
        self.alerts = RecordingDispatcher()
        escalation = EscalationEngine(EscalationConfig(), self.events, self.reputation,
                                      self.alerts, self.clock)
        self.detector = AbuseDetector(AbuseConfig(**config), self.events, self.reputation,
                                      escalation, self.alerts)

    def _burst(self, n=12, ip=IP, **fields):
        for _ in range(n):
            self.events.record(EventType.RATE_LIMIT, ip, **fields)


class TestAnalyze(_Base):
    def test_quiet_ip_is_not_abusive(self):
        self._burst(3)
        verdict = self.detector.analyze(IP)
        assert not verdict.is_abusive
        assert verdict.reasons == []
        assert self.events.count(ip=IP, event_types=[EventType.ABUSE], since_seconds=60) == 0

    def test_rapid_requests_are_abusive(self):
        self._burst(12)
        verdict = self.detector.analyze(IP)
        assert verdict.is_abusive
        assert verdict.reason_text == "rapid_requests:12"
        assert verdict.block.applied
        assert verdict.block.duration_minutes == 15

    def test_findings_are_recorded_in_one_event(self):
        self._burst(12, status_code=500)
        self.detector.analyze(IP)
        [event] = self.events.recent([EventType.ABUSE], 60)
        assert event.metadata["patterns"] == ["rapid_requests:12", "high_error_rate:100%"]
        assert {f["name"] for f in event.metadata["findings"]} == {"rapid_requests",
                                                                   "high_error_rate"}
        assert event.metadata["findings"][0]["threshold"] == 10

    def test_checks_are_unioned_across_families(self):
        for i in range(21):
            self.events.record(EventType.RATE_LIMIT, IP, endpoint=f"/e{i}")
        verdict = self.detector.analyze(IP)
        assert {r.check for r in verdict.reasons} == {"pattern", "behavioral"}

    def test_whitelisted_is_never_abusive(self):
        self.reputation.upsert(IP, ListType.WHITELIST)
        self._burst(50)
        verdict = self.detector.analyze(IP)
        assert not verdict.is_abusive
        assert verdict.note == "whitelisted"
        assert self.reputation.get_entry(IP).list_type == ListType.WHITELIST

    def test_disabled(self):
        self.build(enabled=False)
        self._burst(50)
        assert self.detector.analyze(IP).note == "disabled"
        assert self.detector.analyze_all() == []


class TestEscalationScenario(_Base):
    def test_repeat_offender_escalates(self):
        """First violation 15 min, second 60, third 1440 within 24h."""
        durations = []
        for _ in range(3):
            self._burst(12)
            verdict = self.detector.analyze(IP)
            durations.append(verdict.block.duration_minutes)
            # reoffend only once the previous block has run out
            self.clock.advance(verdict.block.duration_minutes * 60 + 1)
        assert durations == [15, 60, 1440]
        entry = self.reputation.get_entry(IP)
        assert entry.list_type == ListType.TEMP_BLOCK
        assert [a.alert_type for a in self.alerts.alerts] == ["abuse_detected"] * 3

    def test_blocked_ip_is_not_escalated_again(self):
        self._burst(12)
        durations = []
        for _ in range(3):
            verdict = self.detector.analyze(IP)
            durations.append(verdict.block.duration_minutes if verdict.block else None)
            self.clock.advance(1)
        assert durations == [15, None, None]
        assert self.detector.analyze(IP).note == "blocked"
        assert self.events.count(ip=IP, event_types=[EventType.ABUSE], since_seconds=60) == 1
        assert self.reputation.get_entry(IP).expires_at == self.clock() - 3 + 15 * 60

    def test_blacklisted_ip_is_skipped(self):
        self.reputation.upsert(IP, ListType.BLACKLIST)
        self._burst(50)
        verdict = self.detector.analyze(IP)
        assert not verdict.is_abusive
        assert verdict.note == "blocked"
        assert self.alerts.alerts == []


class TestAnalyzeAll(_Base):
    def test_only_abusive_ips_returned(self):
        self._burst(12, ip="10.0.0.1")
        self._burst(2, ip="10.0.0.2")
        flagged = self.detector.analyze_all()
        assert [v.ip for v in flagged] == ["10.0.0.1"]

    def test_inactive_ips_skipped(self):
        self._burst(12, ip="10.0.0.1")
        self.clock.advance(3601)
        assert self.detector.analyze_all() == []

    def test_stop_between_ips(self):
        for ip in ("10.0.0.1", "10.0.0.2", "10.0.0.3"):
            self._burst(12, ip=ip)
        seen = []

        def should_stop():
            return len(seen) >= 1

        original = self.detector.analyze

        def analyze(ip):
            seen.append(ip)
            return original(ip)

        self.detector.analyze = analyze
        flagged = self.detector.analyze_all(should_stop)
        assert seen == ["10.0.0.1"]
        assert [v.ip for v in flagged] == ["10.0.0.1"]


class TestStatsAndPatterns(_Base):
    def test_stats_and_patterns(self):
        self._burst(12, ip="10.0.0.1")
        self.detector.analyze("10.0.0.1")
        self.clock.advance(20 * 60)
        self._burst(12, ip="10.0.0.1")
        self._burst(12, ip="10.0.0.2")
        self.detector.analyze_all()

        stats = self.detector.stats()
        assert stats.total == 3
        assert stats.unique_ips == 2
        assert stats.top[0].ip == "10.0.0.1"
        assert stats.top[0].count == 2

        patterns = self.detector.patterns()
        assert len(patterns) == 3
        assert patterns[0].metadata["patterns"] == ["rapid_requests:12"]


class TestFailOpen(_Base):
    def test_store_down_is_not_abusive_and_alerts(self):
        self.build(events=_DownEventLog(self.clock))
        verdict = self.detector.analyze(IP)
        assert not verdict.is_abusive
        assert verdict.note == "fail_open"
        [alert] = self.alerts.of_type("abuse_detection_fail_open")
        assert alert.severity.value == "CRITICAL"
