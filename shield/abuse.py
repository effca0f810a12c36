"""Abuse detector — runs every abuse check for an IP and unions the results.

For each analyzed IP:
  1. Skip  — whitelisted IPs are never abusive; blacklisted or temp-blocked
             IPs were already judged and are not re-escalated
  2. Check — pattern, anomaly and behavioral checks, independently
  3. Union — abusive if any check produced a finding
  4. Record — one `abuse` event carrying every finding (name, value, threshold)
  5. Respond — hand the violation to the escalation engine

Runs on demand for one IP, or in batch over every IP active in the last
hour.  A batch can be stopped between IPs; there is no per-IP state to
roll back, so stopping early just means fewer IPs were looked at.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable

from alerting.dispatcher import AlertDispatcher, Severity
from shield import metrics
from shield.checks import AbuseCheck, Finding, default_checks
from shield.config import AbuseConfig
from shield.errors import TransientDependencyError
from shield.escalation import BlockOutcome, EscalationEngine
from shield.events import EventType, SecurityEvent, ViolationStats
from shield.stores import EventLog, ReputationStore

logger = logging.getLogger(__name__)

COMPONENT = "SECURITY"

STATS_WINDOW_SECONDS = 24 * 3600


@dataclass(frozen=True)
class AbuseVerdict:
    ip: str
    is_abusive: bool
    reasons: list[Finding] = field(default_factory=list)
    block: BlockOutcome | None = None
    note: str = ""  # whitelisted | blocked | disabled | fail_open

    @property
    def reason_text(self) -> str:
        return ", ".join(str(r) for r in self.reasons)


class AbuseDetector:

    def __init__(self, config: AbuseConfig, events: EventLog, reputation: ReputationStore,
                 escalation: EscalationEngine, alerts: AlertDispatcher,
                 checks: list[AbuseCheck] | None = None):
        self.config = config
        self.events = events
        self.reputation = reputation
        self.escalation = escalation
        self.alerts = alerts
        self.checks = checks if checks is not None else default_checks(config)

    def analyze(self, ip: str) -> AbuseVerdict:
        if not self.config.enabled:
            logger.info("%s: Abuse detection is disabled", COMPONENT)
            return AbuseVerdict(ip, False, note="disabled")

        try:
            if self.reputation.is_whitelisted(ip):
                logger.debug("IP %s is whitelisted, bypassing abuse analysis", ip)
                return AbuseVerdict(ip, False, note="whitelisted")
            if self.reputation.is_blacklisted_or_blocked(ip):
                logger.debug("IP %s is already blocked, skipping abuse analysis", ip)
                return AbuseVerdict(ip, False, note="blocked")

            findings: list[Finding] = []
            for check in self.checks:
                findings.extend(check.evaluate(ip, self.events))
        except TransientDependencyError as e:
            self._fail_open(ip, e)
            return AbuseVerdict(ip, False, note="fail_open")

        if not findings:
            logger.debug("%s: No abuse detected for %s", COMPONENT, ip)
            return AbuseVerdict(ip, False)

        verdict = AbuseVerdict(ip, True, findings)
        logger.warning("%s: Abuse detected for %s: %s", COMPONENT, ip, verdict.reason_text)
        for finding in findings:
            metrics.abuse_findings.labels(check=finding.check).inc()

        try:
            self.events.append(SecurityEvent(
                event_type=EventType.ABUSE,
                ip=ip,
                metadata={
                    "patterns": [str(f) for f in findings],
                    "checks": sorted({f.check for f in findings}),
                    "findings": [f.to_dict() for f in findings],
                },
                timestamp=self.events.clock(),
            ))
        except TransientDependencyError as e:
            # The block is still applied without the event.
            logger.error("%s: Could not record abuse event for %s: %s", COMPONENT, ip, e)

        block = self.escalation.respond(
            ip, EventType.ABUSE, f"Abuse detected: {verdict.reason_text}")
        return AbuseVerdict(ip, True, findings, block)

    def analyze_all(self, should_stop: Callable[[], bool] | None = None) -> list[AbuseVerdict]:
        """Analyze every recently active IP; returns the abusive verdicts."""
        if not self.config.enabled:
            logger.info("%s: Abuse detection is disabled", COMPONENT)
            return []

        logger.info("%s: Starting abuse analysis for all IPs", COMPONENT)
        try:
            ips = self.events.active_ips(self.config.active_window_seconds)
        except TransientDependencyError as e:
            self._fail_open("*", e)
            return []

        flagged = []
        for ip in ips:
            if should_stop is not None and should_stop():
                logger.info("%s: Abuse analysis stopped early", COMPONENT)
                break
            verdict = self.analyze(ip)
            if verdict.is_abusive:
                flagged.append(verdict)

        logger.info("%s: Abuse analysis complete - %d IP(s) flagged", COMPONENT, len(flagged))
        return flagged

    def stats(self) -> ViolationStats:
        return self.events.violation_stats(EventType.ABUSE, STATS_WINDOW_SECONDS, limit=10)

    def patterns(self, limit: int = 20) -> list[SecurityEvent]:
        """Most recent abuse events with their recorded reasons."""
        return self.events.recent([EventType.ABUSE], STATS_WINDOW_SECONDS, limit=limit)

    def _fail_open(self, ip: str, error: Exception) -> None:
        logger.error("%s: Abuse analysis failing open for %s: %s", COMPONENT, ip, error)
        metrics.fail_open.labels(component="abuse").inc()
        self.alerts.send_alert(
            COMPONENT, Severity.CRITICAL, "abuse_detection_fail_open",
            "Abuse detection is failing open: event store unavailable",
            {"ip": ip, "error": str(error)},
        )
