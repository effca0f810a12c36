"""Escalation engine — turns a detected violation into a timed block.

Block duration grows with the IP's recent history:

    violations in trailing 24h (including this one)   block
    >= 3                                              1440 min
    >= 2                                                60 min
    otherwise                                           15 min

Per-IP state machine (evaluated lazily by the reputation store, no timers):

    Unrestricted --violation--> TempBlocked(tier) --expiry--> Unrestricted
    any --operator blacklist--> Blacklisted --operator unblock--> Unrestricted
    Whitelisted short-circuits everything.

The history read and the block write are not atomic.  Two concurrent
violations may both see the same count and pick the lower tier; the next
violation recounts and corrects it.  A block is always written.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

from alerting.dispatcher import AlertDispatcher, Severity
from shield import metrics
from shield.config import EscalationConfig
from shield.errors import TransientDependencyError
from shield.events import VIOLATION_TYPES, EventType, ListType
from shield.stores import EventLog, ReputationStore

logger = logging.getLogger(__name__)

COMPONENT = "SECURITY"


@dataclass(frozen=True)
class BlockOutcome:
    ip: str
    violation_type: EventType
    violation_count: int
    duration_minutes: int
    expires_at: float | None
    applied: bool
    note: str = ""


def tier_minutes(violation_count: int, config: EscalationConfig) -> int:
    """Block duration for the given violation count (monotonic in count)."""
    for min_count, minutes in config.tiers:
        if violation_count >= min_count:
            return minutes
    return config.default_minutes


class EscalationEngine:

    def __init__(self, config: EscalationConfig, events: EventLog,
                 reputation: ReputationStore, alerts: AlertDispatcher,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.events = events
        self.reputation = reputation
        self.alerts = alerts
        self.clock = clock

    def violation_count(self, ip: str) -> int:
        return self.events.count(
            ip=ip,
            event_types=VIOLATION_TYPES,
            since_seconds=self.config.history_hours * 3600,
        )

    def respond(self, ip: str, violation_type: EventType | str, reason: str) -> BlockOutcome:
        """Apply the block for one violation and notify operators.

        Detectors record their violation event before calling this, so the
        history count already includes the current offense.  A count of 0
        (e.g. the history read failed) is treated as a first offense.
        """
        violation_type = EventType(violation_type)

        try:
            entry = self.reputation.active_entry(ip)
        except TransientDependencyError as e:
            logger.warning("%s: reputation lookup failed for %s, blocking anyway: %s",
                           COMPONENT, ip, e)
            entry = None
        if entry is not None and entry.list_type == ListType.WHITELIST:
            logger.info("%s: %s is whitelisted, not blocking (%s)", COMPONENT, ip, reason)
            return BlockOutcome(ip, violation_type, 0, 0, None, applied=False, note="whitelisted")
        if entry is not None and entry.list_type == ListType.BLACKLIST:
            logger.info("%s: %s is already blacklisted, keeping permanent block", COMPONENT, ip)
            return BlockOutcome(ip, violation_type, 0, 0, None, applied=False, note="blacklisted")

        try:
            count = self.violation_count(ip)
        except TransientDependencyError as e:
            logger.warning("%s: violation history unavailable for %s, using first tier: %s",
                           COMPONENT, ip, e)
            count = 0
        count = max(count, 1)
        duration = tier_minutes(count, self.config)
        now = self.clock()
        expires_at = now + duration * 60
        block_reason = f"{reason} ({violation_type.value}, violation #{count})"

        # 1. The block itself.  Everything after this is bookkeeping.
        logger.warning("%s: Auto-blocking IP %s for %d minutes: %s",
                       COMPONENT, ip, duration, block_reason)
        try:
            self.reputation.upsert(ip, ListType.TEMP_BLOCK, block_reason,
                                   expires_at=expires_at, created_by="escalation")
        except TransientDependencyError as e:
            logger.error("%s: Failed to block IP %s: %s", COMPONENT, ip, e)
            self.alerts.send_alert(
                COMPONENT, Severity.CRITICAL, "block_failed",
                f"Could not block IP {ip} ({block_reason}): store unavailable",
                {"ip": ip, "violation_type": violation_type.value},
            )
            return BlockOutcome(ip, violation_type, count, duration, expires_at,
                                applied=False, note="store unavailable")

        # 2. Block event.
        try:
            self.events.record(EventType.BLOCK, ip, metadata={
                "reason": block_reason,
                "type": ListType.TEMP_BLOCK.value,
                "violation_type": violation_type.value,
                "violation_count": count,
                "duration_minutes": duration,
                "expires_at": expires_at,
            })
        except TransientDependencyError as e:
            logger.error("%s: block applied but block event not recorded for %s: %s",
                         COMPONENT, ip, e)

        # 3. Notify.
        if violation_type == EventType.DDOS:
            severity, alert_type = Severity.CRITICAL, "ddos_ip_blocked"
        else:
            severity, alert_type = Severity.WARNING, "abuse_detected"
        self.alerts.send_alert(
            COMPONENT, severity, alert_type,
            f"IP {ip} automatically blocked: {reason} "
            f"(type: {violation_type.value}, violations: {count}, "
            f"blocked for {duration} minutes)",
            {"ip": ip, "violation_count": count, "duration_minutes": duration},
        )

        # 4. Count it.
        metrics.auto_blocks.labels(violation_type=violation_type.value).inc()

        return BlockOutcome(ip, violation_type, count, duration, expires_at, applied=True)
