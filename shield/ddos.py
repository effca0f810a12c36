"""DDoS detector — volumetric threshold over a short window.

Per IP:
  1. Skip      — whitelisted IPs are never attacks; blacklisted or temp-blocked
                 IPs are already handled and are not re-escalated
  2. Geography — optional country filter, checked before any counting;
                 a match is an attack with reason "geographic filter"
  3. Volume    — rate_limit + ddos events in the last window, integer req/s;
                 rps >= threshold is an attack and is persisted as a ddos event
  4. Respond   — attacks go to the escalation engine as a `ddos` violation

A sweep runs the above for every IP seen in the last window, then checks the
fleet-wide concurrent-IP count.  Exceeding that ceiling is a systemic
condition: one CRITICAL alert, nobody blocked.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from alerting.dispatcher import AlertDispatcher, Severity
from shield import metrics
from shield.config import DDoSConfig, GeoConfig
from shield.errors import ConfigurationError, TransientDependencyError
from shield.escalation import BlockOutcome, EscalationEngine
from shield.events import (
    BLOCKING_LISTS,
    TRAFFIC_TYPES,
    EventType,
    IPListEntry,
    ListType,
    ViolationStats,
)
from shield.geo import CountryResolver
from shield.stores import EventLog, ReputationStore

logger = logging.getLogger(__name__)

COMPONENT = "SECURITY"

GEO_REASON = "geographic filter"
RATE_REASON = "rate threshold"

STATS_WINDOW_SECONDS = 24 * 3600


@dataclass(frozen=True)
class DDoSVerdict:
    ip: str
    is_attack: bool
    reason: str = ""  # geographic filter | rate threshold | whitelisted | blocked | disabled | fail_open
    rps: int = 0
    count: int = 0
    country: str | None = None
    block: BlockOutcome | None = None


@dataclass(frozen=True)
class DDoSStats:
    violations: ViolationStats
    blocked: list[IPListEntry] = field(default_factory=list)


class DDoSDetector:

    def __init__(self, config: DDoSConfig, geo_config: GeoConfig, events: EventLog,
                 reputation: ReputationStore, escalation: EscalationEngine,
                 alerts: AlertDispatcher, resolver: CountryResolver | None = None,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.geo_config = geo_config
        self.events = events
        self.reputation = reputation
        self.escalation = escalation
        self.alerts = alerts
        self.clock = clock
        if resolver is None and geo_config.enabled:
            resolver = CountryResolver(geo_config)
        self.resolver = resolver

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def evaluate(self, ip: str) -> DDoSVerdict:
        """Classify one IP without escalating. Attacks are persisted as ddos events."""
        window = self.config.window_seconds
        if window < 1:
            raise ConfigurationError(f"ddos.window_seconds must be >= 1 (got {window!r})")

        if self.reputation.is_whitelisted(ip):
            logger.debug("IP %s is whitelisted, bypassing DDoS detection", ip)
            return DDoSVerdict(ip, False, "whitelisted")
        if self.reputation.is_blacklisted_or_blocked(ip):
            logger.debug("IP %s is already blocked, skipping DDoS detection", ip)
            return DDoSVerdict(ip, False, "blocked")

        country = self._geo_violation(ip)
        if country is not None:
            logger.info("%s: IP %s blocked by geographic filter (country %s)",
                        COMPONENT, ip, country)
            self._record_attack(ip, {"reason": GEO_REASON, "country": country})
            metrics.ddos_attacks.labels(reason="geographic").inc()
            return DDoSVerdict(ip, True, GEO_REASON, country=country)

        count = self.events.count(ip=ip, event_types=TRAFFIC_TYPES, since_seconds=window)
        rps = int(count // window)
        threshold = self.config.threshold_rps
        if rps < threshold:
            return DDoSVerdict(ip, False, rps=rps, count=count)

        logger.warning("%s: DDoS attack detected from IP %s: %d req/s (threshold: %d)",
                       COMPONENT, ip, rps, threshold)
        self._record_attack(ip, {
            "requests_per_second": rps,
            "threshold": threshold,
            "window_seconds": window,
        })
        metrics.ddos_attacks.labels(reason="rate").inc()
        return DDoSVerdict(ip, True, RATE_REASON, rps=rps, count=count)

    def detect(self, ip: str) -> DDoSVerdict:
        """Evaluate one IP and escalate if it is attacking."""
        if not self.config.enabled:
            logger.info("%s: DDoS protection is disabled", COMPONENT)
            return DDoSVerdict(ip, False, "disabled")
        try:
            verdict = self.evaluate(ip)
        except TransientDependencyError as e:
            self._fail_open(ip, e)
            return DDoSVerdict(ip, False, "fail_open")
        if not verdict.is_attack:
            return verdict

        if verdict.reason == GEO_REASON:
            reason = f"DDoS: geographic filter violation (country {verdict.country})"
        else:
            reason = f"DDoS attack detected ({self.config.threshold_rps} req/s threshold)"
        block = self.escalation.respond(ip, EventType.DDOS, reason)
        return DDoSVerdict(ip, True, verdict.reason, verdict.rps, verdict.count,
                           verdict.country, block)

    def sweep(self, should_stop: Callable[[], bool] | None = None) -> list[str]:
        """Check every recently active IP, then the fleet-wide ceiling.

        Returns the IPs that were blocked during this sweep.
        """
        if not self.config.enabled:
            logger.info("%s: DDoS protection is disabled", COMPONENT)
            return []

        try:
            ips = self.events.active_ips(self.config.window_seconds, TRAFFIC_TYPES)
        except TransientDependencyError as e:
            self._fail_open("*", e)
            return []

        blocked = []
        for ip in ips:
            if should_stop is not None and should_stop():
                logger.info("%s: DDoS sweep stopped early", COMPONENT)
                break
            verdict = self.detect(ip)
            if verdict.block is not None and verdict.block.applied:
                blocked.append(ip)

        self.check_concurrent()

        if blocked:
            logger.warning("%s: DDoS protection blocked %d IP(s)", COMPONENT, len(blocked))
        else:
            logger.info("%s: No DDoS attacks detected", COMPONENT)
        return blocked

    def check_concurrent(self) -> bool:
        """True (and one CRITICAL alert) when too many distinct IPs are active."""
        try:
            active = self.events.count_distinct(
                "ip", since_seconds=self.config.concurrent_window_seconds,
                event_types=TRAFFIC_TYPES,
            )
        except TransientDependencyError as e:
            self._fail_open("*", e)
            return False
        metrics.concurrent_ips.set(active)

        ceiling = self.config.concurrent_ceiling
        if active < ceiling:
            return False
        logger.warning("%s: High concurrent connections detected: %d (threshold: %d), "
                       "but no specific IP to block", COMPONENT, active, ceiling)
        self.alerts.send_alert(
            COMPONENT, Severity.CRITICAL, "high_concurrent_connections",
            f"High concurrent connections detected: {active} (threshold: {ceiling})",
            {"concurrent_ips": active, "threshold": ceiling,
             "window_seconds": self.config.concurrent_window_seconds},
        )
        return True

    def monitor(self, should_stop: Callable[[], bool], interval: float | None = None,
                sleep: Callable[[float], None] = time.sleep) -> int:
        """Sweep every *interval* seconds until should_stop(). Returns sweeps run."""
        interval = interval or self.config.window_seconds
        logger.info("%s: Starting DDoS monitoring (every %ss)", COMPONENT, interval)
        sweeps = 0
        while not should_stop():
            self.sweep(should_stop)
            sweeps += 1
            # Sleep in short steps so a stop request is honoured promptly.
            waited = 0.0
            while waited < interval and not should_stop():
                step = min(1.0, interval - waited)
                sleep(step)
                waited += step
        logger.info("%s: DDoS monitoring stopped after %d sweep(s)", COMPONENT, sweeps)
        return sweeps

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def block(self, ip: str, reason: str = "Manual block") -> IPListEntry:
        current = self.reputation.active_entry(ip)
        if current is not None and current.list_type == ListType.BLACKLIST:
            raise ValueError(f"IP {ip} is blacklisted; remove it from the blacklist first")
        expires_at = self.clock() + self.config.block_minutes * 60
        entry = self.reputation.upsert(ip, ListType.TEMP_BLOCK, reason,
                                       expires_at=expires_at, created_by="operator")
        self.events.record(EventType.BLOCK, ip, metadata={
            "reason": reason,
            "type": ListType.TEMP_BLOCK.value,
            "duration_minutes": self.config.block_minutes,
            "expires_at": expires_at,
        })
        logger.info("%s: IP %s blocked for %d minutes: %s",
                    COMPONENT, ip, self.config.block_minutes, reason)
        return entry

    def unblock(self, ip: str) -> bool:
        """Lift a temporary block. Blacklist entries are left to `shield ip unblock`."""
        removed = self.reputation.delete(ip, [ListType.TEMP_BLOCK])
        if not removed:
            logger.info("%s: IP %s had no temporary block", COMPONENT, ip)
            return False
        self.events.record(EventType.UNBLOCK, ip, metadata={"reason": "manual_unblock"})
        logger.info("%s: IP %s unblocked", COMPONENT, ip)
        return True

    def stats(self) -> DDoSStats:
        violations = self.events.violation_stats(EventType.DDOS, STATS_WINDOW_SECONDS)
        blocked = [
            e for e in self.reputation.entries(active_only=True)
            if e.list_type in BLOCKING_LISTS
        ][:20]
        return DDoSStats(violations, blocked)

    # ------------------------------------------------------------------

    def _record_attack(self, ip: str, metadata: dict) -> None:
        try:
            self.events.record(EventType.DDOS, ip, metadata=metadata)
        except TransientDependencyError as e:
            # The attack verdict stands; escalation still blocks.
            logger.error("%s: Could not record ddos event for %s: %s", COMPONENT, ip, e)

    def _geo_violation(self, ip: str) -> str | None:
        """Country code when the geographic filter rejects *ip*, else None."""
        geo = self.geo_config
        if not geo.enabled or self.resolver is None:
            return None
        if not geo.allowed_countries and not geo.blocked_countries:
            return None
        country = self.resolver.country_of(ip)
        if country is None:
            # Unknown location never blocks.
            return None
        if country in geo.blocked_countries:
            return country
        if geo.allowed_countries and country not in geo.allowed_countries:
            return country
        return None

    def _fail_open(self, ip: str, error: Exception) -> None:
        logger.error("%s: DDoS detection failing open for %s: %s", COMPONENT, ip, error)
        metrics.fail_open.labels(component="ddos").inc()
        self.alerts.send_alert(
            COMPONENT, Severity.CRITICAL, "ddos_detection_fail_open",
            "DDoS detection is failing open: event store unavailable",
            {"ip": ip, "error": str(error)},
        )
