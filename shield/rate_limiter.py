"""Sliding-window rate limiter.

Admission is a time-ranged count over the shared event log, so every
instance of the service sees the same window without coordination:

    C = rate_limit events for the identifier in the last W seconds
    C >= L + B      Limited (and a rate_limit{exceeded=true} event is logged)
    L <= C < L + B  Allowed, burst
    C < L           Allowed

`record` appends one rate_limit event per request regardless of verdict;
old events simply age out of the query range, nothing is ever reset on a
timer.  Counts under concurrency are approximate: two requests racing
through admit() may both see C = L + B - 1.
"""

import logging
from dataclasses import dataclass

from alerting.dispatcher import AlertDispatcher, Severity
from shield import metrics
from shield.config import RateLimitConfig
from shield.errors import ConfigurationError, TransientDependencyError
from shield.events import EventSummary, EventType, SecurityEvent
from shield.stores import EventLog, ReputationStore

logger = logging.getLogger(__name__)

COMPONENT = "SECURITY"

STATS_WINDOW_SECONDS = 3600


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    reason: str  # whitelisted | blocked | within_limit | burst | exceeded | fail_open
    identifier: str
    count: int = 0
    limit: int = 0
    burst: int = 0

    @property
    def label(self) -> str:
        return "ALLOWED" if self.allowed else "RATE_LIMITED"


def resolve_identifier(ip: str, endpoint: str | None = None,
                       api_key: str | None = None) -> tuple[str, str]:
    """(identifier, kind): api_key beats endpoint beats bare IP."""
    if api_key:
        return f"api_key:{api_key}", "api_key"
    if endpoint:
        return f"{ip}:{endpoint}", "endpoint"
    return ip, "ip"


class RateLimiter:

    def __init__(self, config: RateLimitConfig, events: EventLog,
                 reputation: ReputationStore, alerts: AlertDispatcher):
        self.config = config
        self.events = events
        self.reputation = reputation
        self.alerts = alerts

    def limit_for(self, kind: str) -> int:
        return {
            "api_key": self.config.per_api_key,
            "endpoint": self.config.per_endpoint,
            "ip": self.config.per_ip,
        }[kind]

    def admit(self, ip: str, endpoint: str | None = None,
              api_key: str | None = None) -> RateDecision:
        identifier, kind = resolve_identifier(ip, endpoint, api_key)
        limit = self.limit_for(kind)
        window = self.config.window_seconds
        burst = self.config.burst
        if window <= 0 or limit <= 0 or burst < 0:
            raise ConfigurationError(
                f"invalid rate limit for {kind}: window={window} limit={limit} burst={burst}"
            )

        try:
            if self.reputation.is_whitelisted(ip):
                logger.debug("IP %s is whitelisted, bypassing rate limit", ip)
                return self._decide(True, "whitelisted", identifier, limit=limit, burst=burst)
            if self.reputation.is_blacklisted_or_blocked(ip):
                logger.debug("IP %s is blacklisted or temporarily blocked", ip)
                return self._decide(False, "blocked", identifier, limit=limit, burst=burst)

            count = self.events.count(
                identifier=identifier,
                event_types=[EventType.RATE_LIMIT],
                since_seconds=window,
            )
        except TransientDependencyError as e:
            return self._fail_open(ip, identifier, limit, burst, e)

        effective_limit = limit + burst
        if count >= effective_limit:
            logger.warning("Rate limit exceeded for %s: %d/%d (limit: %d, burst: %d)",
                           identifier, count, effective_limit, limit, burst)
            try:
                self.events.append(SecurityEvent(
                    event_type=EventType.RATE_LIMIT,
                    ip=ip,
                    endpoint=endpoint or None,
                    identifier=identifier,
                    metadata={"identifier": identifier, "count": count,
                              "limit": limit, "exceeded": True},
                    timestamp=self.events.clock(),
                ))
            except TransientDependencyError as e:
                logger.error("Could not record rate limit violation for %s: %s", identifier, e)
            return self._decide(False, "exceeded", identifier, count, limit, burst)
        if count >= limit:
            logger.info("Rate limit warning for %s: %d/%d (within burst allowance)",
                        identifier, count, effective_limit)
            return self._decide(True, "burst", identifier, count, limit, burst)
        return self._decide(True, "within_limit", identifier, count, limit, burst)

    def record(self, ip: str, endpoint: str | None = None, api_key: str | None = None,
               status_code: int | None = None, user_agent: str | None = None) -> SecurityEvent | None:
        """Append the rate_limit event for one request. Never raises on store failure."""
        identifier, _ = resolve_identifier(ip, endpoint, api_key)
        meta = {"identifier": identifier}
        if endpoint:
            meta["endpoint"] = endpoint
        if api_key:
            meta["api_key"] = api_key
        if status_code is not None:
            meta["status_code"] = status_code
        try:
            return self.events.record(
                EventType.RATE_LIMIT, ip, endpoint, meta,
                identifier=identifier, status_code=status_code, user_agent=user_agent,
            )
        except TransientDependencyError as e:
            logger.error("Failed to record request for %s: %s", identifier, e)
            return None

    def process(self, ip: str, endpoint: str | None = None, api_key: str | None = None,
                status_code: int | None = None, user_agent: str | None = None) -> RateDecision:
        """Hot-path call: decide, then record the request whatever the verdict."""
        decision = self.admit(ip, endpoint, api_key)
        self.record(ip, endpoint, api_key, status_code=status_code, user_agent=user_agent)
        return decision

    def stats(self, ip: str | None = None, endpoint: str | None = None) -> list[EventSummary]:
        """Busiest identifiers over the last hour."""
        return self.events.summarize(
            EventType.RATE_LIMIT, STATS_WINDOW_SECONDS,
            ip=ip, endpoint=endpoint, group_by="identifier", limit=20,
        )

    def reset(self, ip: str, endpoint: str | None = None) -> int:
        """Forget an IP's rate_limit events (optionally for one endpoint)."""
        removed = self.events.delete(ip, EventType.RATE_LIMIT, endpoint)
        logger.info("Rate limit counters reset for %s%s (%d events)",
                    ip, f":{endpoint}" if endpoint else "", removed)
        return removed

    # ------------------------------------------------------------------

    def _decide(self, allowed, reason, identifier, count=0, limit=0, burst=0) -> RateDecision:
        metrics.rate_limit_decisions.labels(decision=reason).inc()
        return RateDecision(allowed, reason, identifier, count, limit, burst)

    def _fail_open(self, ip, identifier, limit, burst, error) -> RateDecision:
        logger.error("Rate limiter failing open for %s: %s", identifier, error)
        metrics.fail_open.labels(component="rate_limiter").inc()
        self.alerts.send_alert(
            COMPONENT, Severity.CRITICAL, "rate_limiter_fail_open",
            "Rate limiter is failing open: event store unavailable",
            {"ip": ip, "error": str(error)},
        )
        return self._decide(True, "fail_open", identifier, limit=limit, burst=burst)
