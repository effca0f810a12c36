"""Wiring: one PolicyConfig in, every component built on shared stores out.

    storage.url = "memory://"   in-process stores (single process, tests)
    storage.url = anything else SQLAlchemy engine, tables created on first use
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable

from alerting.dispatcher import (
    AlertDispatcher,
    DedupAlertDispatcher,
    FanoutAlertDispatcher,
    LoggingAlertDispatcher,
)
from shield.abuse import AbuseDetector
from shield.config import AlertConfig, PolicyConfig
from shield.ddos import DDoSDetector
from shield.escalation import EscalationEngine
from shield.geo import CountryResolver
from shield.ip_lists import IPListManager
from shield.rate_limiter import RateLimiter
from shield.stores import EventLog, ReputationStore
from shield.stores.memory import MemoryEventLog, MemoryReputationStore

logger = logging.getLogger(__name__)

MEMORY_URL = "memory://"


@dataclass
class SecurityPolicy:
    config: PolicyConfig
    events: EventLog
    reputation: ReputationStore
    alerts: AlertDispatcher
    escalation: EscalationEngine
    rate_limiter: RateLimiter
    ddos: DDoSDetector
    abuse: AbuseDetector
    ip_lists: IPListManager

    def close(self) -> None:
        self.alerts.close()


def build_stores(url: str, clock: Callable[[], float] = time.time) -> tuple[EventLog, ReputationStore]:
    if url == MEMORY_URL:
        return MemoryEventLog(clock), MemoryReputationStore(clock)

    from shield.stores.sql import SqlEventLog, SqlReputationStore, make_engine

    engine = make_engine(url)
    logger.debug("Using database %s", engine.url.render_as_string(hide_password=True))
    return SqlEventLog(engine, clock), SqlReputationStore(engine, clock)


def build_dispatcher(config: AlertConfig, clock: Callable[[], float] = time.time) -> AlertDispatcher:
    sinks: list[AlertDispatcher] = []
    for name in config.sinks:
        if name == "log":
            sinks.append(LoggingAlertDispatcher())
        elif name == "kafka":
            from alerting.kafka_sink import KafkaAlertSink

            sinks.append(KafkaAlertSink(config.kafka_bootstrap_servers, config.kafka_topic))
        elif name == "slack":
            if not config.slack_webhook_url:
                logger.warning("Slack alert sink configured without a webhook URL, skipping")
                continue
            from alerting.slack import SlackAlertSink

            sinks.append(SlackAlertSink(config.slack_webhook_url))

    if not sinks:
        sinks.append(LoggingAlertDispatcher())

    dispatcher: AlertDispatcher
    if len(sinks) == 1:
        dispatcher = sinks[0]
    else:
        dispatcher = FanoutAlertDispatcher(sinks)
    if config.dedup_minutes > 0:
        dispatcher = DedupAlertDispatcher(dispatcher, config.dedup_minutes * 60, clock)
    return dispatcher


def build_policy(config: PolicyConfig, clock: Callable[[], float] = time.time,
                 events: EventLog | None = None, reputation: ReputationStore | None = None,
                 alerts: AlertDispatcher | None = None,
                 resolver: CountryResolver | None = None) -> SecurityPolicy:
    """Build every component. Pass stores or a dispatcher to override the config."""
    if events is None or reputation is None:
        built_events, built_reputation = build_stores(config.storage.url, clock)
        if events is None:
            events = built_events
        if reputation is None:
            reputation = built_reputation
    if alerts is None:
        alerts = build_dispatcher(config.alerts, clock)

    escalation = EscalationEngine(config.escalation, events, reputation, alerts, clock)
    return SecurityPolicy(
        config=config,
        events=events,
        reputation=reputation,
        alerts=alerts,
        escalation=escalation,
        rate_limiter=RateLimiter(config.rate_limit, events, reputation, alerts),
        ddos=DDoSDetector(config.ddos, config.geo, events, reputation, escalation,
                          alerts, resolver=resolver, clock=clock),
        abuse=AbuseDetector(config.abuse, events, reputation, escalation, alerts),
        ip_lists=IPListManager(events, reputation),
    )
