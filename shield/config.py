"""Policy configuration — one immutable object built once, injected everywhere.

Loaded from YAML (same approach as the detection rule loader: parse, check
the shape, raise early) with a handful of environment overrides.  Every
section is a frozen dataclass that validates itself on construction, so a
PolicyConfig that exists is a PolicyConfig that can produce verdicts.
"""

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from shield.errors import ConfigurationError

DEFAULT_DATABASE_URL = "sqlite:///shield.db"
DEFAULT_GEO_URL = "http://ip-api.com/json/{ip}?fields=countryCode"

_SECTIONS = ("storage", "rate_limit", "ddos", "geo", "abuse", "escalation", "alerts")


def _require_positive(section: str, **values) -> None:
    for name, value in values.items():
        if value is None or value <= 0:
            raise ConfigurationError(f"{section}.{name} must be greater than 0 (got {value!r})")


def _countries(values) -> tuple[str, ...]:
    if isinstance(values, str):
        values = values.split(",")
    return tuple(v.strip().upper() for v in values or () if v and v.strip())


@dataclass(frozen=True)
class StorageConfig:
    url: str = DEFAULT_DATABASE_URL


@dataclass(frozen=True)
class RateLimitConfig:
    window_seconds: int = 60
    burst: int = 10
    per_ip: int = 60
    per_api_key: int = 100
    per_endpoint: int = 200

    def __post_init__(self):
        _require_positive(
            "rate_limit",
            window_seconds=self.window_seconds,
            per_ip=self.per_ip,
            per_api_key=self.per_api_key,
            per_endpoint=self.per_endpoint,
        )
        if self.burst is None or self.burst < 0:
            raise ConfigurationError(f"rate_limit.burst must be >= 0 (got {self.burst!r})")


@dataclass(frozen=True)
class DDoSConfig:
    enabled: bool = True
    window_seconds: int = 60
    threshold_rps: int = 100
    concurrent_window_seconds: int = 10
    concurrent_ceiling: int = 500
    block_minutes: int = 15

    def __post_init__(self):
        _require_positive(
            "ddos",
            window_seconds=self.window_seconds,
            threshold_rps=self.threshold_rps,
            concurrent_window_seconds=self.concurrent_window_seconds,
            concurrent_ceiling=self.concurrent_ceiling,
            block_minutes=self.block_minutes,
        )


@dataclass(frozen=True)
class GeoConfig:
    enabled: bool = False
    allowed_countries: tuple[str, ...] = ()
    blocked_countries: tuple[str, ...] = ()
    lookup_url: str = DEFAULT_GEO_URL
    timeout_seconds: float = 2.0
    cache_ttl_seconds: int = 3600

    def __post_init__(self):
        object.__setattr__(self, "allowed_countries", _countries(self.allowed_countries))
        object.__setattr__(self, "blocked_countries", _countries(self.blocked_countries))
        _require_positive("geo", timeout_seconds=self.timeout_seconds)


@dataclass(frozen=True)
class AbuseConfig:
    enabled: bool = True
    rapid_window_seconds: int = 10
    rapid_threshold: int = 10
    error_window_seconds: int = 3600
    error_rate_percent: int = 50
    excessive_window_seconds: int = 3600
    excessive_threshold: int = 1000
    baseline_days: int = 7
    anomaly_multiplier: float = 3.0
    endpoint_window_seconds: int = 300
    endpoint_diversity: int = 20
    user_agent_window_seconds: int = 3600
    user_agent_diversity: int = 10
    # IPs with any event in this window are covered by analyze_all().
    active_window_seconds: int = 3600

    def __post_init__(self):
        _require_positive(
            "abuse",
            **{f.name: getattr(self, f.name) for f in dataclasses.fields(self) if f.name != "enabled"},
        )


@dataclass(frozen=True)
class EscalationConfig:
    history_hours: int = 24
    # (minimum violation count, block minutes), highest tier first.
    tiers: tuple[tuple[int, int], ...] = ((3, 1440), (2, 60))
    default_minutes: int = 15

    def __post_init__(self):
        _require_positive("escalation", history_hours=self.history_hours,
                          default_minutes=self.default_minutes)
        try:
            tiers = tuple(sorted(((int(c), int(m)) for c, m in self.tiers), reverse=True))
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"escalation.tiers must be [count, minutes] pairs: {e}")
        for count, minutes in tiers:
            _require_positive("escalation.tiers", count=count, minutes=minutes)
        object.__setattr__(self, "tiers", tiers)


@dataclass(frozen=True)
class AlertConfig:
    sinks: tuple[str, ...] = ("log",)
    dedup_minutes: int = 60
    kafka_bootstrap_servers: str = "localhost:9092"
    kafka_topic: str = "alerts"
    slack_webhook_url: str | None = None

    def __post_init__(self):
        sinks = tuple(self.sinks)
        unknown = set(sinks) - {"log", "kafka", "slack"}
        if unknown:
            raise ConfigurationError(f"alerts.sinks: unknown sink(s) {sorted(unknown)}")
        if self.dedup_minutes < 0:
            raise ConfigurationError("alerts.dedup_minutes must be >= 0")
        object.__setattr__(self, "sinks", sinks)


@dataclass(frozen=True)
class PolicyConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    ddos: DDoSConfig = field(default_factory=DDoSConfig)
    geo: GeoConfig = field(default_factory=GeoConfig)
    abuse: AbuseConfig = field(default_factory=AbuseConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    alerts: AlertConfig = field(default_factory=AlertConfig)

    def with_rate_limit(self, **overrides) -> "PolicyConfig":
        """Copy with some rate limit fields replaced (None values are ignored)."""
        overrides = {k: v for k, v in overrides.items() if v is not None}
        if not overrides:
            return self
        return dataclasses.replace(
            self, rate_limit=dataclasses.replace(self.rate_limit, **overrides)
        )


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_config(path: str | Path | None = None, env: dict | None = None) -> PolicyConfig:
    """Build a PolicyConfig from an optional YAML file plus environment.

    Resolution: explicit *path* > $SHIELD_CONFIG > built-in defaults.
    $SHIELD_DATABASE_URL and $SLACK_WEBHOOK_URL override the file.
    """
    env = os.environ if env is None else env
    path = path or env.get("SHIELD_CONFIG")
    raw = _parse_and_validate(Path(path)) if path else {}

    storage = dict(raw.get("storage") or {})
    if env.get("SHIELD_DATABASE_URL"):
        storage["url"] = env["SHIELD_DATABASE_URL"]

    alerts = dict(raw.get("alerts") or {})
    kafka = alerts.pop("kafka", None) or {}
    slack = alerts.pop("slack", None) or {}
    if "bootstrap_servers" in kafka:
        alerts["kafka_bootstrap_servers"] = kafka["bootstrap_servers"]
    if "topic" in kafka:
        alerts["kafka_topic"] = kafka["topic"]
    if slack.get("webhook_url"):
        alerts["slack_webhook_url"] = slack["webhook_url"]
    if env.get("SLACK_WEBHOOK_URL"):
        alerts["slack_webhook_url"] = env["SLACK_WEBHOOK_URL"]

    escalation = dict(raw.get("escalation") or {})
    if "tiers" in escalation:
        escalation["tiers"] = tuple(tuple(t) for t in escalation["tiers"])

    return PolicyConfig(
        storage=_build(StorageConfig, "storage", storage),
        rate_limit=_build(RateLimitConfig, "rate_limit", raw.get("rate_limit")),
        ddos=_build(DDoSConfig, "ddos", raw.get("ddos")),
        geo=_build(GeoConfig, "geo", raw.get("geo")),
        abuse=_build(AbuseConfig, "abuse", raw.get("abuse")),
        escalation=_build(EscalationConfig, "escalation", escalation),
        alerts=_build(AlertConfig, "alerts", alerts),
    )


def _build(cls, section: str, values: dict | None):
    try:
        return cls(**(values or {}))
    except TypeError as e:
        raise ConfigurationError(f"{section}: {e}")


def _parse_and_validate(path: Path) -> dict:
    if not path.is_file():
        raise ConfigurationError(f"Config file not found: {path}")
    try:
        with open(path) as f:
            definition = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"{path.name}: invalid YAML: {e}")

    if not isinstance(definition, dict):
        raise ConfigurationError(f"{path.name}: top level must be a mapping")
    for section in definition:
        if section not in _SECTIONS:
            raise ConfigurationError(f"{path.name}: unknown section '{section}'")
        if not isinstance(definition[section], (dict, type(None))):
            raise ConfigurationError(f"{path.name}: section '{section}' must be a mapping")
    return definition
