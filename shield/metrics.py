"""Prometheus metrics for the policy engine.

Each Counter/Gauge below registers itself in the global prometheus_client
REGISTRY on import.  `shield ddos monitor --metrics-port N` serves them via
start_http_server(); one-shot CLI calls just update them and exit.

Labels are kept low-cardinality (decision, reason, check, violation type):
per-IP detail belongs in the event log, not in the time series.
"""

from prometheus_client import Counter, Gauge, start_http_server

# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------
rate_limit_decisions = Counter(
    "shield_rate_limit_decisions_total",
    "Rate limiter verdicts",
    ["decision"],
)

# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------
ddos_attacks = Counter(
    "shield_ddos_attacks_total",
    "DDoS verdicts that reported an attack",
    ["reason"],
)
concurrent_ips = Gauge(
    "shield_concurrent_ips",
    "Distinct IPs active in the concurrent-connection window at the last sweep",
)
abuse_findings = Counter(
    "shield_abuse_findings_total",
    "Abuse sub-check findings",
    ["check"],
)

# ---------------------------------------------------------------------------
# Response
# ---------------------------------------------------------------------------
auto_blocks = Counter(
    "shield_auto_blocks_total",
    "Temporary blocks applied by the escalation engine",
    ["violation_type"],
)
fail_open = Counter(
    "shield_fail_open_total",
    "Decisions allowed because a store was unreachable",
    ["component"],
)
alerts_sent = Counter(
    "shield_alerts_total",
    "Alerts handed to the dispatcher",
    ["severity"],
)


def serve(port: int) -> None:
    """Expose /metrics on *port* from a daemon thread."""
    start_http_server(port)
