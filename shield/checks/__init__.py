# Abuse sub-checks as Python classes, one family per file.
#
# Each check looks at one IP's recent history through the EventLog and
# returns zero or more Findings.  The AbuseDetector runs every check and
# ORs the results; checks never see each other's output and never write.
#
#   pattern.py   rapid requests, error rate, excessive volume
#   anomaly.py   current hour vs. 7-day hourly baseline
#   behavior.py  endpoint and user-agent diversity

from dataclasses import dataclass

from shield.config import AbuseConfig
from shield.stores import EventLog


@dataclass(frozen=True)
class Finding:
    """One firing reason, kept verbatim in the abuse event for forensics."""

    check: str       # pattern | anomaly | behavioral
    name: str        # rapid_requests, high_error_rate, ...
    value: float
    threshold: float

    def __str__(self) -> str:
        value = int(self.value) if float(self.value).is_integer() else round(self.value, 2)
        suffix = "%" if self.name == "high_error_rate" else ""
        return f"{self.name}:{value}{suffix}"

    def to_dict(self) -> dict:
        return {"check": self.check, "name": self.name,
                "value": self.value, "threshold": self.threshold}


class AbuseCheck:
    """Base abuse check. Subclass and implement evaluate()."""

    id: str

    def __init__(self, config: AbuseConfig):
        self.config = config

    def evaluate(self, ip: str, events: EventLog) -> list[Finding]:
        """Return the findings for *ip*; empty means this check saw nothing."""
        raise NotImplementedError


from shield.checks.pattern import PatternCheck
from shield.checks.anomaly import AnomalyCheck
from shield.checks.behavior import BehaviorCheck


def default_checks(config: AbuseConfig) -> list[AbuseCheck]:
    return [PatternCheck(config), AnomalyCheck(config), BehaviorCheck(config)]
