"""Behavioral diversity — crawling and client rotation.

A real client touches a handful of endpoints and keeps one user agent.
More than 20 distinct endpoints in 5 minutes looks like enumeration; more
than 10 user agents in an hour looks like a bot rotating its fingerprint.
Both comparisons are strict.
"""

from shield.checks import AbuseCheck, Finding


class BehaviorCheck(AbuseCheck):
    id = "behavioral"

    def evaluate(self, ip, events):
        cfg = self.config
        findings = []

        endpoints = events.count_distinct(
            "endpoint", ip=ip, since_seconds=cfg.endpoint_window_seconds)
        if endpoints > cfg.endpoint_diversity:
            findings.append(Finding(self.id, "high_endpoint_diversity", endpoints,
                                    cfg.endpoint_diversity))

        agents = events.count_distinct(
            "user_agent", ip=ip, since_seconds=cfg.user_agent_window_seconds)
        if agents > cfg.user_agent_diversity:
            findings.append(Finding(self.id, "high_ua_diversity", agents,
                                    cfg.user_agent_diversity))

        return findings
