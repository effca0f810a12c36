"""Request patterns — rapid bursts, error-heavy traffic, sheer volume.

  rapid_requests      >= 10 events in the last 10 s (scripted hammering)
  high_error_rate     >= 50% of the last hour's events were 4xx/5xx
                      (scanners and credential stuffers mostly get errors)
  excessive_requests  >= 1000 events in the last hour
"""

from shield.checks import AbuseCheck, Finding


class PatternCheck(AbuseCheck):
    id = "pattern"

    def evaluate(self, ip, events):
        cfg = self.config
        findings = []

        rapid = events.count(ip=ip, since_seconds=cfg.rapid_window_seconds)
        if rapid >= cfg.rapid_threshold:
            findings.append(Finding(self.id, "rapid_requests", rapid, cfg.rapid_threshold))

        errors, total = events.count_errors(ip, cfg.error_window_seconds)
        error_rate = (errors * 100) // total if total else 0
        if total and error_rate >= cfg.error_rate_percent:
            findings.append(Finding(self.id, "high_error_rate", error_rate,
                                    cfg.error_rate_percent))

        excessive = events.count(ip=ip, since_seconds=cfg.excessive_window_seconds)
        if excessive >= cfg.excessive_threshold:
            findings.append(Finding(self.id, "excessive_requests", excessive,
                                    cfg.excessive_threshold))

        return findings
