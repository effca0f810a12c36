"""Volume anomaly — this hour against the IP's own 7-day baseline.

The baseline is the mean event count over the completed clock hours of the
trailing week in which the IP was active.  Quiet hours are skipped rather
than averaged in as zeros, so a client that only shows up during office
hours is compared against its office hours.  The current hour is what is
being judged, so it is not part of its own baseline.

An IP with no history has a baseline of 0 and is never flagged here: no
data is not evidence.
"""

from shield.checks import AbuseCheck, Finding


class AnomalyCheck(AbuseCheck):
    id = "anomaly"

    def baseline(self, ip, events) -> float:
        current_bucket = int(events.clock() // 3600)
        hourly = events.hourly_counts(ip, self.config.baseline_days * 24 * 3600)
        past = [n for bucket, n in hourly.items() if bucket != current_bucket]
        if not past:
            return 0.0
        return sum(past) / len(past)

    def current(self, ip, events) -> int:
        now = events.clock()
        return events.count(ip=ip, start=now - (now % 3600))

    def evaluate(self, ip, events):
        baseline = self.baseline(ip, events)
        if baseline <= 0:
            return []
        current = self.current(ip, events)
        threshold = baseline * self.config.anomaly_multiplier
        if current >= threshold:
            return [Finding(self.id, "volume_anomaly", current, round(threshold, 2))]
        return []
