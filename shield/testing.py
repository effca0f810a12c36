"""Deterministic collaborators for tests and local experiments."""

from alerting.dispatcher import Alert, AlertDispatcher

# Half past an hour, so "since the top of the hour" is a 30-minute range.
DEFAULT_START = 1_700_001_000.0


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = DEFAULT_START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class RecordingDispatcher(AlertDispatcher):
    """Keeps every delivered alert in memory."""

    def __init__(self, fail: bool = False):
        self.alerts: list[Alert] = []
        self.fail = fail

    def deliver(self, alert: Alert) -> bool:
        if self.fail:
            raise ConnectionError("alert transport down")
        self.alerts.append(alert)
        return True

    def of_type(self, alert_type: str) -> list[Alert]:
        return [a for a in self.alerts if a.alert_type == alert_type]
