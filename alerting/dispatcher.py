"""Operator alert dispatch.

Detection components call `send_alert(component, severity, alert_type,
message, metadata)` and never look at the result: delivery is best effort.
A dispatcher logs its own failures and returns False; it never raises into
the caller, because the block that triggered the alert has already been
applied and must stay applied.

Severity is normalised once, here.  Callers may pass "warning", "ERROR",
Severity.CRITICAL... and the sinks only ever see the three canonical levels.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from shield import metrics

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"

    @classmethod
    def normalize(cls, value: "Severity | str") -> "Severity":
        """Map any accepted spelling onto the canonical enum.

        Case-insensitive; ERROR is folded into CRITICAL.  Anything else
        raises ValueError.
        """
        if isinstance(value, Severity):
            return value
        text = str(value).strip().upper()
        if text == "ERROR":
            return cls.CRITICAL
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"unknown alert severity: {value!r}")


@dataclass(frozen=True)
class Alert:
    component: str
    severity: Severity
    alert_type: str
    message: str
    metadata: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    id: str = field(default_factory=lambda: f"alert_{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "component": self.component,
            "severity": self.severity.value,
            "alert_type": self.alert_type,
            "message": self.message,
            "metadata": self.metadata,
        }


class AlertDispatcher:
    """Base dispatcher. Subclass and implement deliver()."""

    def send_alert(self, component: str, severity: Severity | str, alert_type: str,
                   message: str, metadata: dict | None = None) -> bool:
        """Normalise, build and deliver one alert. Returns True on delivery."""
        try:
            level = Severity.normalize(severity)
        except ValueError as e:
            logger.error("Dropping alert %s/%s: %s", component, alert_type, e)
            return False

        alert = Alert(
            component=component,
            severity=level,
            alert_type=alert_type,
            message=message,
            metadata=dict(metadata or {}),
        )
        try:
            delivered = self.deliver(alert)
        except Exception as e:
            # Delivery failures never propagate to the caller.
            logger.error("Alert delivery failed via %s (%s/%s): %s",
                         type(self).__name__, component, alert_type, e)
            return False
        if delivered:
            metrics.alerts_sent.labels(severity=level.value).inc()
        return delivered

    def deliver(self, alert: Alert) -> bool:
        raise NotImplementedError

    def close(self) -> None:
        """Flush buffered alerts. Default: nothing buffered."""


class LoggingAlertDispatcher(AlertDispatcher):
    """Writes alerts to the `alerting` logger at a matching level."""

    _LEVELS = {
        Severity.INFO: logging.INFO,
        Severity.WARNING: logging.WARNING,
        Severity.CRITICAL: logging.CRITICAL,
    }

    def deliver(self, alert: Alert) -> bool:
        logger.log(self._LEVELS[alert.severity], "[%s] %s/%s: %s",
                   alert.severity.value, alert.component, alert.alert_type, alert.message)
        return True


class FanoutAlertDispatcher(AlertDispatcher):
    """Delivers to every sink; succeeds if at least one sink did."""

    def __init__(self, sinks: list[AlertDispatcher]):
        self.sinks = list(sinks)

    def deliver(self, alert: Alert) -> bool:
        delivered = False
        for sink in self.sinks:
            try:
                if sink.deliver(alert):
                    delivered = True
            except Exception as e:
                logger.error("Alert sink %s failed for %s: %s",
                             type(sink).__name__, alert.alert_type, e)
        return delivered

    def close(self) -> None:
        for sink in self.sinks:
            sink.close()


class DedupAlertDispatcher(AlertDispatcher):
    """Suppresses repeats of the same component/type/message within a window.

    A suppressed alert counts as delivered: the operator already has it.
    """

    def __init__(self, inner: AlertDispatcher, window_seconds: float,
                 clock: Callable[[], float] = time.time):
        self.inner = inner
        self.window_seconds = window_seconds
        self._clock = clock
        self._seen: dict[tuple[str, str, str], float] = {}
        self._lock = threading.Lock()

    def deliver(self, alert: Alert) -> bool:
        key = (alert.component, alert.alert_type, alert.message)
        now = self._clock()
        with self._lock:
            last = self._seen.get(key)
            if last is not None and now - last < self.window_seconds:
                logger.debug("Alert deduplicated: %s/%s", alert.component, alert.alert_type)
                return True
            self._seen[key] = now
            # Forget anything older than the window so the map stays bounded.
            for k in [k for k, ts in self._seen.items() if now - ts >= self.window_seconds]:
                del self._seen[k]
        return self.inner.deliver(alert)

    def close(self) -> None:
        self.inner.close()
