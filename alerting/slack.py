"""Slack incoming-webhook sink."""

import logging

import requests

from alerting.dispatcher import Alert, AlertDispatcher, Severity

logger = logging.getLogger(__name__)

_COLORS = {
    Severity.CRITICAL: "danger",
    Severity.WARNING: "warning",
    Severity.INFO: "good",
}


def build_payload(alert: Alert) -> dict:
    attachment = {
        "fallback": alert.message,
        "color": _COLORS[alert.severity],
        "fields": [
            {"title": "Component", "value": alert.component, "short": True},
            {"title": "Type", "value": alert.alert_type, "short": True},
            {"title": "Message", "value": alert.message, "short": False},
        ],
    }
    ip = alert.metadata.get("ip")
    if ip:
        attachment["fields"].insert(2, {"title": "Source", "value": ip, "short": True})
    return {
        "text": f":rotating_light: *[{alert.severity.value}] {alert.component} - {alert.alert_type}*",
        "attachments": [attachment],
    }


class SlackAlertSink(AlertDispatcher):

    def __init__(self, webhook_url: str, timeout: float = 3.0,
                 session: requests.Session | None = None):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.session = session or requests.Session()

    def deliver(self, alert: Alert) -> bool:
        try:
            response = self.session.post(self.webhook_url, json=build_payload(alert),
                                         timeout=self.timeout)
            response.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.error("Slack alert failed (%s): %s", alert.alert_type, e)
            return False
