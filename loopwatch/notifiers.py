"""
loopwatch Notifiers - ready-made :class:`~loopwatch.alerts.Notifier` implementations.

The dispatcher calls ``notify(alert)`` once per new alert from its own worker
thread and logs any exception, so a notifier may raise freely.
"""

import logging
from typing import Any, Callable, Optional

import httpx

from .models import Alert, AlertSeverity

logger = logging.getLogger("loopwatch.notifiers")

ALERT_TYPE_LABELS = {
    "reply_overdue": "Reply overdue",
    "action_overdue": "Action overdue",
    "report_overdue": "Report overdue",
    "loop_broken": "Loop broken",
    "escalated": "Escalated",
}

SEVERITY_COLORS = {
    AlertSeverity.WARNING: "#F59E0B",
    AlertSeverity.CRITICAL: "#EF4444",
}


def format_alert(alert: Alert) -> str:
    """One-line human readable description of an alert."""
    label = ALERT_TYPE_LABELS.get(alert.alert_type.value, alert.alert_type.value)
    text = (
        f"{label}: {alert.to_agent.upper()} owes {alert.from_agent.upper()} "
        f"(message sent {alert.sent_at.isoformat()}, status: {alert.message_status_label})"
    )
    if alert.escalated_to:
        text += f" - escalated to {alert.escalated_to.upper()}"
    if alert.note:
        text += f" ({alert.note})"
    return text


class LoggingNotifier:
    """Writes alerts to a logger; warnings at WARNING, critical at ERROR."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger

    def notify(self, alert: Alert) -> None:
        level = logging.ERROR if alert.severity == AlertSeverity.CRITICAL else logging.WARNING
        self._log.log(level, format_alert(alert))


class CallbackNotifier:
    """Forwards alerts to a plain callable, e.g. a UI badge counter."""

    def __init__(self, callback: Callable[[Alert], Any]):
        self._callback = callback

    def notify(self, alert: Alert) -> None:
        self._callback(alert)


class WebhookNotifier:
    """
    Posts alerts as Slack-compatible JSON to an incoming-webhook URL.

    Example:
        ```python
        notifier = WebhookNotifier(os.environ["SLACK_WEBHOOK_URL"])
        engine = LoopEngine(config, notifier=notifier)
        ```
    """

    def __init__(
        self,
        webhook_url: str,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        self.webhook_url = webhook_url
        self._client = client or httpx.Client(timeout=timeout)

    def build_payload(self, alert: Alert) -> dict[str, Any]:
        label = ALERT_TYPE_LABELS.get(alert.alert_type.value, alert.alert_type.value)
        return {
            "text": format_alert(alert),
            "attachments": [
                {
                    "color": SEVERITY_COLORS[alert.severity],
                    "blocks": [
                        {
                            "type": "header",
                            "text": {"type": "plain_text", "text": label, "emoji": True},
                        },
                        {
                            "type": "section",
                            "text": {"type": "mrkdwn", "text": format_alert(alert)},
                        },
                        {
                            "type": "context",
                            "elements": [
                                {
                                    "type": "mrkdwn",
                                    "text": (
                                        f"*Loop:* {alert.loop_id} | "
                                        f"*Severity:* {alert.severity.value}"
                                    ),
                                }
                            ],
                        },
                    ],
                }
            ],
        }

    def notify(self, alert: Alert) -> None:
        response = self._client.post(self.webhook_url, json=self.build_payload(alert))
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "WebhookNotifier":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()
