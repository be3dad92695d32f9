"""Notification sinks for permit events.

Handles:
- Logging every event for the audit trail
- Webhook notifications to external systems
- Fanning one event out to several sinks
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import httpx

from ptw.core.config import Settings, get_settings
from ptw.core.permit.events import NotificationEventType, NotificationSink, PermitEvent

logger = logging.getLogger(__name__)


EVENT_TITLES = {
    NotificationEventType.PERMIT_INITIATED: "Permit {serial} submitted for approval",
    NotificationEventType.APPROVAL_RECORDED: "Permit {serial}: approval decision recorded",
    NotificationEventType.PERMIT_APPROVED: "Permit {serial} approved",
    NotificationEventType.PERMIT_REJECTED: "Permit {serial} rejected",
    NotificationEventType.PERMIT_READY: "Permit {serial} ready to start",
    NotificationEventType.PERMIT_STARTED: "Work started on permit {serial}",
    NotificationEventType.EXTENSION_REQUESTED: "Extension requested for permit {serial}",
    NotificationEventType.EXTENSION_APPLIED: "Permit {serial} extended",
    NotificationEventType.EXTENSION_DENIED: "Extension denied for permit {serial}",
    NotificationEventType.PERMIT_CLOSED: "Permit {serial} closed",
    NotificationEventType.START_REMINDER: "Permit {serial} starts soon",
    NotificationEventType.END_REMINDER: "Permit {serial} ends soon",
}


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class LoggingNotificationSink(NotificationSink):
    """Writes each event to the log."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def dispatch(self, event: PermitEvent) -> None:
        logger.log(
            self.level,
            "[%s] %s (status=%s, actor=%s)",
            event.event_type.value,
            EVENT_TITLES.get(event.event_type, "{serial}").format(serial=event.permit.serial),
            event.permit.status.value,
            event.actor_id or "system",
        )


class WebhookNotificationSink(NotificationSink):
    """
    POSTs a JSON payload per event to a webhook URL.

    Supports the generic payload and Slack's block format.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 30,
        payload_format: str = "generic",
        bearer_token: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.Client] = None,
    ):
        """
        Initialize the webhook sink.

        Args:
            url: Endpoint receiving the events
            timeout: Request timeout in seconds
            payload_format: "generic" or "slack"
            bearer_token: Sent as an Authorization header when set
            headers: Extra request headers
            client: Reuse an existing client instead of one per request
        """
        if payload_format not in ("generic", "slack"):
            raise ValueError(f"Unsupported webhook payload format: {payload_format}")
        self.url = url
        self.timeout = timeout
        self.payload_format = payload_format
        self.headers = dict(headers or {})
        self.headers["Content-Type"] = "application/json"
        if bearer_token:
            self.headers["Authorization"] = f"Bearer {bearer_token}"
        self._client = client

    def dispatch(self, event: PermitEvent) -> None:
        payload = self.build_payload(event)
        if self._client is not None:
            response = self._client.post(self.url, json=payload, headers=self.headers, timeout=self.timeout)
        else:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.url, json=payload, headers=self.headers)
        response.raise_for_status()
        logger.debug("Webhook delivered %s for permit %s", event.event_type.value, event.permit.serial)

    def build_payload(self, event: PermitEvent) -> Dict[str, Any]:
        if self.payload_format == "slack":
            return self._slack_payload(event)
        return self._generic_payload(event)

    def _generic_payload(self, event: PermitEvent) -> Dict[str, Any]:
        return {
            "event": event.event_type.value,
            "timestamp": event.occurred_at.isoformat(),
            "actor_id": event.actor_id,
            "permit": event.permit.model_dump(mode="json"),
            "details": {key: _jsonable(value) for key, value in event.details.items()},
        }

    def _slack_payload(self, event: PermitEvent) -> Dict[str, Any]:
        permit = event.permit
        title = EVENT_TITLES.get(event.event_type, "{serial}").format(serial=permit.serial)
        return {
            "blocks": [
                {
                    "type": "section",
                    "text": {"type": "mrkdwn", "text": f"*{title}*\n{permit.work_description}"},
                },
                {
                    "type": "section",
                    "fields": [
                        {"type": "mrkdwn", "text": f"*Permit:*\n{permit.serial}"},
                        {"type": "mrkdwn", "text": f"*Location:*\n{permit.work_location}"},
                        {"type": "mrkdwn", "text": f"*Status:*\n{permit.status.value}"},
                        {"type": "mrkdwn", "text": f"*Ends:*\n{permit.end_time.isoformat()}"},
                    ],
                },
            ]
        }


class CompositeNotificationSink(NotificationSink):
    """Delivers each event to every child sink; one failing sink does not stop the rest."""

    def __init__(self, sinks: Iterable[NotificationSink]):
        self.sinks: List[NotificationSink] = list(sinks)

    def dispatch(self, event: PermitEvent) -> None:
        for sink in self.sinks:
            try:
                sink.dispatch(event)
            except Exception:
                logger.exception(
                    "%s failed to deliver %s for permit %s",
                    type(sink).__name__, event.event_type.value, event.permit.serial,
                )


def build_notifier(settings: Optional[Settings] = None) -> NotificationSink:
    """Logging sink, plus a webhook sink when ``webhook_url`` is configured."""
    settings = settings or get_settings()
    sinks: List[NotificationSink] = [LoggingNotificationSink()]
    if settings.webhook_url:
        sinks.append(WebhookNotificationSink(settings.webhook_url, timeout=settings.webhook_timeout))
    return CompositeNotificationSink(sinks)
