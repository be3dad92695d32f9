"""Notification delivery for permit events."""

from .notifications import (
    CompositeNotificationSink,
    LoggingNotificationSink,
    WebhookNotificationSink,
    build_notifier,
)

__all__ = [
    "CompositeNotificationSink",
    "LoggingNotificationSink",
    "WebhookNotificationSink",
    "build_notifier",
]
