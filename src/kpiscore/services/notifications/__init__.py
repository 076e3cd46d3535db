"""Notification dispatch for score events."""

from kpiscore.services.notifications.dispatcher import (
    BackgroundNotificationDispatcher,
    HttpPushTransport,
    InMemoryNotificationDispatcher,
    LoggingNotificationDispatcher,
    NotificationDeliveryError,
    NotificationDispatcher,
    PushTransport,
    TransportNotificationDispatcher,
    build_message,
    build_notification_dispatcher,
    render_notification,
)

__all__ = [
    "BackgroundNotificationDispatcher",
    "HttpPushTransport",
    "InMemoryNotificationDispatcher",
    "LoggingNotificationDispatcher",
    "NotificationDeliveryError",
    "NotificationDispatcher",
    "PushTransport",
    "TransportNotificationDispatcher",
    "build_message",
    "build_notification_dispatcher",
    "render_notification",
]
