"""PassVault - Notification sink (append-only, per owner)."""

from .notification_sink import (
    Notification,
    NotificationAction,
    NotificationSink,
    format_data_size,
    get_notification_sink,
    set_notification_sink,
)

__all__ = [
    "Notification",
    "NotificationAction",
    "NotificationSink",
    "format_data_size",
    "get_notification_sink",
    "set_notification_sink",
]
