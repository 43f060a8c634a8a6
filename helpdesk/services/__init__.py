"""Service layer exports."""

from .notifications import NotificationQueue, RQNotificationQueue

__all__ = ["NotificationQueue", "RQNotificationQueue"]
