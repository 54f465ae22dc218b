"""Notification module."""

from subscription_service.modules.notification.dispatcher import (
    NotificationDispatcher,
    get_dispatcher,
)
from subscription_service.modules.notification.templates import NotificationKind

__all__ = ["NotificationDispatcher", "NotificationKind", "get_dispatcher"]
