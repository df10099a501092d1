"""Admin notifications for verification cases."""

from gatekeeper.notifications.discord import DiscordNotifier
from gatekeeper.notifications.dispatcher import (
    Notification,
    NotificationDispatcher,
    NotificationPriority,
    NotificationType,
)

__all__ = [
    "DiscordNotifier",
    "Notification",
    "NotificationDispatcher",
    "NotificationPriority",
    "NotificationType",
]
