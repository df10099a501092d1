"""Discord notification channel.

Posts case notifications to the tenant's admin channel.
"""

from __future__ import annotations

import discord

from gatekeeper.logging import get_logger
from gatekeeper.notifications.dispatcher import (
    Notification,
    NotificationChannel,
    NotificationPriority,
)

log = get_logger("gatekeeper.notifications.discord")

_PRIORITY_ORDER = {
    NotificationPriority.LOW: 0,
    NotificationPriority.MEDIUM: 1,
    NotificationPriority.HIGH: 2,
    NotificationPriority.CRITICAL: 3,
}


class DiscordNotifier(NotificationChannel):
    """Sends notifications to an admin text channel.

    Requires a Discord bot client to be initialized and connected.
    """

    def __init__(
        self,
        bot: discord.Client,
        admin_channel_id: int | None = None,
        min_priority: NotificationPriority = NotificationPriority.LOW,
    ):
        """Initialize the Discord notifier.

        Args:
            bot: Discord bot client (must be connected).
            admin_channel_id: Channel to post to. If None, notifications
                are logged but not sent.
            min_priority: Minimum priority level to send (default: LOW = all).
        """
        self._bot = bot
        self._admin_channel_id = admin_channel_id
        self._min_priority = min_priority

    def supports_priority(self, priority: NotificationPriority) -> bool:
        return _PRIORITY_ORDER[priority] >= _PRIORITY_ORDER[self._min_priority]

    async def send(self, notification: Notification) -> bool:
        if self._admin_channel_id is None:
            log.debug("discord_notification_skipped", reason="no admin channel configured")
            return False

        if not self._bot.is_ready():
            log.warning("discord_notification_failed", reason="bot not ready")
            return False

        try:
            channel = self._bot.get_channel(self._admin_channel_id)
            if channel is None:
                channel = await self._bot.fetch_channel(self._admin_channel_id)
        except discord.NotFound:
            log.warning("discord_admin_channel_not_found", channel_id=self._admin_channel_id)
            return False
        except discord.Forbidden:
            log.warning("discord_admin_channel_forbidden", channel_id=self._admin_channel_id)
            return False

        if not isinstance(channel, discord.abc.Messageable):
            log.warning("discord_admin_channel_not_messageable", channel_id=self._admin_channel_id)
            return False

        try:
            await channel.send(self._format_notification(notification))
        except discord.HTTPException as e:
            log.error(
                "discord_notification_send_failed",
                channel_id=self._admin_channel_id,
                error=str(e),
            )
            return False

        log.info(
            "discord_notification_sent",
            type=notification.type.value,
            channel_id=self._admin_channel_id,
        )
        return True

    def _format_notification(self, notification: Notification) -> str:
        lines = [f"**{notification.title}**", "", notification.message]
        case_id = notification.metadata.get("case_id")
        if case_id:
            lines.append(f"Case: `{case_id}`")
        thread_ref = notification.metadata.get("thread_ref")
        if thread_ref:
            lines.append(f"Thread: <#{thread_ref}>")
        lines.append("")
        lines.append(f"*{notification.timestamp.strftime('%Y-%m-%d %H:%M:%S')}*")
        return "\n".join(lines)
