"""Discord gateway adapter.

Turns guild messages and member joins into typed events for
:class:`~gatekeeper.dispatch.EventDispatcher`.
"""

from __future__ import annotations

import discord

from gatekeeper.detection.models import MessageRef, UserProfile
from gatekeeper.dispatch import EventDispatcher, MemberJoined, MessageReceived
from gatekeeper.logging import bind_event_context, clear_event_context, get_logger

log = get_logger("gatekeeper.discord.bot")


def profile_for(member: discord.Member | discord.User) -> UserProfile:
    """Build a classifier profile from a Discord member or user."""
    return UserProfile(
        username=member.name,
        account_created_at=member.created_at,
        joined_server_at=getattr(member, "joined_at", None),
        nickname=getattr(member, "nick", None),
    )


class GatekeeperBot(discord.Client):
    """Gatekeeper Discord bot."""

    def __init__(self, *, allow_bot_messages: bool = False) -> None:
        intents = discord.Intents.default()
        intents.message_content = True
        intents.members = True

        super().__init__(intents=intents)

        self._dispatcher: EventDispatcher | None = None
        self._allow_bot_messages = allow_bot_messages

    def set_dispatcher(self, dispatcher: EventDispatcher) -> None:
        self._dispatcher = dispatcher

    async def on_ready(self) -> None:
        """Called when the bot is fully ready."""
        log.info("bot_ready", user=str(self.user), guilds=len(self.guilds))

    async def on_message(self, message: discord.Message) -> None:
        """Run detection on guild messages."""
        if message.author == self.user or message.guild is None:
            return
        if message.webhook_id is not None:
            return
        if message.author.bot and not self._allow_bot_messages:
            return
        if self._dispatcher is None:
            log.warning("dispatcher_not_ready")
            return

        bind_event_context(str(message.guild.id), str(message.author.id))
        try:
            result = await self._dispatcher.on_message(
                MessageReceived(
                    tenant_id=str(message.guild.id),
                    user_id=str(message.author.id),
                    content=message.content,
                    profile=profile_for(message.author),
                    message_ref=MessageRef(
                        channel_id=str(message.channel.id), message_id=str(message.id)
                    ),
                )
            )
            log.debug(
                "message_checked",
                label=result.label.value,
                confidence=round(result.confidence, 4),
            )
        finally:
            clear_event_context()

    async def on_member_join(self, member: discord.Member) -> None:
        """Run detection on new members."""
        if member.bot or self._dispatcher is None:
            return

        bind_event_context(str(member.guild.id), str(member.id))
        try:
            result = await self._dispatcher.on_member_join(
                MemberJoined(
                    tenant_id=str(member.guild.id),
                    user_id=str(member.id),
                    profile=profile_for(member),
                )
            )
            log.info(
                "member_join_checked",
                label=result.label.value,
                confidence_level=result.confidence_level.value,
            )
        finally:
            clear_event_context()

    async def close(self) -> None:
        """Let in-flight detections finish before disconnecting."""
        if self._dispatcher is not None:
            await self._dispatcher.drain()
        await super().close()
