"""Private verification threads in the tenant's verification channel."""

from __future__ import annotations

import discord

from gatekeeper.discord.actions import resolve_guild
from gatekeeper.logging import get_logger
from gatekeeper.verification.models import VerificationCase

log = get_logger("gatekeeper.discord.threads")

_AUTO_ARCHIVE_MINUTES = 10080  # one week

_WELCOME_MESSAGE = (
    "Hello <@{user_id}>, your account has been automatically flagged for verification.\n\n"
    "Please tell us how you found this community and what interests you here. "
    "A moderator will review your answers shortly."
)


class DiscordThreadManager:
    """Creates and closes verification threads."""

    def __init__(self, client: discord.Client, verification_channel_name: str) -> None:
        self._client = client
        self._channel_name = verification_channel_name

    async def create(self, case: VerificationCase) -> str | None:
        guild = await resolve_guild(self._client, case.tenant_id)
        channel = discord.utils.get(guild.text_channels, name=self._channel_name)
        if channel is None:
            log.warning(
                "verification_channel_missing",
                tenant_id=case.tenant_id,
                channel_name=self._channel_name,
            )
            return None

        thread = await channel.create_thread(
            name=f"Verification: {case.user_id}",
            type=discord.ChannelType.private_thread,
            invitable=False,
            auto_archive_duration=_AUTO_ARCHIVE_MINUTES,
            reason=f"Verification case {case.id}",
        )
        await thread.add_user(discord.Object(id=int(case.user_id)))
        await thread.send(_WELCOME_MESSAGE.format(user_id=case.user_id))
        log.info("verification_thread_created", case_id=case.id, thread_id=thread.id)
        return str(thread.id)

    async def _get_thread(self, tenant_id: str, thread_ref: str) -> discord.Thread | None:
        guild = await resolve_guild(self._client, tenant_id)
        thread = guild.get_thread(int(thread_ref))
        if thread is None:
            channel = await self._client.fetch_channel(int(thread_ref))
            thread = channel if isinstance(channel, discord.Thread) else None
        return thread

    async def lock_and_archive(self, tenant_id: str, thread_ref: str) -> None:
        thread = await self._get_thread(tenant_id, thread_ref)
        if thread is None:
            log.warning("verification_thread_missing", thread_ref=thread_ref)
            return
        await thread.edit(archived=True, locked=True)
        log.info("verification_thread_closed", thread_id=thread.id)

    async def unlock_and_unarchive(self, tenant_id: str, thread_ref: str) -> None:
        thread = await self._get_thread(tenant_id, thread_ref)
        if thread is None:
            log.warning("verification_thread_missing", thread_ref=thread_ref)
            return
        # Archived threads reject other edits until unarchived
        await thread.edit(archived=False)
        await thread.edit(locked=False)
        log.info("verification_thread_reopened", thread_id=thread.id)
