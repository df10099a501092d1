"""Discord-backed moderation actions: restricted role and bans."""

from __future__ import annotations

import discord

from gatekeeper.errors import ModerationActionError
from gatekeeper.logging import get_logger

log = get_logger("gatekeeper.discord.actions")


async def resolve_guild(client: discord.Client, tenant_id: str) -> discord.Guild:
    """Return the guild for ``tenant_id``, fetching it if not cached."""
    guild = client.get_guild(int(tenant_id))
    if guild is None:
        guild = await client.fetch_guild(int(tenant_id))
    return guild


async def _resolve_member(guild: discord.Guild, user_id: str) -> discord.Member | None:
    """Return the member, or ``None`` if the user is not in the guild."""
    member = guild.get_member(int(user_id))
    if member is None:
        try:
            member = await guild.fetch_member(int(user_id))
        except discord.NotFound:
            return None
    return member


class DiscordModerationService:
    """Applies the restricted role and bans through the Discord API."""

    def __init__(self, client: discord.Client, restricted_role_name: str = "Restricted") -> None:
        self._client = client
        self._role_name = restricted_role_name

    async def _restricted_role(self, guild: discord.Guild) -> discord.Role:
        role = discord.utils.get(guild.roles, name=self._role_name)
        if role is None:
            role = await guild.create_role(
                name=self._role_name, reason="Role for users pending verification"
            )
            log.info("restricted_role_created", guild_id=guild.id, role_id=role.id)
        return role

    async def apply_restriction(self, tenant_id: str, user_id: str, reason: str) -> None:
        """Give the user the restricted role.

        A user who is no longer a member cannot hold the role. Any ban is
        lifted so they can rejoin, and the role is applied when they do.
        """
        try:
            guild = await resolve_guild(self._client, tenant_id)
            member = await _resolve_member(guild, user_id)
            if member is None:
                await self._lift_ban(guild, user_id, reason)
                log.info("restriction_deferred", tenant_id=tenant_id, user_id=user_id)
                return
            role = await self._restricted_role(guild)
            await member.add_roles(role, reason=reason)
        except discord.HTTPException as e:
            raise ModerationActionError("restrict", tenant_id, user_id, e) from e
        log.info("restriction_applied", tenant_id=tenant_id, user_id=user_id)

    async def _lift_ban(self, guild: discord.Guild, user_id: str, reason: str) -> None:
        try:
            await guild.unban(discord.Object(id=int(user_id)), reason=reason)
        except discord.NotFound:
            return
        log.info("user_unbanned", guild_id=guild.id, user_id=user_id)

    async def remove_restriction(self, tenant_id: str, user_id: str, reason: str) -> None:
        try:
            guild = await resolve_guild(self._client, tenant_id)
            member = await _resolve_member(guild, user_id)
            if member is None:
                log.info("restriction_not_held", tenant_id=tenant_id, user_id=user_id)
                return
            role = discord.utils.get(guild.roles, name=self._role_name)
            if role is not None and role in member.roles:
                await member.remove_roles(role, reason=reason)
        except discord.HTTPException as e:
            raise ModerationActionError("unrestrict", tenant_id, user_id, e) from e
        log.info("restriction_removed", tenant_id=tenant_id, user_id=user_id)

    async def ban(self, tenant_id: str, user_id: str, reason: str) -> None:
        try:
            guild = await resolve_guild(self._client, tenant_id)
            await guild.ban(discord.Object(id=int(user_id)), reason=reason)
        except discord.HTTPException as e:
            raise ModerationActionError("ban", tenant_id, user_id, e) from e
        log.info("user_banned", tenant_id=tenant_id, user_id=user_id)
