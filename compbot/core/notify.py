"""
Outbound notifications: user DMs, arbiter requests, guild log entries and
player cards. Every send is best-effort; Discord errors are printed and
reported as False, never raised into the verification flow.
"""

from __future__ import annotations
import discord

from compbot.core.configurations import VerificationSettings
from compbot.utils.channels import ChannelLocator
from compbot.utils.embed_utils import arbitration_embed, log_embed, player_card_embed
from compbot.utils.views import arbitration_view

SEND_ERRORS = (discord.Forbidden, discord.NotFound, discord.HTTPException)


class DiscordNotifier:
    def __init__(self, bot, locator: ChannelLocator, settings: VerificationSettings):
        self.bot = bot
        self.locator = locator
        self.settings = settings

    async def _user(self, user_id: int):
        user = self.bot.get_user(user_id)
        if user is not None:
            return user
        try:
            return await self.bot.fetch_user(user_id)
        except SEND_ERRORS:
            return None

    async def dm(self, user_id: int, content: str | None = None, embed: discord.Embed | None = None) -> bool:
        user = await self._user(user_id)
        if user is None:
            return False
        try:
            await user.send(content=content, embed=embed)
            return True
        except SEND_ERRORS as e:
            if self.settings.debug:
                print(f"⚠ Could not DM user {user_id}: {e}")
            return False

    async def log(self, guild_id: int, title: str, description: str, color: str | int = "log") -> bool:
        guild = self.bot.get_guild(guild_id)
        if guild is None:
            return False
        try:
            channel = await self.locator.log_target(guild)
            if channel is None:
                if self.settings.debug:
                    print(f"⚠ No channel available to send logs to for guild {guild_id}")
                return False
            await channel.send(embed=log_embed(title, description, color))
            return True
        except SEND_ERRORS as e:
            if self.settings.debug:
                print(f"⚠ Could not send log entry to guild {guild_id}: {e}")
            return False

    async def request_arbitration(self, pending, title: str, description: str) -> bool:
        """DM the arbiter the decision buttons plus both screenshots."""
        if not self.settings.admin_user_id:
            print("⚠ No arbiter configured; tag conflict left pending")
            return False
        admin = await self._user(self.settings.admin_user_id)
        if admin is None:
            print(f"⚠ Arbiter {self.settings.admin_user_id} not found")
            return False
        try:
            await admin.send(embed=arbitration_embed(pending, title, description), view=arbitration_view(pending.request_id))
            if pending.old_image:
                other = f"<@{pending.other_user_id}>" if pending.other_user_id else "the existing owner"
                await admin.send(content=f"Existing owner image for {other}: {pending.old_image}")
            if pending.new_image:
                await admin.send(content=f"New submitter image: {pending.new_image}")
            return True
        except SEND_ERRORS as e:
            print(f"⚠ Failed to DM arbiter for request {pending.request_id}: {e}")
            return False

    async def post_player_card(self, guild_id: int, record) -> bool:
        channel_id = self.settings.player_card_channel_id
        if not channel_id or record is None:
            return False
        channel = self.bot.get_channel(channel_id)
        try:
            if channel is None:
                channel = await self.bot.fetch_channel(channel_id)
            display_name = None
            guild = self.bot.get_guild(guild_id)
            member = guild.get_member(record.user_id) if guild else None
            if member is not None:
                display_name = member.display_name
            await channel.send(embed=player_card_embed(record, display_name))
            return True
        except SEND_ERRORS as e:
            if self.settings.debug:
                print(f"⚠ Failed to send player card for {record.user_id}: {e}")
            return False
