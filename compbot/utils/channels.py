"""
Find-or-create for the bot's named guild resources (category, verification
channel, log channel).

Names are matched loosely: lowercase alphanumerics only, equal or contained
either way. When several channels match, the lowest id is kept and the rest
are deleted. The kept id is persisted in comp_settings.
"""
from __future__ import annotations
import re
import discord

from compbot.core.configurations import GuildSettingsService, VerificationSettings

VERIFICATION_TOPIC = (
    "Comp verification for NBA2K26. Click Verify to start. Upload screenshots via DM. "
    "Make sure the Games Played number and Win percentage are visible."
)
LOG_TOPIC = "Comp verification logs. Internal bot logs for verification events."


def normalize_name(value) -> str:
    if not value:
        return ""
    return re.sub(r"[^a-z0-9]", "", str(value).lower())

def fuzzy_name_match(a, b) -> bool:
    na, nb = normalize_name(a), normalize_name(b)
    if not na or not nb:
        return False
    return na == nb or na in nb or nb in na

def creation_name(emoji: str, base: str) -> str:
    sanitized = re.sub(r"\s+", "-", str(base).strip()).lower()
    return f"{emoji}-{sanitized}"[:100]

def split_authoritative(matches: list) -> tuple:
    """(keep, extras): the lowest id wins."""
    ordered = sorted(matches, key=lambda c: int(c.id))
    if not ordered:
        return None, []
    return ordered[0], ordered[1:]


def _is_text(ch) -> bool:
    return getattr(ch, "type", None) == discord.ChannelType.text

def _is_category(ch) -> bool:
    return getattr(ch, "type", None) == discord.ChannelType.category


class ChannelLocator:
    def __init__(self, guild_settings: GuildSettingsService, settings: VerificationSettings):
        self.guild_settings = guild_settings
        self.settings = settings

    @property
    def verification_create_name(self) -> str:
        return creation_name(self.settings.verify_emoji, self.settings.channel_name)

    @property
    def log_create_name(self) -> str:
        return creation_name(self.settings.log_emoji, self.settings.log_channel_name)

    @property
    def category_create_name(self) -> str:
        return creation_name(self.settings.verify_emoji, self.settings.category_name)

    # ---------- matching ----------

    def _is_verification_channel(self, ch) -> bool:
        if not _is_text(ch):
            return False
        if fuzzy_name_match(ch.name, self.settings.channel_name) or fuzzy_name_match(ch.name, self.verification_create_name):
            return True
        topic = getattr(ch, "topic", None) or ""
        if "comp verification" in topic.lower():
            return True
        lower = (ch.name or "").lower()
        return "comp" in lower and "verif" in lower

    def _is_log_channel(self, ch) -> bool:
        if not _is_text(ch):
            return False
        if fuzzy_name_match(ch.name, self.settings.log_channel_name) or fuzzy_name_match(ch.name, self.log_create_name):
            return True
        return "log" in (ch.name or "").lower()

    async def _saved(self, guild, key: str, check):
        saved = await self.guild_settings.get(guild.id, key)
        if not saved:
            return None
        ch = guild.get_channel(saved)
        if ch is not None and check(ch):
            return ch
        await self.guild_settings.set(guild.id, key, None)
        return None

    async def _keep_one(self, guild, key: str, matches: list, reason: str):
        keep, extras = split_authoritative(matches)
        for other in extras:
            try:
                await other.delete(reason=reason)
            except (discord.Forbidden, discord.HTTPException) as e:
                if self.settings.debug:
                    print(f"⚠ Could not delete duplicate channel {other.id}: {e}")
        if keep is not None:
            await self.guild_settings.set(guild.id, key, keep.id)
        return keep

    # ---------- lookups ----------

    async def category(self, guild, create: bool = True):
        found = await self._saved(guild, "category_id", _is_category)
        if found:
            return found
        matches = [
            c for c in guild.channels
            if _is_category(c) and (fuzzy_name_match(c.name, self.settings.category_name)
                                    or fuzzy_name_match(c.name, self.category_create_name))
        ]
        if matches:
            keep, _ = split_authoritative(matches)
            await self.guild_settings.set(guild.id, "category_id", keep.id)
            return keep
        if not create:
            return None
        try:
            created = await guild.create_category(self.category_create_name, reason="Create comp verification category")
        except (discord.Forbidden, discord.HTTPException) as e:
            print(f"⚠ Could not create category in guild {guild.id}: {e}")
            return None
        await self.guild_settings.set(guild.id, "category_id", created.id)
        print(f"✓ Created category {created.name} in guild {guild.id}")
        return created

    async def verification_channel(self, guild, create: bool = True):
        found = await self._saved(guild, "channel_id", _is_text)
        if found:
            return found
        matches = [c for c in guild.channels if self._is_verification_channel(c)]
        if matches:
            return await self._keep_one(guild, "channel_id", matches, "Auto-remove duplicate verification channel")
        if not create:
            return None
        category = await self.category(guild)
        overwrites = {
            guild.default_role: discord.PermissionOverwrite(send_messages=False, send_messages_in_threads=False)
        }
        try:
            created = await guild.create_text_channel(
                self.verification_create_name,
                topic=VERIFICATION_TOPIC,
                category=category,
                overwrites=overwrites,
                reason="Create comp verification channel",
            )
        except (discord.Forbidden, discord.HTTPException) as e:
            print(f"⚠ Failed to create verification channel in guild {guild.id}: {e}")
            return None
        await self.guild_settings.set(guild.id, "channel_id", created.id)
        print(f"✓ Created verification channel {created.name} in guild {guild.id}")
        return created

    async def log_channel(self, guild, create: bool = True):
        found = await self._saved(guild, "log_channel_id", _is_text)
        if found:
            return found
        matches = [c for c in guild.channels if self._is_log_channel(c)]
        if matches:
            return await self._keep_one(guild, "log_channel_id", matches, "Auto-remove duplicate log channel")
        if not create:
            return None
        category = await self.category(guild)
        overwrites = {guild.default_role: discord.PermissionOverwrite(send_messages=False)}
        try:
            created = await guild.create_text_channel(
                self.log_create_name,
                topic=LOG_TOPIC,
                category=category,
                overwrites=overwrites,
                reason="Create comp verification log channel",
            )
        except (discord.Forbidden, discord.HTTPException) as e:
            print(f"⚠ Could not create log channel in guild {guild.id}: {e}")
            return None
        await self.guild_settings.set(guild.id, "log_channel_id", created.id)
        print(f"✓ Created log channel {created.name} in guild {guild.id}")
        return created

    async def log_target(self, guild):
        """Where guild log entries go: the log channel, else the verification channel."""
        ch = await self.log_channel(guild)
        if ch is not None:
            return ch
        return await self.verification_channel(guild, create=False)
