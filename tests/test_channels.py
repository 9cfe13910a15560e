"""
Tests for channel name matching and find-or-create.

Tests:
- Loose name matching and creation names
- Duplicate channels collapse to the lowest id
- Stale saved ids are cleared
- Missing channels are created under the comp category
"""

import discord

from compbot.utils.channels import (
    ChannelLocator,
    creation_name,
    fuzzy_name_match,
    normalize_name,
    split_authoritative,
)
from tests.fakes import FakeChannel, environment, forbidden, run


class TestNameMatching:
    """Tests for the pure name helpers."""

    def test_normalize(self):
        assert normalize_name("✅-Comp-Verification") == "compverification"
        assert normalize_name(None) == ""

    def test_fuzzy(self):
        assert fuzzy_name_match("✅-comp-verification", "comp-verification")
        assert fuzzy_name_match("comp logs", "📜-comp-logs")
        assert not fuzzy_name_match("general", "comp-logs")
        assert not fuzzy_name_match("", "comp-logs")

    def test_creation_name(self):
        assert creation_name("✅", "Comp  Verification") == "✅-comp-verification"
        assert len(creation_name("✅", "x" * 200)) == 100

    def test_split_authoritative(self):
        a, b, c = FakeChannel(30, "a"), FakeChannel(10, "b"), FakeChannel(20, "c")
        keep, extras = split_authoritative([a, b, c])
        assert keep is b
        assert extras == [c, a]
        assert split_authoritative([]) == (None, [])


class TestChannelLocator:
    """Tests for find-or-create against a guild."""

    def test_duplicates_collapse(self, tmp_path):
        """The lowest id is kept and persisted, the rest deleted."""
        async def scenario():
            async with environment(tmp_path) as env:
                newer = FakeChannel(30, "comp-verification")
                older = FakeChannel(20, "✅-comp-verification")
                general = FakeChannel(40, "general")
                env.guild.channels.extend([newer, older, general])
                locator = ChannelLocator(env.guild_settings, env.settings)

                assert await locator.verification_channel(env.guild) is older
                assert newer.deleted
                assert not general.deleted
                assert await env.guild_settings.get(1, "channel_id") == 20
                assert await locator.verification_channel(env.guild) is older

        run(scenario())

    def test_topic_match(self, tmp_path):
        async def scenario():
            async with environment(tmp_path) as env:
                ch = FakeChannel(50, "verify-here", topic="Comp verification for NBA2K26.")
                env.guild.channels.append(ch)
                locator = ChannelLocator(env.guild_settings, env.settings)
                assert await locator.verification_channel(env.guild, create=False) is ch

        run(scenario())

    def test_stale_saved_id_cleared(self, tmp_path):
        async def scenario():
            async with environment(tmp_path) as env:
                await env.guild_settings.set(1, "channel_id", 12345)
                locator = ChannelLocator(env.guild_settings, env.settings)
                assert await locator.verification_channel(env.guild, create=False) is None
                assert await env.guild_settings.get(1, "channel_id") is None

        run(scenario())

    def test_log_channel_created(self, tmp_path):
        """A missing log channel is created read-only in the comp category."""
        async def scenario():
            async with environment(tmp_path) as env:
                locator = ChannelLocator(env.guild_settings, env.settings)
                created = await locator.log_channel(env.guild)
                assert created.name == "📜-comp-logs"
                assert created.category.type == discord.ChannelType.category
                assert created.category.name == "✅-comp"
                assert created.overwrites[env.guild.default_role].send_messages is False
                assert await env.guild_settings.get(1, "log_channel_id") == created.id
                assert await env.guild_settings.get(1, "category_id") == created.category.id

        run(scenario())

    def test_log_target_falls_back(self, tmp_path):
        """Without a log channel (and no way to create one) logs go to the verification channel."""
        async def scenario():
            async with environment(tmp_path) as env:
                verify = FakeChannel(20, "comp-verification")
                env.guild.channels.append(verify)

                async def refuse(*args, **kwargs):
                    raise forbidden()

                env.guild.create_text_channel = refuse
                env.guild.create_category = refuse
                locator = ChannelLocator(env.guild_settings, env.settings)
                assert await locator.log_target(env.guild) is verify

        run(scenario())
