from __future__ import annotations
import traceback
from datetime import time, timezone

import discord
from discord import app_commands
from discord.ext import commands, tasks

from compbot.core.resolver import ResolutionState, Submission
from compbot.utils.embed_utils import PANEL_TITLE, panel_embed, warning_embed
from compbot.utils.helpers import mention, now_ts
from compbot.utils.views import VerifyStartView, parse_arbitration_id

INSTRUCTIONS = (
    "Please upload a single clear screenshot of your NBA2K Stats screen in this DM. Make sure Games Played and "
    "Win percentage are visible. After upload, I will process it and notify you in DM."
)


class Verification(commands.Cog):
    """Panel, DM submissions, arbiter decisions and the daily reverify sweep."""

    comp = app_commands.Group(name="comp", description="Comp verification")

    def __init__(self, bot: commands.Bot):
        self.bot = bot
        self._guilds_prepared = False
        bot.add_view(VerifyStartView(self.start_verify))
        self.reverify_loop.start()

    def cog_unload(self):
        self.reverify_loop.cancel()

    # ========================================================================
    # GUILD SETUP
    # ========================================================================

    @commands.Cog.listener()
    async def on_ready(self):
        if self._guilds_prepared:
            return
        self._guilds_prepared = True
        for guild in self.bot.guilds:
            try:
                await self.prepare_guild(guild)
            except discord.HTTPException as e:
                print(f"⚠ Error ensuring channels/roles for guild {guild.id}: {e}")

    async def prepare_guild(self, guild: discord.Guild):
        await self.bot.guild_settings.ensure_row(guild.id, self.bot.settings)
        await self.bot.locator.category(guild)
        channel = await self.bot.locator.verification_channel(guild)
        if channel is not None:
            await self.post_or_update_panel(channel)
        await self.bot.coordinator.ensure_role(guild)
        await self.bot.locator.log_channel(guild)
        print(f"✓ Guild {guild.id} ready for verification")

    async def post_or_update_panel(self, channel: discord.TextChannel):
        embed = panel_embed(self.bot.settings)
        view = VerifyStartView(self.start_verify)
        try:
            pins = await channel.pins()
        except (discord.Forbidden, discord.HTTPException) as e:
            print(f"⚠ Could not read pins in {channel.name}: {e}")
            pins = []

        existing = next(
            (m for m in pins if m.author.id == self.bot.user.id and m.embeds and m.embeds[0].title == PANEL_TITLE),
            None,
        )
        try:
            if existing is not None:
                await existing.edit(embed=embed, view=view)
                print(f"✓ Updated pinned verification embed in {channel.name}")
                return existing
            sent = await channel.send(embed=embed, view=view)
        except (discord.Forbidden, discord.HTTPException) as e:
            print(f"⚠ Could not post/update embed in channel {channel.name}: {e}")
            return None
        try:
            await sent.pin()
        except (discord.Forbidden, discord.HTTPException) as e:
            if self.bot.settings.debug:
                print(f"⚠ Pin failed: {e}")
        print(f"✓ Posted and pinned verification embed in {channel.name}")
        return sent

    async def start_verify(self, interaction: discord.Interaction):
        await interaction.response.send_message("I sent you a DM with verification instructions. Check your DMs.", ephemeral=True)
        try:
            await interaction.user.send(INSTRUCTIONS)
        except (discord.Forbidden, discord.HTTPException):
            await interaction.followup.send(
                "I could not DM you. Please enable DMs from server members or message the bot directly.",
                ephemeral=True,
            )

    async def find_guild_for_user(self, user_id: int) -> discord.Guild | None:
        """A guild shared with the user, preferring the configured guild order."""
        candidates = []
        for guild in self.bot.guilds:
            member = await self.bot.coordinator.member(guild, user_id)
            if member is not None:
                candidates.append(guild)
        if not candidates:
            return None
        for gid in self.bot.configured_guild_ids():
            for guild in candidates:
                if guild.id == gid:
                    return guild
        return candidates[0]

    # ========================================================================
    # DM SUBMISSIONS
    # ========================================================================

    @commands.Cog.listener()
    async def on_message(self, message: discord.Message):
        if message.author.bot or not isinstance(message.channel, discord.DMChannel):
            return

        if not message.attachments:
            await message.reply("Please attach an image screenshot showing your Stats screen (Games Played and Win percentage).")
            return

        attachment = message.attachments[0]
        if self.bot.settings.debug:
            print(f"Received DM attachment: {attachment.url} ({attachment.content_type}, {attachment.size} bytes)")

        await message.reply("Thanks - processing your screenshot now.")

        try:
            guild = await self.find_guild_for_user(message.author.id)
            if guild is None:
                await message.author.send(
                    "I could not find a server where you and this bot are both present. Make sure you joined the "
                    "server you want verification for and try again."
                )
                return

            data = await attachment.read()
            result = await self.bot.resolver.submit(Submission(
                user_id=message.author.id,
                guild_id=guild.id,
                image_url=attachment.url,
                image_bytes=data,
                username=str(message.author),
            ))
            if self.bot.settings.debug:
                print(f"Submission from {message.author.id} in guild {guild.id}: {result.state.value}")
            if result.message:
                await message.author.send(result.message)
        except Exception as e:
            print(f"✗ Error processing DM verification: {e}")
            traceback.print_exc()
            try:
                await message.author.send("Unexpected error while processing your image. Try again later or contact an admin.")
            except discord.HTTPException:
                pass

    # ========================================================================
    # ARBITER DECISIONS
    # ========================================================================

    @commands.Cog.listener()
    async def on_interaction(self, interaction: discord.Interaction):
        if interaction.type != discord.InteractionType.component:
            return
        parsed = parse_arbitration_id((interaction.data or {}).get("custom_id"))
        if parsed is None:
            return
        approve, request_id = parsed

        if interaction.user.id != self.bot.settings.admin_user_id:
            await interaction.response.send_message("You are not authorized to perform this action.", ephemeral=True)
            return

        # ack first; resolve() makes several Discord calls
        await interaction.response.defer()
        try:
            result = await self.bot.resolver.resolve(request_id, approve, interaction.user.id)
        except Exception as e:
            print(f"✗ Arbitration error for request {request_id}: {e}")
            traceback.print_exc()
            verb = "approval" if approve else "denial"
            await self._finish_decision(interaction, f"Failed to apply {verb}. Check logs.")
            return

        if result.state is ResolutionState.INVALID:
            try:
                await interaction.followup.send(result.message, ephemeral=True)
            except discord.HTTPException as e:
                print(f"⚠ Could not answer arbiter for request {request_id}: {e}")
            return
        await self._finish_decision(interaction, result.message)

    async def _finish_decision(self, interaction: discord.Interaction, content: str):
        """Replace the arbitration card with the outcome and drop its buttons."""
        try:
            await interaction.edit_original_response(content=content, view=None)
        except discord.HTTPException as e:
            print(f"⚠ Could not update arbitration message: {e}")

    @comp.command(name="pending", description="List tag conflicts waiting for a decision.")
    async def pending(self, interaction: discord.Interaction):
        if interaction.user.id != self.bot.settings.admin_user_id:
            return await interaction.response.send_message("You are not authorized to perform this action.", ephemeral=True)

        items = self.bot.registry.pending(interaction.guild_id)
        if not items:
            return await interaction.response.send_message("No pending approvals.", ephemeral=True)

        lines = [
            f"`{a.request_id}` - {mention(a.user_id)} wants **{a.new_tag}** "
            f"(existing owner: {mention(a.other_user_id)}) - <t:{a.created_at}:R>"
            for a in items[:20]
        ]
        embed = warning_embed("\n".join(lines), title=f"Pending approvals ({len(items)})")
        await interaction.response.send_message(embed=embed, ephemeral=True)

    # ========================================================================
    # DAILY REVERIFY
    # ========================================================================

    @tasks.loop(time=time(hour=12, minute=0, tzinfo=timezone.utc))
    async def reverify_loop(self):
        print("Running daily reverify check...")
        try:
            expired = await self.bot.sweep.run(now_ts())
            print(f"✓ Reverify check done: {len(expired)} verification(s) expired")
        except Exception as e:
            print(f"✗ Error in daily reverify check: {e}")
            traceback.print_exc()

    @reverify_loop.before_loop
    async def before_reverify_loop(self):
        await self.bot.wait_until_ready()


async def setup(bot: commands.Bot):
    await bot.add_cog(Verification(bot))
