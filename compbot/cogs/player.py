from __future__ import annotations
import discord
from discord import app_commands
from discord.ext import commands

from compbot.utils.embed_utils import player_card_embed


class Player(commands.Cog):
    player = app_commands.Group(name="player", description="Player stats")

    def __init__(self, bot: commands.Bot):
        self.bot = bot

    @player.command(name="view", description="Show a player's saved comp stats.")
    @app_commands.describe(user="Player to look up (defaults to you)")
    async def view(self, interaction: discord.Interaction, user: discord.User | None = None):
        if not interaction.guild_id:
            return await interaction.response.send_message("Use this in a server.", ephemeral=True)
        target = user or interaction.user
        await interaction.response.defer()

        display_name = target.display_name
        if interaction.guild is not None:
            member = await self.bot.coordinator.member(interaction.guild, target.id)
            if member is not None:
                display_name = member.display_name

        rec = await self.bot.store.latest(target.id, interaction.guild_id)
        if rec is None:
            return await interaction.followup.send(f"No saved verification found for {target.name}.")
        await interaction.followup.send(embed=player_card_embed(rec, display_name))


async def setup(bot: commands.Bot):
    await bot.add_cog(Player(bot))
