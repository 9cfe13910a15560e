"""
Centralized embed utility for the comp verification bot.
Handles DM, log, panel and player card styling.
"""
from __future__ import annotations
import discord
from datetime import datetime, timezone

from compbot.utils.helpers import fmt_stat

PANEL_TITLE = "Comp Verification - NBA2K26"
PANEL_FOOTER = "Comp Verification Bot - Grants access to Comp channels for verified players"

# Embed colors for different message types
COLORS = {
    "info": 0x3498DB,        # Blue - informational messages
    "success": 0x2ECC71,     # Green - success/confirmation
    "warning": 0xF39C12,     # Orange - warnings
    "error": 0xE74C3C,       # Red - errors
    "neutral": 0x9B59B6,     # Purple - neutral/default
    "log": 0xF1C40F,         # Yellow - guild log entries
    "panel": 0x1ABC9C,       # Teal - verification panel
    "profile": 0x1ABC9C,     # Teal - player cards
}


def create_embed(
    description: str | None = None,
    title: str | None = None,
    color: str | int = "neutral",
    fields: list[dict] | None = None,
    footer: str | None = None,
    image: str | None = None,
    timestamp: bool = True,
) -> discord.Embed:
    """
    Create a standardized embed.

    Args:
        description: The embed description
        title: Optional embed title
        color: Color name (from COLORS) or hex int
        fields: List of field dicts with 'name', 'value', and optional 'inline'
        footer: Optional footer text
        image: Optional image URL shown at the bottom
        timestamp: Stamp the embed with the current time

    Returns:
        discord.Embed with appropriate styling
    """
    if isinstance(color, str):
        embed_color = COLORS.get(color, COLORS["neutral"])
    else:
        embed_color = color

    embed = discord.Embed(title=title, description=description, color=embed_color)

    if fields:
        for field in fields:
            embed.add_field(
                name=field.get("name", ""),
                value=field.get("value", ""),
                inline=field.get("inline", False)
            )

    if footer:
        embed.set_footer(text=footer)
    if image:
        embed.set_image(url=image)
    if timestamp:
        embed.timestamp = datetime.now(timezone.utc)

    return embed


def warning_embed(desc: str, title: str | None = None) -> discord.Embed:
    """Create a warning embed (orange color)."""
    return create_embed(description=desc, title=title, color="warning")


def log_embed(title: str, desc: str, color: str | int = "log") -> discord.Embed:
    return create_embed(description=desc, title=title, color=color)


def _when(ts: int | None) -> str:
    return f"<t:{int(ts)}:f>" if ts else "N/A"


def player_card_embed(record, display_name: str | None = None) -> discord.Embed:
    """Stats card for a saved verification record."""
    name = display_name or record.username or f"Player {record.user_id}"
    tag = f" / {record.player_tag}" if record.player_tag else ""
    fields = [
        {"name": "Win percentage", "value": fmt_stat(record.win_pct), "inline": True},
        {"name": "Games played", "value": fmt_stat(record.games_played), "inline": True},
        {"name": "Points", "value": fmt_stat(record.points), "inline": True},
        {"name": "Platform / Tag", "value": f"{record.platform or 'N/A'}{tag}"},
        {"name": "Verified", "value": f"Yes - {_when(record.verified_at)}" if record.verified else "No"},
        {"name": "Flagged", "value": f"Yes - {record.flag_reason or 'Needs review'}" if record.flagged else "No"},
    ]
    return create_embed(title=f"{name} - Comp Stats", color="profile", fields=fields, image=record.image_url)


def panel_embed(settings) -> discord.Embed:
    """The pinned instructions embed in the verification channel."""
    description = (
        "This bot verifies Competitive (Comp) players for access to Comp channels.\n\n"
        "How it works: Click the **Verify** button to receive a DM with instructions. Upload a single clear "
        "screenshot of your NBA2K Stats screen in the DM. Make sure the **Games Played** number and "
        "**Win percentage** are visible.\n\n"
        f"Automatic verification requirements: **Win percentage** must be at least **{settings.min_win_pct}%** "
        f"and **Games Played** must be at least **{settings.min_games}**.\n"
        "- With fewer than the minimum games your profile is still saved, but you will not receive the Comp "
        "role until you meet both thresholds.\n"
        f"- Verifications expire every **{settings.reverify_days} days**; re-verify after that to keep the role.\n\n"
        "Duplicate / conflict handling: If a player tag already exists in the system, the new submission is "
        "**saved and flagged** for admin review, and an admin decides which submission to keep.\n\n"
        "Commands: Use **/player view** to look up a player's saved stats.\n\n"
        "If you need help or notice an issue, contact a server administrator."
    )
    return create_embed(description=description, title=PANEL_TITLE, color="panel", footer=PANEL_FOOTER)


def arbitration_embed(pending, title: str, description: str) -> discord.Embed:
    other = f"<@{pending.other_user_id}>" if pending.other_user_id else "None found"
    fields = [
        {"name": "Guild", "value": str(pending.guild_id), "inline": True},
        {"name": "New submitter", "value": f"<@{pending.user_id}>", "inline": True},
        {"name": "Existing owner", "value": other, "inline": True},
        {"name": "Previous tag", "value": pending.prev_tag or "None", "inline": True},
        {"name": "Requested tag", "value": pending.new_tag or "None", "inline": True},
    ]
    if pending.alt_saved_tag:
        fields.append({"name": "Saved as", "value": pending.alt_saved_tag, "inline": True})
    return create_embed(description=description, title=title, color="warning", fields=fields, footer=f"Request {pending.request_id}")
