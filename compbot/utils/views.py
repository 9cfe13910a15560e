"""
Button views.

The arbitration buttons carry their request id in the custom_id and are
answered by Verification.on_interaction, so a click after a restart (when
the in-memory request is gone) still gets an invalid/expired reply.
"""
from __future__ import annotations
import discord

START_VERIFY_ID = "comp:start_verify"
APPROVE_PREFIX = "admin_approve:"
DENY_PREFIX = "admin_deny:"


class VerifyStartView(discord.ui.View):
    """Persistent Verify button on the pinned panel."""

    def __init__(self, on_start):
        super().__init__(timeout=None)
        self.on_start = on_start

    @discord.ui.button(label="Verify", style=discord.ButtonStyle.primary, custom_id=START_VERIFY_ID)
    async def verify(self, interaction: discord.Interaction, button: discord.ui.Button):
        await self.on_start(interaction)


def arbitration_view(request_id: str) -> discord.ui.View:
    view = discord.ui.View(timeout=None)
    view.add_item(discord.ui.Button(
        label="Approve new submission",
        style=discord.ButtonStyle.success,
        custom_id=f"{APPROVE_PREFIX}{request_id}",
    ))
    view.add_item(discord.ui.Button(
        label="Keep existing / Deny new",
        style=discord.ButtonStyle.danger,
        custom_id=f"{DENY_PREFIX}{request_id}",
    ))
    return view


def parse_arbitration_id(custom_id: str | None) -> tuple[bool, str] | None:
    """(approve, request_id) for an arbitration button, else None."""
    if not custom_id:
        return None
    if custom_id.startswith(APPROVE_PREFIX):
        return True, custom_id[len(APPROVE_PREFIX):]
    if custom_id.startswith(DENY_PREFIX):
        return False, custom_id[len(DENY_PREFIX):]
    return None
