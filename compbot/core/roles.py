"""
Comp role grant / revoke.

reconcile() applies an eligibility result to the guild role and to the
latest record. Missing member, missing Manage Roles, a missing role and a
bad role order each produce their own Outcome with a user DM and a guild log
entry; none of them raise, and the saved stats record is kept either way.
"""

from __future__ import annotations
from enum import Enum

import discord

from compbot.core.configurations import GuildSettingsService, VerificationSettings
from compbot.core.records import RecordStore
from compbot.utils.helpers import fmt_stat, now_ts

ROLE_NAMES = ("Comp Verified", "Comp")
ROLE_COLOR = 0x00AE86


class Outcome(str, Enum):
    GRANTED = "granted"
    ALREADY_HELD = "already_held"
    REVOKED = "revoked"
    NOT_HELD = "not_held"
    NO_ACTION = "no_action"
    MEMBER_MISSING = "member_missing"
    MISSING_PERMISSION = "missing_permission"
    ROLE_UNAVAILABLE = "role_unavailable"
    HIERARCHY = "hierarchy"
    DISCORD_ERROR = "discord_error"

    @property
    def verified(self) -> bool:
        return self in (Outcome.GRANTED, Outcome.ALREADY_HELD)


def holds_role(member, role) -> bool:
    return any(r.id == role.id for r in member.roles)


def _stats_line(record) -> str:
    if record is None:
        return "Win%: N/A, Games: N/A"
    return f"Win%: {fmt_stat(record.win_pct)}, Games: {fmt_stat(record.games_played)}"


class RoleGrantCoordinator:
    def __init__(
        self,
        guild_lookup,
        store: RecordStore,
        notifier,
        audit,
        guild_settings: GuildSettingsService,
        settings: VerificationSettings,
        clock=now_ts,
    ):
        self.guild_lookup = guild_lookup
        self.store = store
        self.notifier = notifier
        self.audit = audit
        self.guild_settings = guild_settings
        self.settings = settings
        self.clock = clock

    # ---------- guild lookups ----------

    async def member(self, guild, user_id: int):
        if guild is None:
            return None
        member = guild.get_member(user_id)
        if member is not None:
            return member
        try:
            return await guild.fetch_member(user_id)
        except (discord.NotFound, discord.HTTPException):
            return None

    async def find_role(self, guild):
        """Persisted role id (or configured ROLE_ID), else a role named like the comp role."""
        role_id = await self.guild_settings.get(guild.id, "role_id") or self.settings.role_id
        if role_id:
            role = guild.get_role(role_id)
            if role is not None:
                return role
        for role in guild.roles:
            if role.name in (self.settings.role_name, *ROLE_NAMES):
                return role
        return None

    async def ensure_role(self, guild):
        role = await self.find_role(guild)
        if role is not None:
            await self.guild_settings.set(guild.id, "role_id", role.id)
            return role
        try:
            role = await guild.create_role(
                name=self.settings.role_name,
                colour=discord.Colour(ROLE_COLOR),
                hoist=False,
                mentionable=False,
                reason="Auto-created comp verification role",
            )
        except (discord.Forbidden, discord.HTTPException) as e:
            print(f"✗ Could not create comp role in guild {guild.id}: {e}")
            return None
        await self.guild_settings.set(guild.id, "role_id", role.id)
        print(f"✓ Created role {role.name} ({role.id}) in guild {guild.id}")

        top = guild.me.top_role.position if guild.me else None
        if top is not None and role.position >= top:
            try:
                await role.edit(position=max(1, top - 1))
            except (discord.Forbidden, discord.HTTPException) as e:
                if self.settings.debug:
                    print(f"⚠ Could not move new role below the bot's role: {e}")
        return role

    # ---------- reporting ----------

    async def _report(self, guild_id: int, user_id: int, outcome: Outcome, context: str,
                      user_msg: str | None, log_title: str, log_desc: str, meta: dict | None = None):
        if user_msg:
            await self.notifier.dm(user_id, user_msg)
        await self.notifier.log(guild_id, log_title, log_desc)
        await self.audit.log_action(guild_id, None, user_id, f"role_{outcome.value}",
                                    {"context": context, **(meta or {})})

    async def _blocked(self, guild_id: int, user_id: int, outcome: Outcome, context: str, record, granting: bool):
        who = f"<@{user_id}>"
        stats = _stats_line(record)
        if granting:
            head = "Congratulations - you passed verification! "
            user_msgs = {
                Outcome.MEMBER_MISSING: head + "I could not find you in the server, so the Comp role was not added. Rejoin the server and contact an admin.",
                Outcome.MISSING_PERMISSION: head + f"I could not add the Comp role automatically because the bot lacks Manage Roles permission in that server. Please contact a server admin. Detected stats - {stats}.",
                Outcome.ROLE_UNAVAILABLE: head + "However, I could not create or find the verification role in the server. Please contact a server admin.",
                Outcome.HIERARCHY: head + f"I could not add the role automatically because the bot role is not higher than the verification role in server role order. Please ask an admin to move the bot role above the verification role. Detected stats - {stats}.",
                Outcome.DISCORD_ERROR: "You passed but I could not add the role automatically. Contact a server admin.",
            }
            titles = {
                Outcome.MEMBER_MISSING: ("Verification passed - member not found", f"User {who} passed ({context}) but is not present in the server."),
                Outcome.MISSING_PERMISSION: ("Verification passed - missing ManageRoles", f"User {who} passed ({context}) but bot lacks ManageRoles."),
                Outcome.ROLE_UNAVAILABLE: ("Verification passed - role missing", f"User {who} passed ({context}) but role missing/creation failed."),
                Outcome.HIERARCHY: ("Verification passed - hierarchy issue", f"User {who} passed ({context}) but bot role lower than verification role."),
                Outcome.DISCORD_ERROR: ("Verification error", f"User {who} passed ({context}) but Discord refused the role change."),
            }
        else:
            reasons = {
                Outcome.MISSING_PERMISSION: ("due to permissions", "bot lacks ManageRoles"),
                Outcome.HIERARCHY: ("due to role order", "bot role is below the verification role"),
                Outcome.DISCORD_ERROR: ("because Discord returned an error", "Discord refused the role change"),
            }
            user_why, log_why = reasons[outcome]
            if context == "expired":
                user_msgs = {outcome: (
                    f"Your Comp verification has expired (more than {self.settings.reverify_days} days), but the bot "
                    f"could not remove the Comp role automatically {user_why}. Please contact a server admin."
                )}
                titles = {outcome: ("Expired role removal blocked", f"User {who}'s verification expired, but {log_why}.")}
            else:
                user_msgs = {outcome: (
                    f"Your new screenshot does not meet the verification requirements ({stats}). The bot could not "
                    f"remove the Comp role automatically {user_why}. Please contact a server admin to resolve this."
                )}
                titles = {outcome: ("Comp role removal blocked", f"User {who} should have role removed ({context}), but {log_why}.")}
        title, desc = titles[outcome]
        await self._report(guild_id, user_id, outcome, context, user_msgs.get(outcome), title, desc)
        return outcome

    # ---------- grant / revoke ----------

    async def _mark_verified(self, guild_id: int, user_id: int):
        now = self.clock()
        return await self.store.update_latest(
            user_id, guild_id, verified=True, verified_at=now, expires_at=now + self.settings.reverify_seconds
        )

    async def _mark_unverified(self, guild_id: int, user_id: int):
        return await self.store.clear_verified(user_id, guild_id)

    async def _grant(self, guild_id: int, user_id: int, context: str) -> Outcome:
        record = await self.store.latest(user_id, guild_id)
        guild = self.guild_lookup(guild_id)
        member = await self.member(guild, user_id)
        if member is None:
            return await self._blocked(guild_id, user_id, Outcome.MEMBER_MISSING, context, record, granting=True)

        existing = await self.find_role(guild)
        if existing is not None and holds_role(member, existing):
            outcome = Outcome.ALREADY_HELD
        else:
            me = guild.me
            if not me.guild_permissions.manage_roles:
                return await self._blocked(guild_id, user_id, Outcome.MISSING_PERMISSION, context, record, granting=True)
            role = await self.ensure_role(guild)
            if role is None:
                return await self._blocked(guild_id, user_id, Outcome.ROLE_UNAVAILABLE, context, record, granting=True)
            if role.position >= me.top_role.position:
                return await self._blocked(guild_id, user_id, Outcome.HIERARCHY, context, record, granting=True)
            try:
                await member.add_roles(role, reason="Comp Verification passed")
            except (discord.Forbidden, discord.HTTPException) as e:
                print(f"⚠ Role assignment failed for {user_id} in guild {guild_id}: {e}")
                return await self._blocked(guild_id, user_id, Outcome.DISCORD_ERROR, context, record, granting=True)
            outcome = Outcome.GRANTED

        record = await self._mark_verified(guild_id, user_id)
        await self._report(
            guild_id, user_id, outcome, context,
            (
                "Congratulations - you are verified as a Comp player!\n\n"
                "You have the Comp Verified role which provides access to Comp channels on the server.\n\n"
                f"Detected stats - {_stats_line(record)}, Points: {fmt_stat(record.points if record else None)}.\n"
                f"Detected player tag: {fmt_stat(record.player_tag if record else None)} on platform: "
                f"{fmt_stat(record.platform if record else None)}.\n\n"
                f"Your verification will remain valid for {self.settings.reverify_days} days. Good luck in Comp!"
            ),
            "Verification success",
            f"User <@{user_id}> verified ({context}). {_stats_line(record)}. Tag: {fmt_stat(record.player_tag if record else None)}.",
            {"expires_at": record.expires_at if record else None},
        )
        await self.notifier.post_player_card(guild_id, record)
        return outcome

    async def _remove(self, guild_id: int, user_id: int, context: str, reason: str) -> Outcome:
        """Take the role away if it is held. The caller marks the record."""
        record = await self.store.latest(user_id, guild_id)
        guild = self.guild_lookup(guild_id)
        member = await self.member(guild, user_id)
        role = await self.find_role(guild) if guild is not None else None
        if member is None or role is None or not holds_role(member, role):
            why = "member not present" if member is None else "role not found" if role is None else "did not have the Comp role"
            await self.notifier.log(guild_id, "Comp role removal skipped", f"User <@{user_id}> {why} (nothing to remove).")
            await self.audit.log_action(guild_id, None, user_id, "role_removal_skipped", {"context": context, "reason": why})
            return Outcome.NOT_HELD

        me = guild.me
        if not me.guild_permissions.manage_roles:
            return await self._blocked(guild_id, user_id, Outcome.MISSING_PERMISSION, context, record, granting=False)
        if role.position >= me.top_role.position:
            return await self._blocked(guild_id, user_id, Outcome.HIERARCHY, context, record, granting=False)
        try:
            await member.remove_roles(role, reason=reason)
        except (discord.Forbidden, discord.HTTPException) as e:
            print(f"⚠ Role removal failed for {user_id} in guild {guild_id}: {e}")
            return await self._blocked(guild_id, user_id, Outcome.DISCORD_ERROR, context, record, granting=False)
        return Outcome.REVOKED

    async def _revoke(self, guild_id: int, user_id: int, context: str) -> Outcome:
        outcome = await self._remove(
            guild_id, user_id, context, "Comp verification revoked: new screenshot does not meet requirements"
        )
        record = await self._mark_unverified(guild_id, user_id)
        if outcome is Outcome.REVOKED:
            await self._report(
                guild_id, user_id, outcome, context,
                (
                    f"Your profile has been saved, but your new screenshot does not meet the Comp requirements "
                    f"({_stats_line(record)}), so your Comp role was removed. You can re-verify at any time."
                ),
                "Comp role removed",
                f"User <@{user_id}>'s Comp role removed because new screenshot failed requirements. {_stats_line(record)}.",
            )
        return outcome

    async def reconcile(self, guild_id: int, user_id: int, evaluation, previously_verified: bool = False,
                        context: str = "submission") -> Outcome:
        if evaluation.passed:
            return await self._grant(guild_id, user_id, context)
        if previously_verified:
            return await self._revoke(guild_id, user_id, context)
        return Outcome.NO_ACTION

    async def expire(self, guild_id: int, user_id: int) -> Outcome:
        """Reverify window ran out: drop the role if held and mark the user's records unverified."""
        outcome = await self._remove(guild_id, user_id, "expired", "Comp verification expired")
        await self._mark_unverified(guild_id, user_id)
        await self.notifier.log(
            guild_id, "Verification expired",
            f"User <@{user_id}>'s verification expired after {self.settings.reverify_days} days.",
        )
        await self.audit.log_action(guild_id, None, user_id, "verification_expired", {"role": outcome.value})
        return outcome
