"""
Tests for the submission and arbitration flows.

Tests:
- Submission gates: availability, rate limit, duplicate image, unreadable stats
- Accepted submissions grant, keep or revoke the comp role
- Tag collisions are flagged and escalated exactly once
- Approve / deny, including the duplicate-key fallback and chained conflicts
"""

from compbot.core.records import RecordStore, VerificationRecord
from compbot.core.resolver import (
    DENIED_REASON,
    ResolutionState,
    Submission,
    SubmissionState,
)
from compbot.core.roles import Outcome
from tests.fakes import ARBITER_ID, ROLE_ID, T0, environment, run

A, B, C = 101, 102, 103
HOUR = 3600
DAY = 24 * HOUR


class BlindOnceStore(RecordStore):
    """Misses the holder on one lookup, as when another claim lands between check and insert."""

    blind = False

    async def find_tag_holder(self, guild_id, player_tag, exclude_user=None):
        if self.blind:
            self.blind = False
            return None
        return await super().find_tag_holder(guild_id, player_tag, exclude_user)


async def verified_owner(env, user_id=A, tag="alpha"):
    env.guild.add_member(user_id)
    result = await env.resolver.submit(env.submission(user_id, tag, 150, 85.0))
    assert result.outcome is Outcome.GRANTED
    return result


class TestSubmissionGates:
    """Submissions refused before anything is stored."""

    def test_unavailable(self, tmp_path):
        """No working model: refuse and store nothing."""
        async def scenario():
            async with environment(tmp_path, vision_available=False) as env:
                result = await env.resolver.submit(
                    Submission(user_id=A, guild_id=1, image_url="https://cdn.example/x.png", image_bytes=b"x")
                )
                assert result.state is SubmissionState.UNAVAILABLE
                assert "unavailable" in result.message
                assert await env.count_rows() == 0

        run(scenario())

    def test_rate_limit_boundary(self, tmp_path):
        """3599 seconds after the last record is refused, 3600 is accepted."""
        async def scenario():
            async with environment(tmp_path) as env:
                await verified_owner(env)

                env.clock.advance(HOUR - 1)
                blocked = await env.resolver.submit(env.submission(A, "alpha", 160, 86.0))
                assert blocked.state is SubmissionState.RATE_LIMITED
                assert blocked.retry_after == 1
                assert "1 minute(s)" in blocked.message
                assert await env.count_rows() == 1

                env.clock.advance(1)
                accepted = await env.resolver.submit(env.submission(A, "alpha", 160, 86.0))
                assert accepted.state is SubmissionState.ACCEPTED
                assert await env.count_rows() == 2

        run(scenario())

    def test_rate_limit_rounds_minutes_up(self, tmp_path):
        async def scenario():
            async with environment(tmp_path) as env:
                await verified_owner(env)
                env.clock.advance(HOUR - 61)
                blocked = await env.resolver.submit(env.submission(A, "alpha", 160, 86.0))
                assert blocked.retry_after == 61
                assert "2 minute(s)" in blocked.message

        run(scenario())

    def test_duplicate_image(self, tmp_path):
        """The same screenshot bytes are refused for the same user."""
        async def scenario():
            async with environment(tmp_path) as env:
                env.guild.add_member(A)
                url = "https://cdn.example/a/same.png"
                await env.resolver.submit(env.submission(A, "alpha", 150, 85.0, url=url))
                env.clock.advance(HOUR)
                result = await env.resolver.submit(env.submission(A, "alpha", 150, 85.0, url=url))
                assert result.state is SubmissionState.DUPLICATE_IMAGE
                assert await env.count_rows() == 1
                assert "Duplicate screenshot blocked" in env.notifier.log_titles()

        run(scenario())

    def test_missing_tag_not_saved(self, tmp_path):
        """Unreadable essentials are refused and nothing is persisted."""
        async def scenario():
            async with environment(tmp_path) as env:
                result = await env.resolver.submit(env.submission(A, None, 150, 85.0))
                assert result.state is SubmissionState.EXTRACTION_FAILED
                assert result.missing == ("player_tag",)
                assert "not saved" in result.message
                assert await env.count_rows() == 0

        run(scenario())

    def test_vision_error_not_saved(self, tmp_path):
        async def scenario():
            async with environment(tmp_path) as env:
                env.vision.responses["u"] = ValueError("model returned prose")
                result = await env.resolver.submit(
                    Submission(user_id=A, guild_id=1, image_url="u", image_bytes=b"u")
                )
                assert result.state is SubmissionState.EXTRACTION_FAILED
                assert await env.count_rows() == 0

        run(scenario())


class TestAcceptedSubmissions:
    """Stored submissions and their role reconciliation."""

    def test_passing_grants_role(self, tmp_path):
        async def scenario():
            async with environment(tmp_path) as env:
                result = await verified_owner(env)
                assert result.state is SubmissionState.ACCEPTED
                assert result.message is None
                assert result.record.verified is True
                assert result.record.verified_at == T0
                assert result.record.expires_at == T0 + 30 * DAY
                assert result.record.source == "openai:fake-model"
                assert env.guild.members[A].has(ROLE_ID)
                assert len(env.notifier.cards) == 1

                logs = await env.audit.get_audit_logs(1, action="submission_saved")
                assert logs[0]["meta"]["passed"] is True

        run(scenario())

    def test_low_games_saved_without_role(self, tmp_path):
        """Failing stats are still saved, with no role change."""
        async def scenario():
            async with environment(tmp_path) as env:
                env.guild.add_member(C)
                result = await env.resolver.submit(env.submission(C, "gamma", 50, 95.0))
                assert result.state is SubmissionState.ACCEPTED
                assert result.outcome is Outcome.NO_ACTION
                assert result.evaluation.meets_games is False
                assert result.record.verified is False
                assert "didn't meet" in result.message
                assert not env.guild.members[C].has(ROLE_ID)
                assert "Verification failed - games" in env.notifier.log_titles()

        run(scenario())

    def test_resubmission_renews_window(self, tmp_path):
        """A passing resubmission keeps the role and restarts the window."""
        async def scenario():
            async with environment(tmp_path) as env:
                await verified_owner(env)
                env.clock.advance(DAY)
                result = await env.resolver.submit(env.submission(A, "alpha", 170, 88.0))
                assert result.outcome is Outcome.ALREADY_HELD
                assert result.record.expires_at == T0 + DAY + 30 * DAY

        run(scenario())

    def test_failed_recheck_revokes(self, tmp_path):
        async def scenario():
            async with environment(tmp_path) as env:
                await verified_owner(env)
                env.clock.advance(HOUR)
                result = await env.resolver.submit(env.submission(A, "alpha", 150, 70.0))
                assert result.state is SubmissionState.RE_EVALUATION_FAILED
                assert result.outcome is Outcome.REVOKED
                assert result.message is None
                assert result.record.verified is False
                assert result.record.expires_at is None
                assert not env.guild.members[A].has(ROLE_ID)
                assert any("role was removed" in m for m in env.notifier.dms_to(A))

        run(scenario())

    def test_failed_recheck_without_role(self, tmp_path):
        """Nothing to remove: skip the removal and still mark unverified."""
        async def scenario():
            async with environment(tmp_path) as env:
                await verified_owner(env)
                env.guild.members[A].roles.clear()
                env.clock.advance(HOUR)
                result = await env.resolver.submit(env.submission(A, "alpha", 150, 70.0))
                assert result.state is SubmissionState.RE_EVALUATION_FAILED
                assert result.outcome is Outcome.NOT_HELD
                assert "didn't meet" in result.message
                assert result.record.verified is False
                assert await env.audit.get_audit_logs(1, action="role_removal_skipped")

        run(scenario())


class TestTagConflicts:
    """Collisions and arbitration."""

    def test_collision_flags_both(self, tmp_path):
        async def scenario():
            async with environment(tmp_path) as env:
                await verified_owner(env)
                env.guild.add_member(B)
                env.clock.advance(HOUR)
                result = await env.resolver.submit(env.submission(B, "alpha", 200, 90.0))

                assert result.state is SubmissionState.TAG_CONFLICT_PENDING
                assert "An admin will review" in result.message
                a, b = await env.latest(A), await env.latest(B)
                assert a.flagged and a.flag_reason == f"Duplicate tag with <@{B}>"
                assert b.flagged and b.flag_reason == f"Duplicate tag with <@{A}>"
                assert b.player_tag == "alpha"
                assert not env.guild.members[B].has(ROLE_ID)

                assert len(env.registry) == 1
                assert env.notifier.arbitrations == [result.approval]
                assert result.approval.other_user_id == A
                assert result.approval.prev_tag == "alpha"
                assert env.notifier.dms_to(A)

        run(scenario())

    def test_unreachable_arbiter(self, tmp_path):
        """The request stays pending and the user is told to contact an admin."""
        async def scenario():
            async with environment(tmp_path, arbiter_reachable=False) as env:
                await verified_owner(env)
                env.clock.advance(HOUR)
                result = await env.resolver.submit(env.submission(B, "alpha", 200, 90.0))
                assert result.state is SubmissionState.TAG_CONFLICT_PENDING
                assert "Could not contact the admin" in result.message
                assert result.approval.request_id in env.registry

        run(scenario())

    def test_approve_reassigns(self, tmp_path):
        async def scenario():
            async with environment(tmp_path) as env:
                await verified_owner(env)
                env.guild.add_member(B)
                env.clock.advance(HOUR)
                pending = await env.resolver.submit(env.submission(B, "alpha", 200, 90.0))

                result = await env.resolver.resolve(pending.approval.request_id, True, ARBITER_ID)
                assert result.state is ResolutionState.APPROVED
                assert result.reassigned == [A]
                assert result.outcome is Outcome.GRANTED

                a, b = await env.latest(A), await env.latest(B)
                assert a.player_tag == "alpha__reassigned__t0001"
                assert a.flagged and a.flag_reason == f"Tag reassigned to <@{B}> by admin"
                assert b.player_tag == "alpha"
                assert not b.flagged
                assert b.verified
                assert env.guild.members[B].has(ROLE_ID)
                assert len(env.registry) == 0

                entries = await env.audit.get_audit_logs(1, action="tag_change_approved")
                assert entries[0]["actor_id"] == ARBITER_ID

        run(scenario())

    def test_approve_with_low_stats(self, tmp_path):
        """Approval updates the tag but grants no role when stats fail."""
        async def scenario():
            async with environment(tmp_path) as env:
                await verified_owner(env)
                env.guild.add_member(B)
                env.clock.advance(HOUR)
                pending = await env.resolver.submit(env.submission(B, "alpha", 20, 90.0))
                result = await env.resolver.resolve(pending.approval.request_id, True)
                assert result.state is ResolutionState.APPROVED
                assert result.outcome is Outcome.NO_ACTION
                assert result.record.player_tag == "alpha"
                assert not env.guild.members[B].has(ROLE_ID)
                assert any("No Comp role was assigned" in m for m in env.notifier.dms_to(B))

        run(scenario())

    def test_deny(self, tmp_path):
        async def scenario():
            async with environment(tmp_path) as env:
                await verified_owner(env)
                env.clock.advance(HOUR)
                pending = await env.resolver.submit(env.submission(B, "alpha", 200, 90.0))

                result = await env.resolver.resolve(pending.approval.request_id, False, ARBITER_ID)
                assert result.state is ResolutionState.DENIED
                a, b = await env.latest(A), await env.latest(B)
                assert b.flagged and b.flag_reason == DENIED_REASON
                assert not a.flagged
                assert a.player_tag == "alpha"
                assert a.verified
                assert env.guild.members[A].has(ROLE_ID)

        run(scenario())

    def test_resolve_is_single_use(self, tmp_path):
        """A second click on the same request changes nothing."""
        async def scenario():
            async with environment(tmp_path) as env:
                await verified_owner(env)
                env.guild.add_member(B)
                env.clock.advance(HOUR)
                pending = await env.resolver.submit(env.submission(B, "alpha", 200, 90.0))
                request_id = pending.approval.request_id

                await env.resolver.resolve(request_id, True)
                before = await env.latest(B)
                again = await env.resolver.resolve(request_id, False)
                assert again.state is ResolutionState.INVALID
                assert await env.latest(B) == before

                unknown = await env.resolver.resolve("0-000000", True)
                assert unknown.state is ResolutionState.INVALID

        run(scenario())

    def test_duplicate_key_fallback(self, tmp_path):
        """A claim lost between lookup and insert is saved under a disambiguated tag."""
        async def scenario():
            async with environment(tmp_path, store_cls=BlindOnceStore) as env:
                await verified_owner(env)
                env.guild.add_member(B)
                env.clock.advance(HOUR)
                env.store.blind = True
                result = await env.resolver.submit(env.submission(B, "alpha", 200, 90.0))

                assert result.state is SubmissionState.TAG_CONFLICT_PENDING
                b = await env.latest(B)
                assert b.player_tag == "alpha__dup__t0001"
                assert b.flagged
                assert (await env.latest(A)).flagged
                assert result.approval.new_tag == "alpha"
                assert result.approval.alt_saved_tag == "alpha__dup__t0001"
                assert "Duplicate-key fallback saved" in env.notifier.log_titles()

                await env.resolver.resolve(result.approval.request_id, True)
                assert (await env.latest(B)).player_tag == "alpha"
                assert (await env.latest(A)).player_tag == "alpha__reassigned__t0002"

        run(scenario())

    def test_chained_conflicts_leave_one_owner(self, tmp_path):
        """Two overlapping requests for one tag end with a single unflagged owner."""
        async def scenario():
            async with environment(tmp_path) as env:
                await verified_owner(env)
                env.guild.add_member(B)
                env.guild.add_member(C)

                env.clock.advance(HOUR)
                first = await env.resolver.submit(env.submission(B, "alpha", 200, 90.0))
                env.clock.advance(HOUR)
                second = await env.resolver.submit(env.submission(C, "alpha", 300, 92.0))
                assert second.approval.other_user_id == B

                approved_c = await env.resolver.resolve(second.approval.request_id, True)
                assert sorted(approved_c.reassigned) == [A, B]
                approved_b = await env.resolver.resolve(first.approval.request_id, True)
                assert approved_b.reassigned == [C]

                holders = await env.store.find_tag_holders(1, "alpha")
                assert [h.user_id for h in holders] == [B]
                assert holders[0].flagged is False
                # approving B's older request does not lift A's reassignment flag
                moved = await env.latest(A)
                assert moved.flagged
                assert moved.flag_reason == f"Tag reassigned to <@{C}> by admin"
                assert (await env.latest(C)).flagged

        run(scenario())

    def test_approve_moves_every_holder(self, tmp_path):
        """More than a page of other holders are all moved aside."""
        async def scenario():
            async with environment(tmp_path) as env:
                others = list(range(1, 13))
                for uid in others:
                    await env.store.insert(VerificationRecord(
                        user_id=uid, guild_id=1, player_tag="alpha", win_pct=85.0, games_played=150,
                        flagged=True, flag_reason="Duplicate tag with <@50>", created_at=T0 + uid,
                    ))
                env.guild.add_member(50)
                env.clock.advance(HOUR)
                await env.store.insert(VerificationRecord(
                    user_id=50, guild_id=1, player_tag="alpha", win_pct=85.0, games_played=150,
                    flagged=True, created_at=env.clock(),
                ))
                approval = env.registry.create(50, 1, None, "alpha", other_user_id=12)

                result = await env.resolver.resolve(approval.request_id, True)
                assert sorted(result.reassigned) == others
                holders = await env.store.find_tag_holders(1, "alpha", limit=None)
                assert [h.user_id for h in holders] == [50]
                assert holders[0].flagged is False

        run(scenario())
