"""
Submission and arbitration state machine.

submit() takes one screenshot claim through rate limit, duplicate image,
extraction and tag collision checks, then either stores it and reconciles the
role, or stores it flagged and opens an arbitration request. resolve()
applies the arbiter's decision for a request id exactly once.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum

from compbot.core.approvals import ApprovalRegistry, PendingApproval
from compbot.core.configurations import VerificationSettings
from compbot.core.eligibility import EligibilityEvaluator, Evaluation
from compbot.core.extractor import ExtractionFailure, NormalizedStats, StatsExtractor
from compbot.core.records import DuplicateTagError, RecordStore, VerificationRecord
from compbot.core.roles import Outcome, RoleGrantCoordinator
from compbot.utils.helpers import fmt_stat, minutes_left, now_ts, short_token

DUP_MARKER = "__dup__"
REASSIGNED_MARKER = "__reassigned__"
DENIED_REASON = "Denied by admin"
DUPLICATE_REASON_PREFIX = "Duplicate tag with"


class SubmissionState(str, Enum):
    UNAVAILABLE = "unavailable"
    RATE_LIMITED = "rate_limited"
    DUPLICATE_IMAGE = "duplicate_image"
    EXTRACTION_FAILED = "extraction_failed"
    TAG_CONFLICT_PENDING = "tag_conflict_pending"
    ACCEPTED = "accepted"
    RE_EVALUATION_FAILED = "re_evaluation_failed"


class ResolutionState(str, Enum):
    APPROVED = "approved"
    DENIED = "denied"
    INVALID = "invalid"


@dataclass(frozen=True)
class Submission:
    user_id: int
    guild_id: int
    image_url: str
    image_bytes: bytes
    username: str | None = None


@dataclass
class SubmissionResult:
    state: SubmissionState
    message: str | None = None
    record: VerificationRecord | None = None
    evaluation: Evaluation | None = None
    outcome: Outcome | None = None
    approval: PendingApproval | None = None
    retry_after: int | None = None
    missing: tuple[str, ...] = ()


@dataclass
class ResolutionResult:
    state: ResolutionState
    message: str
    approval: PendingApproval | None = None
    record: VerificationRecord | None = None
    evaluation: Evaluation | None = None
    outcome: Outcome | None = None
    reassigned: list[int] = field(default_factory=list)


def duplicate_reason(user_id: int) -> str:
    return f"{DUPLICATE_REASON_PREFIX} <@{user_id}>"


class ConflictResolver:
    def __init__(
        self,
        store: RecordStore,
        registry: ApprovalRegistry,
        extractor: StatsExtractor,
        evaluator: EligibilityEvaluator,
        coordinator: RoleGrantCoordinator,
        notifier,
        audit,
        settings: VerificationSettings,
        clock=now_ts,
        token=short_token,
    ):
        self.store = store
        self.registry = registry
        self.extractor = extractor
        self.evaluator = evaluator
        self.coordinator = coordinator
        self.notifier = notifier
        self.audit = audit
        self.settings = settings
        self.clock = clock
        self.token = token

    # ============================================================
    # SUBMISSION
    # ============================================================

    async def submit(self, sub: Submission) -> SubmissionResult:
        gid, uid = sub.guild_id, sub.user_id

        if not self.extractor.available:
            return SubmissionResult(
                SubmissionState.UNAVAILABLE,
                "Image parsing is currently unavailable because the OpenAI API or a working model is not "
                "configured. Please contact a server admin to set a working OPENAI_API_KEY and model.",
            )

        now = self.clock()
        prev = await self.store.latest(uid, gid)
        if prev is not None:
            elapsed = now - prev.created_at
            if elapsed < self.settings.rate_limit_seconds:
                wait = self.settings.rate_limit_seconds - elapsed
                mins = minutes_left(wait)
                if self.settings.debug:
                    await self.notifier.log(gid, "Rate limit blocked", f"User <@{uid}> tried to upload within rate limit ({mins}m left).")
                return SubmissionResult(
                    SubmissionState.RATE_LIMITED,
                    f"You can only upload once per hour. Please try again in {mins} minute(s).",
                    retry_after=wait,
                )

        image_hash = self.extractor.fingerprint(sub.image_bytes)
        if await self.store.find_by_hash(uid, gid, image_hash) is not None:
            await self.notifier.log(gid, "Duplicate screenshot blocked", f"User <@{uid}> attempted to upload a duplicate screenshot (hash {image_hash}).")
            return SubmissionResult(
                SubmissionState.DUPLICATE_IMAGE,
                "This exact screenshot was already submitted. Please upload a new, up-to-date screenshot.",
            )

        stats = await self.extractor.extract(sub.image_url)
        if isinstance(stats, ExtractionFailure):
            await self.notifier.log(
                gid, "Unreadable screenshot refused",
                f"User <@{uid}> uploaded an unreadable screenshot ({stats.reason}; missing: {', '.join(stats.missing) or 'n/a'}).",
            )
            return SubmissionResult(
                SubmissionState.EXTRACTION_FAILED,
                "I could not reliably read important parts of your screenshot (games, win%, or player tag). "
                "Please upload a clear full screenshot where your player tag is visible and re-try. "
                "Do not crop the tag. Your upload was not saved.",
                missing=stats.missing,
            )

        record = self._new_record(sub, stats, image_hash)
        holder = await self.store.find_tag_holder(gid, stats.player_tag, exclude_user=uid)
        if holder is not None:
            return await self._escalate(sub, record, holder)

        try:
            saved = await self.store.insert(record)
        except DuplicateTagError:
            return await self._escalate_race(sub, record)

        return await self._evaluate_saved(saved)

    def _new_record(self, sub: Submission, stats: NormalizedStats, image_hash: str) -> VerificationRecord:
        return VerificationRecord(
            user_id=sub.user_id,
            guild_id=sub.guild_id,
            username=sub.username,
            player_tag=stats.player_tag,
            platform=stats.platform,
            win_pct=stats.win_pct,
            games_played=stats.games_played,
            points=stats.points,
            rebounds=stats.rebounds,
            assists=stats.assists,
            image_url=sub.image_url,
            image_hash=image_hash,
            source=stats.source,
            created_at=self.clock(),
        )

    async def _evaluate_saved(self, saved: VerificationRecord) -> SubmissionResult:
        gid, uid = saved.guild_id, saved.user_id
        # an earlier verification still stands even when the latest row before this one was a conflict
        previously_verified = await self.store.current_verification(uid, gid) is not None
        evaluation = self.evaluator.evaluate(saved)
        outcome = await self.coordinator.reconcile(gid, uid, evaluation, previously_verified, context="submission")
        saved = await self.store.get(saved.id)
        await self.audit.log_action(gid, None, uid, "submission_saved", {
            "record_id": saved.id, "tag": saved.player_tag, "passed": evaluation.passed, "role": outcome.value,
        })

        if evaluation.passed:
            return SubmissionResult(SubmissionState.ACCEPTED, None, saved, evaluation, outcome)

        unmet = (
            "Thanks for linking your account - your profile has been saved. You didn't meet the Comp requirements "
            f"(Win%: {fmt_stat(saved.win_pct)}, Games: {fmt_stat(saved.games_played)}). "
            "You can still view other players' stats on the server."
        )
        if previously_verified:
            await self.notifier.log(
                gid, "Verification failed - re-check failed",
                f"User <@{uid}> failed re-check. Detected Win%: {fmt_stat(saved.win_pct)}, Games: {fmt_stat(saved.games_played)}.",
            )
            message = None if outcome is Outcome.REVOKED else unmet
            return SubmissionResult(SubmissionState.RE_EVALUATION_FAILED, message, saved, evaluation, outcome)

        which = "games" if not evaluation.meets_games else "win%"
        await self.notifier.log(
            gid, f"Verification failed - {which}",
            f"User <@{uid}> failed {which} check. Detected Win%: {fmt_stat(saved.win_pct)}, Games: {fmt_stat(saved.games_played)}.",
        )
        return SubmissionResult(SubmissionState.ACCEPTED, unmet, saved, evaluation, outcome)

    # ============================================================
    # ESCALATION
    # ============================================================

    async def _flag_holder(self, gid: int, holder: VerificationRecord, claimant_id: int):
        await self.store.update_latest(holder.user_id, gid, flagged=True, flag_reason=duplicate_reason(claimant_id))

    async def _open_request(self, sub: Submission, saved: VerificationRecord, holder: VerificationRecord | None,
                            tag: str, title: str, description: str, alt_tag: str | None = None) -> SubmissionResult:
        gid, uid = sub.guild_id, sub.user_id
        approval = self.registry.create(
            user_id=uid,
            guild_id=gid,
            prev_tag=holder.player_tag if holder else None,
            new_tag=tag,
            new_platform=saved.platform,
            old_image=holder.image_url if holder else None,
            new_image=sub.image_url,
            other_user_id=holder.user_id if holder else None,
            alt_saved_tag=alt_tag,
        )
        await self.audit.log_action(gid, None, uid, "tag_conflict_escalated", {
            "request_id": approval.request_id, "tag": tag, "saved_as": saved.player_tag,
            "other_user_id": approval.other_user_id,
        })

        reached = await self.notifier.request_arbitration(approval, title, description)
        if holder is not None:
            await self.notifier.dm(
                holder.user_id,
                f"Your player tag ({tag}) was used in a new submission and has been flagged. "
                "An admin will review the two screenshots.",
            )

        if reached:
            await self.notifier.log(gid, "Duplicate tag flagged",
                                    f"User <@{uid}> submitted tag {tag} which conflicts with <@{approval.other_user_id}>.")
            message = ("Your submission was saved but flagged because that player tag already exists. "
                       "An admin will review this and notify both parties.")
        else:
            await self.notifier.log(gid, "Duplicate tag - admin DM failed",
                                    f"Could not send DM to admin for duplicate tag {tag} by <@{uid}>.")
            message = ("Your submission was saved but flagged because that player tag already exists. "
                       "Could not contact the admin at this time. Please contact a server admin directly.")

        return SubmissionResult(SubmissionState.TAG_CONFLICT_PENDING, message, saved, approval=approval)

    async def _escalate(self, sub: Submission, record: VerificationRecord, holder: VerificationRecord) -> SubmissionResult:
        saved = await self.store.insert(
            record.with_changes(flagged=True, flag_reason=duplicate_reason(holder.user_id))
        )
        await self._flag_holder(sub.guild_id, holder, sub.user_id)
        return await self._open_request(
            sub, saved, holder, record.player_tag,
            "Duplicate player tag detected",
            (
                "A new submission uses a player tag that already exists in the system.\n\n"
                f"Tag: **{record.player_tag}**\nNew submitter: <@{sub.user_id}>\n"
                f"Existing owner: <@{holder.user_id}>\n\n"
                "Please review the two screenshots below and decide which submission to accept."
            ),
        )

    async def _escalate_race(self, sub: Submission, record: VerificationRecord) -> SubmissionResult:
        """The store refused the clean insert: another user claimed the tag in the meantime."""
        tag = record.player_tag
        holder = await self.store.find_tag_holder(sub.guild_id, tag, exclude_user=sub.user_id)
        alt_tag = f"{tag[:120]}{DUP_MARKER}{self.token()}"
        reason = duplicate_reason(holder.user_id) if holder else f"{DUPLICATE_REASON_PREFIX} an existing owner"
        saved = await self.store.insert(record.with_changes(player_tag=alt_tag, flagged=True, flag_reason=reason))
        print(f"⚠ Duplicate-key fallback: tag {tag!r} saved as {alt_tag!r} for user {sub.user_id}")
        if holder is not None:
            await self._flag_holder(sub.guild_id, holder, sub.user_id)
        await self.notifier.log(
            sub.guild_id, "Duplicate-key fallback saved",
            f"A new submission for tag **{tag}** conflicted with an existing record. The submission was saved "
            f"as **{alt_tag}** and flagged for admin review.",
        )
        return await self._open_request(
            sub, saved, holder, tag,
            "Duplicate-key fallback saved - admin attention required",
            (
                f"A new submission for tag **{tag}** conflicted with an existing record. The submission was "
                f"automatically saved as **{alt_tag}** and flagged for admin review.\n\n"
                "Approve to make the new submission the owner of the tag. Deny to keep the existing owner."
            ),
            alt_tag=alt_tag,
        )

    # ============================================================
    # ARBITRATION
    # ============================================================

    async def resolve(self, request_id: str, approve: bool, arbiter_id: int | None = None) -> ResolutionResult:
        approval = self.registry.claim(request_id)
        if approval is None:
            return ResolutionResult(ResolutionState.INVALID, "This approval request is no longer valid or was already handled.")
        if approve:
            return await self._approve(approval, arbiter_id)
        return await self._deny(approval, arbiter_id)

    async def _move_aside(self, approval: PendingApproval, arbiter_id: int | None) -> list[int]:
        gid, uid = approval.guild_id, approval.user_id
        moved: list[int] = []
        for holder in await self.store.find_tag_holders(gid, approval.new_tag, exclude_user=uid, limit=None):
            aside = f"{holder.player_tag}{REASSIGNED_MARKER}{self.token()}"
            await self.store.update_by_id(
                holder.id, player_tag=aside, flagged=True, flag_reason=f"Tag reassigned to <@{uid}> by admin"
            )
            moved.append(holder.user_id)
            await self.notifier.dm(
                holder.user_id,
                f"An admin reassigned your player tag **{holder.player_tag}** to another account as part of a "
                f"dispute resolution. Your saved tag has been renamed to **{aside}** and flagged for admin review. "
                "If this is unexpected, contact an admin.",
            )
            await self.notifier.log(
                gid, "Tag reassigned by admin",
                f"Existing owner <@{holder.user_id}>'s tag {holder.player_tag} was reassigned to allow assignment "
                f"to <@{uid}> by admin.",
            )
            await self.audit.log_action(gid, arbiter_id, holder.user_id, "tag_reassigned", {
                "from": holder.player_tag, "to": aside, "request_id": approval.request_id,
            })
        return moved

    async def _clear_duplicate_flag(self, gid: int, user_id: int):
        """Unflag the user's latest row only if it was flagged as a tag duplicate."""
        latest = await self.store.latest(user_id, gid)
        if latest and latest.flagged and (latest.flag_reason or "").startswith(DUPLICATE_REASON_PREFIX):
            await self.store.update_by_id(latest.id, flagged=False, flag_reason=None)

    async def _approve(self, approval: PendingApproval, arbiter_id: int | None) -> ResolutionResult:
        gid, uid = approval.guild_id, approval.user_id
        moved = await self._move_aside(approval, arbiter_id) if approval.new_tag else []

        updates = {"player_tag": approval.new_tag, "platform": approval.new_platform, "flagged": False, "flag_reason": None}
        if approval.new_image:
            updates["image_url"] = approval.new_image
        record = await self.store.update_latest(uid, gid, **updates)

        other = approval.other_user_id
        if other and other != uid and other not in moved:
            await self._clear_duplicate_flag(gid, other)

        await self.audit.log_action(gid, arbiter_id, uid, "tag_change_approved", {
            "request_id": approval.request_id, "tag": approval.new_tag, "reassigned": moved,
        })

        if record is None:
            await self.notifier.dm(uid, "An admin approved your tag change, but I couldn't finalize role assignment automatically.")
            await self.notifier.log(gid, "Player tag change approved - post-update check failed",
                                    f"Approved tag change for <@{uid}> but no saved record was found.")
            return ResolutionResult(ResolutionState.APPROVED, "Approved - no saved record to update.", approval, reassigned=moved)

        evaluation = self.evaluator.evaluate(record)
        outcome = await self.coordinator.reconcile(gid, uid, evaluation, previously_verified=False, context="approval")
        if not evaluation.passed:
            await self.notifier.dm(
                uid,
                f"An admin approved your player tag change. Your profile was updated (new tag: {fmt_stat(approval.new_tag)}), "
                f"but your saved stats do not meet the verification thresholds (Win%: {fmt_stat(record.win_pct)}, "
                f"Games: {fmt_stat(record.games_played)}). No Comp role was assigned.",
            )
            await self.notifier.log(gid, "Player tag change approved - no role (stats low)",
                                    f"Admin approved tag change for <@{uid}> but stats do not meet thresholds. New tag: {fmt_stat(approval.new_tag)}.")

        record = await self.store.get(record.id)
        return ResolutionResult(ResolutionState.APPROVED, "Approved - user has been updated.", approval, record,
                                evaluation, outcome, moved)

    async def _deny(self, approval: PendingApproval, arbiter_id: int | None) -> ResolutionResult:
        gid, uid = approval.guild_id, approval.user_id
        record = await self.store.update_latest(uid, gid, flagged=True, flag_reason=DENIED_REASON)

        other = approval.other_user_id
        if other and other != uid:
            await self._clear_duplicate_flag(gid, other)

        await self.notifier.dm(uid, "An admin denied your requested player tag change. If you believe this is a mistake, contact an admin.")
        await self.notifier.log(gid, "Player tag change denied",
                                f"Admin denied tag change for <@{uid}>. Prev: {approval.prev_tag}, New: {approval.new_tag}.")
        await self.audit.log_action(gid, arbiter_id, uid, "tag_change_denied", {
            "request_id": approval.request_id, "tag": approval.new_tag,
        })
        return ResolutionResult(ResolutionState.DENIED, "Denied - user has been notified.", approval, record)
