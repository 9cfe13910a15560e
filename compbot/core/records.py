"""
Verification record persistence.

One row is appended per accepted submission; the most recent row per
(user, guild) is the authoritative one and later mutations target it.
Ending a verification clears every verified row of the user.
"""

from __future__ import annotations
from dataclasses import dataclass, fields, replace
from typing import Any

from compbot.core.db import Database


class DuplicateTagError(Exception):
    """Raised when an unflagged insert would give a tag a second owner in the guild."""

    def __init__(self, guild_id: int, player_tag: str):
        super().__init__(f"player tag {player_tag!r} is already held in guild {guild_id}")
        self.guild_id = guild_id
        self.player_tag = player_tag


@dataclass
class VerificationRecord:
    user_id: int
    guild_id: int
    player_tag: str | None
    win_pct: float | None
    games_played: int | None
    username: str | None = None
    platform: str | None = None
    points: int | None = None
    rebounds: int | None = None
    assists: int | None = None
    image_url: str | None = None
    image_hash: str | None = None
    verified: bool = False
    verified_at: int | None = None
    expires_at: int | None = None
    flagged: bool = False
    flag_reason: str | None = None
    source: str | None = None
    created_at: int = 0
    id: int | None = None

    @classmethod
    def from_row(cls, row) -> "VerificationRecord":
        data = {k: row[k] for k in row.keys()}
        data["verified"] = bool(data.get("verified"))
        data["flagged"] = bool(data.get("flagged"))
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})

    def with_changes(self, **changes) -> "VerificationRecord":
        return replace(self, **changes)


INSERT_COLUMNS = (
    "user_id", "guild_id", "username", "player_tag", "platform", "win_pct", "games_played",
    "points", "rebounds", "assists", "image_url", "image_hash", "verified", "verified_at",
    "expires_at", "flagged", "flag_reason", "source", "created_at",
)

UPDATABLE_COLUMNS = {
    "player_tag", "platform", "image_url", "image_hash", "verified", "verified_at",
    "expires_at", "flagged", "flag_reason",
}

# The latest row of the owning user, by created_at then id.
LATEST_OF_USER = """
    SELECT w.id FROM comp_verifications w
    WHERE w.guild_id = v.guild_id AND w.user_id = v.user_id
    ORDER BY w.created_at DESC, w.id DESC LIMIT 1
"""

# The verified row of the owning user with the furthest expiry. A newer
# conflict row does not end a verification that was granted earlier.
CURRENT_VERIFIED_OF_USER = """
    SELECT w.id FROM comp_verifications w
    WHERE w.guild_id = v.guild_id AND w.user_id = v.user_id AND w.verified = 1
    ORDER BY w.expires_at DESC, w.id DESC LIMIT 1
"""


def _to_db(value: Any) -> Any:
    if isinstance(value, bool):
        return 1 if value else 0
    return value


class RecordStore:
    def __init__(self, db: Database):
        self.db = db

    async def insert(self, record: VerificationRecord) -> VerificationRecord:
        """Append a submission row and return it with its id.

        Unflagged rows with a tag are written with a conditional insert so that
        a tag never gains a second active (unflagged) owner; losing that race
        raises DuplicateTagError. Flagged rows are always written.
        """
        values = tuple(_to_db(getattr(record, c)) for c in INSERT_COLUMNS)
        cols = ",".join(INSERT_COLUMNS)
        marks = ",".join("?" for _ in INSERT_COLUMNS)

        if record.flagged or not record.player_tag:
            _, row_id = await self.db.insert(
                f"INSERT INTO comp_verifications({cols}) VALUES({marks})", values
            )
            return record.with_changes(id=row_id)

        rowcount, row_id = await self.db.insert(
            f"""
            INSERT INTO comp_verifications({cols})
            SELECT {marks}
            WHERE NOT EXISTS (
              SELECT 1 FROM comp_verifications v
              WHERE v.guild_id=? AND v.player_tag=? AND v.user_id<>? AND v.flagged=0
                AND v.id = ({LATEST_OF_USER})
            )
            """,
            values + (record.guild_id, record.player_tag, record.user_id),
        )
        if rowcount == 0:
            raise DuplicateTagError(record.guild_id, record.player_tag)
        return record.with_changes(id=row_id)

    async def get(self, record_id: int) -> VerificationRecord | None:
        row = await self.db.fetchone("SELECT * FROM comp_verifications WHERE id=?", (record_id,))
        return VerificationRecord.from_row(row) if row else None

    async def latest(self, user_id: int, guild_id: int) -> VerificationRecord | None:
        row = await self.db.fetchone(
            """
            SELECT * FROM comp_verifications
            WHERE user_id=? AND guild_id=?
            ORDER BY created_at DESC, id DESC
            LIMIT 1
            """,
            (user_id, guild_id),
        )
        return VerificationRecord.from_row(row) if row else None

    async def update_by_id(self, record_id: int, **updates) -> VerificationRecord | None:
        bad = set(updates) - UPDATABLE_COLUMNS
        if bad:
            raise ValueError(f"cannot update columns: {sorted(bad)}")
        if updates:
            assignments = ", ".join(f"{k}=?" for k in updates)
            await self.db.execute(
                f"UPDATE comp_verifications SET {assignments} WHERE id=?",
                tuple(_to_db(v) for v in updates.values()) + (record_id,),
            )
        return await self.get(record_id)

    async def update_latest(self, user_id: int, guild_id: int, **updates) -> VerificationRecord | None:
        """Update only the latest row for the user/guild. Returns None when there is none."""
        latest = await self.latest(user_id, guild_id)
        if latest is None:
            return None
        return await self.update_by_id(latest.id, **updates)

    async def current_verification(self, user_id: int, guild_id: int) -> VerificationRecord | None:
        """The verified row still standing for the user, if any (not necessarily the latest row)."""
        row = await self.db.fetchone(
            """
            SELECT * FROM comp_verifications
            WHERE user_id=? AND guild_id=? AND verified=1
            ORDER BY expires_at DESC, id DESC
            LIMIT 1
            """,
            (user_id, guild_id),
        )
        return VerificationRecord.from_row(row) if row else None

    async def clear_verified(self, user_id: int, guild_id: int) -> VerificationRecord | None:
        """Mark every row of the user unverified and return the latest one."""
        await self.db.execute(
            """
            UPDATE comp_verifications SET verified=0, verified_at=NULL, expires_at=NULL
            WHERE user_id=? AND guild_id=? AND verified=1
            """,
            (user_id, guild_id),
        )
        return await self.latest(user_id, guild_id)

    async def find_by_hash(self, user_id: int, guild_id: int, image_hash: str) -> VerificationRecord | None:
        row = await self.db.fetchone(
            "SELECT * FROM comp_verifications WHERE user_id=? AND guild_id=? AND image_hash=? LIMIT 1",
            (user_id, guild_id, image_hash),
        )
        return VerificationRecord.from_row(row) if row else None

    async def find_tag_holders(
        self, guild_id: int, player_tag: str, exclude_user: int | None = None, limit: int | None = 10
    ) -> list[VerificationRecord]:
        """Other users whose latest record carries this tag, most recent first. limit=None returns all."""
        if not player_tag:
            return []
        rows = await self.db.fetchall(
            f"""
            SELECT * FROM comp_verifications v
            WHERE v.guild_id=? AND v.player_tag=? AND v.user_id<>?
              AND v.id = ({LATEST_OF_USER})
            ORDER BY v.created_at DESC, v.id DESC
            LIMIT ?
            """,
            # sqlite treats a negative LIMIT as no limit
            (guild_id, player_tag, exclude_user if exclude_user is not None else -1,
             -1 if limit is None else limit),
        )
        return [VerificationRecord.from_row(r) for r in rows]

    async def find_tag_holder(
        self, guild_id: int, player_tag: str, exclude_user: int | None = None
    ) -> VerificationRecord | None:
        holders = await self.find_tag_holders(guild_id, player_tag, exclude_user, limit=1)
        return holders[0] if holders else None

    async def list_expired(self, now: int, guild_id: int | None = None) -> list[VerificationRecord]:
        """One row per user whose standing verification has run out.

        Looks at every verified row, not only the latest, so a user whose newer
        submission was escalated or denied still expires on schedule. A user
        re-verified later is skipped until the newer window closes.
        """
        sql = f"""
            SELECT * FROM comp_verifications v
            WHERE v.verified=1 AND v.expires_at IS NOT NULL AND v.expires_at<=?
              AND v.id = ({CURRENT_VERIFIED_OF_USER})
        """
        params: tuple = (now,)
        if guild_id is not None:
            sql += " AND v.guild_id=?"
            params += (guild_id,)
        rows = await self.db.fetchall(sql + " ORDER BY v.expires_at ASC", params)
        return [VerificationRecord.from_row(r) for r in rows]
