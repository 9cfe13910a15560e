"""
Outstanding arbitration requests.

Held in memory only: a restart drops every pending request, and a click on an
old arbitration message is then answered as invalid/expired. Each request id
can be resolved at most once per process lifetime.
"""

from __future__ import annotations
import secrets
from dataclasses import dataclass

from compbot.utils.helpers import now_ts


@dataclass(frozen=True)
class PendingApproval:
    request_id: str
    user_id: int
    guild_id: int
    prev_tag: str | None
    new_tag: str
    new_platform: str | None = None
    old_image: str | None = None
    new_image: str | None = None
    other_user_id: int | None = None
    alt_saved_tag: str | None = None
    created_at: int = 0


def new_request_id() -> str:
    return f"{now_ts()}-{secrets.token_hex(3)}"


class ApprovalRegistry:
    def __init__(self):
        self._pending: dict[str, PendingApproval] = {}

    def create(
        self,
        user_id: int,
        guild_id: int,
        prev_tag: str | None,
        new_tag: str,
        new_platform: str | None = None,
        old_image: str | None = None,
        new_image: str | None = None,
        other_user_id: int | None = None,
        alt_saved_tag: str | None = None,
    ) -> PendingApproval:
        request_id = new_request_id()
        while request_id in self._pending:
            request_id = new_request_id()
        approval = PendingApproval(
            request_id=request_id,
            user_id=user_id,
            guild_id=guild_id,
            prev_tag=prev_tag,
            new_tag=new_tag,
            new_platform=new_platform,
            old_image=old_image,
            new_image=new_image,
            other_user_id=other_user_id,
            alt_saved_tag=alt_saved_tag,
            created_at=now_ts(),
        )
        self._pending[request_id] = approval
        return approval

    def get(self, request_id: str) -> PendingApproval | None:
        return self._pending.get(request_id)

    def delete(self, request_id: str) -> bool:
        return self._pending.pop(request_id, None) is not None

    def claim(self, request_id: str) -> PendingApproval | None:
        """Remove and return the request; a second claim of the same id gets None."""
        return self._pending.pop(request_id, None)

    def pending(self, guild_id: int | None = None) -> list[PendingApproval]:
        items = [a for a in self._pending.values() if guild_id is None or a.guild_id == guild_id]
        return sorted(items, key=lambda a: a.created_at)

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: str) -> bool:
        return request_id in self._pending
