from __future__ import annotations

from compbot.core.configurations import VerificationSettings
from compbot.core.records import RecordStore
from compbot.core.roles import RoleGrantCoordinator


class ReverifySweep:
    """Daily pass expiring verifications whose window has run out."""

    def __init__(self, store: RecordStore, coordinator: RoleGrantCoordinator, notifier, settings: VerificationSettings):
        self.store = store
        self.coordinator = coordinator
        self.notifier = notifier
        self.settings = settings

    async def run(self, now: int, guild_id: int | None = None) -> list[tuple[int, int]]:
        """Returns the (guild_id, user_id) pairs that were expired."""
        expired = []
        for rec in await self.store.list_expired(now, guild_id):
            await self.coordinator.expire(rec.guild_id, rec.user_id)
            await self.notifier.dm(
                rec.user_id,
                f"Hi - your Comp verification has expired (more than {self.settings.reverify_days} days). "
                f'Please re-verify by clicking the Verify button in the "{self.settings.channel_name}" channel on the server.',
            )
            expired.append((rec.guild_id, rec.user_id))
        return expired
