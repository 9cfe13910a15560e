from __future__ import annotations
import json
from typing import Optional, List, Dict, Any
from compbot.core.db import Database
from compbot.utils.helpers import now_ts

class AuditService:
    """Records verification state transitions (submissions, role changes, arbitration) in audit_log."""

    def __init__(self, db: Database, clock=now_ts):
        self.db = db
        self.clock = clock

    async def log_action(
        self,
        guild_id: int,
        actor_id: Optional[int],
        target_user_id: Optional[int],
        action: str,
        meta: Optional[Dict[str, Any]] = None
    ):
        """actor_id is the arbiter for decisions, None for automatic transitions."""
        meta_json = json.dumps(meta or {}, default=str)
        await self.db.audit(guild_id, actor_id, target_user_id, action, meta_json, self.clock())

    @staticmethod
    def _entry(row) -> Dict[str, Any]:
        try:
            meta = json.loads(row["meta"] or "{}")
        except json.JSONDecodeError:
            meta = {}
        return {
            "id": int(row["id"]),
            "guild_id": int(row["guild_id"]),
            "actor_id": int(row["actor_id"]) if row["actor_id"] is not None else None,
            "target_user_id": int(row["target_user_id"]) if row["target_user_id"] is not None else None,
            "action": str(row["action"]),
            "meta": meta,
            "created_ts": int(row["created_ts"]),
        }

    async def get_audit_logs(
        self,
        guild_id: int,
        actor_id: Optional[int] = None,
        target_user_id: Optional[int] = None,
        action: Optional[str] = None,
        since_ts: Optional[int] = None,
        limit: int = 100
    ) -> List[Dict[str, Any]]:
        """Entries for one guild, newest first. Filters left as None are ignored."""
        filters = {
            "actor_id=?": actor_id,
            "target_user_id=?": target_user_id,
            "action=?": action,
            "created_ts>=?": since_ts,
        }
        clauses = ["guild_id=?"]
        params: list = [guild_id]
        for clause, value in filters.items():
            if value is not None:
                clauses.append(clause)
                params.append(value)

        rows = await self.db.fetchall(
            f"SELECT * FROM audit_log WHERE {' AND '.join(clauses)} ORDER BY created_ts DESC, id DESC LIMIT ?",
            (*params, limit),
        )
        return [self._entry(r) for r in rows]
