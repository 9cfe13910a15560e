"""
Configuration and service modules.
Consolidates: config.yml loading, verification policy, per-guild settings.
"""

from __future__ import annotations
import os
import yaml
from dataclasses import dataclass, field
from typing import Any, Mapping

from compbot.utils.helpers import now_ts

# ============================================================================
# CONFIG
# ============================================================================

class Config(dict):
    @staticmethod
    def load(path: str) -> "Config":
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        return Config(data)

    def get(self, *keys, default=None):
        cur: Any = self
        for k in keys:
            if isinstance(cur, dict) and k in cur:
                cur = cur[k]
            else:
                return default
        return cur

# ============================================================================
# VERIFICATION POLICY
# ============================================================================

RATE_LIMIT_SECONDS = 3600
DAY_SECONDS = 24 * 3600

DEFAULT_MODEL_CANDIDATES = ("gpt-5-mini", "gpt-4o-mini", "gpt-4o", "gpt-5")

def _env_or(env: Mapping[str, str], key: str, fallback):
    raw = env.get(key)
    if raw is None or str(raw).strip() == "":
        return fallback
    return raw

def _as_int(value, default: int = 0) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return default

def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class VerificationSettings:
    min_games: int = 100
    min_win_pct: float = 80.0
    reverify_days: int = 30
    rate_limit_seconds: int = RATE_LIMIT_SECONDS
    admin_user_id: int = 0
    role_id: int = 0
    role_name: str = "Comp Verified"
    player_card_channel_id: int = 0
    channel_name: str = "comp-verification"
    log_channel_name: str = "comp-logs"
    category_name: str = "comp"
    verify_emoji: str = "✅"
    log_emoji: str = "📜"
    openai_api_key: str = ""
    model_candidates: tuple[str, ...] = field(default=DEFAULT_MODEL_CANDIDATES)
    debug: bool = False

    @property
    def reverify_seconds(self) -> int:
        return self.reverify_days * DAY_SECONDS

    @classmethod
    def from_config(cls, cfg: Config, env: Mapping[str, str] | None = None) -> "VerificationSettings":
        """Build the policy from config.yml, letting environment variables win."""
        env = os.environ if env is None else env

        preferred = _env_or(env, "OPENAI_MODEL", cfg.get("vision", "model", default="gpt-5-mini"))
        fallbacks = cfg.get("vision", "fallbacks", default=list(DEFAULT_MODEL_CANDIDATES)) or []
        candidates: list[str] = []
        for name in [preferred, *fallbacks]:
            name = str(name or "").strip()
            if name and name not in candidates:
                candidates.append(name)

        return cls(
            min_games=_as_int(_env_or(env, "MIN_GAMES", cfg.get("verification", "min_games", default=100)), 100),
            min_win_pct=float(_env_or(env, "MIN_WIN_PCT", cfg.get("verification", "min_win_pct", default=80.0))),
            reverify_days=_as_int(_env_or(env, "REVERIFY_DAYS", cfg.get("verification", "reverify_days", default=30)), 30),
            admin_user_id=_as_int(_env_or(env, "ADMIN_USER_ID", cfg.get("arbiter_id", default=0))),
            role_id=_as_int(_env_or(env, "ROLE_ID", cfg.get("roles", "verified", default=0))),
            role_name=str(cfg.get("verification", "role_name", default="Comp Verified")),
            player_card_channel_id=_as_int(
                _env_or(env, "PLAYER_CARD_CHANNEL_ID", cfg.get("channels", "player_cards", default=0))
            ),
            channel_name=str(_env_or(env, "BOT_CHANNEL_NAME", cfg.get("channels", "verification_name", default="comp-verification"))),
            log_channel_name=str(_env_or(env, "LOG_CHANNEL_NAME", cfg.get("channels", "log_name", default="comp-logs"))),
            category_name=str(_env_or(env, "CATEGORY_NAME", cfg.get("channels", "category_name", default="comp"))),
            verify_emoji=str(_env_or(env, "VERIF_CHANNEL_EMOJI", cfg.get("channels", "verification_emoji", default="✅"))),
            log_emoji=str(_env_or(env, "LOG_CHANNEL_EMOJI", cfg.get("channels", "log_emoji", default="📜"))),
            openai_api_key=str(_env_or(env, "OPENAI_API_KEY", cfg.get("vision", "api_key", default="")) or ""),
            model_candidates=tuple(candidates),
            debug=_as_bool(_env_or(env, "OCR_DEBUG", cfg.get("verification", "debug", default=False))),
        )

# ============================================================================
# GUILD SETTINGS SERVICE
# ============================================================================

GUILD_SETTING_KEYS = {"channel_id", "log_channel_id", "category_id", "role_id"}

class GuildSettingsService:
    def __init__(self, db):
        self.db = db

    async def get(self, gid: int, key: str) -> int | None:
        """Get a persisted per-guild id (channel, log channel, category or role)."""
        if key not in GUILD_SETTING_KEYS:
            raise KeyError(key)
        row = await self.db.fetchone(f"SELECT {key} FROM comp_settings WHERE guild_id=?", (gid,))
        if not row or row[key] is None:
            return None
        return int(row[key])

    async def set(self, gid: int, key: str, value: int | None):
        """Set (or clear with None) a persisted per-guild id."""
        if key not in GUILD_SETTING_KEYS:
            raise KeyError(key)
        await self.db.execute(
            f"""INSERT INTO comp_settings(guild_id,{key},updated_at)
               VALUES(?,?,?)
               ON CONFLICT(guild_id) DO UPDATE SET {key}=excluded.{key}, updated_at=excluded.updated_at""",
            (gid, value, now_ts()),
        )

    async def ensure_row(self, gid: int, settings: VerificationSettings):
        """Record the thresholds in force for this guild."""
        await self.db.execute(
            """INSERT INTO comp_settings(guild_id,min_games,min_win_pct,reverify_days,updated_at)
               VALUES(?,?,?,?,?)
               ON CONFLICT(guild_id) DO UPDATE SET
                 min_games=excluded.min_games,
                 min_win_pct=excluded.min_win_pct,
                 reverify_days=excluded.reverify_days,
                 updated_at=excluded.updated_at""",
            (gid, settings.min_games, settings.min_win_pct, settings.reverify_days, now_ts()),
        )
