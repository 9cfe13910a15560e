from __future__ import annotations
import aiosqlite
from contextlib import asynccontextmanager

class Database:
    def __init__(self, path: str):
        self.path = path
        self.conn: aiosqlite.Connection | None = None
        self._in_tx: bool = False

    async def connect(self):
        self.conn = await aiosqlite.connect(self.path)
        self.conn.row_factory = aiosqlite.Row
        await self.conn.execute("PRAGMA journal_mode=WAL;")
        await self.conn.execute("PRAGMA synchronous=NORMAL;")
        await self.conn.commit()

    async def close(self):
        if self.conn:
            await self.conn.close()
            self.conn = None

    async def execute(self, sql: str, params=(), commit: bool = True) -> int:
        """Execute SQL statement and return the affected row count.

        If commit=False, don't commit (for use in transactions).
        """
        assert self.conn
        cur = await self.conn.execute(sql, params)
        rowcount = cur.rowcount
        await cur.close()
        # Only commit if explicitly requested AND not inside a transaction
        if commit and not self._in_tx:
            await self.conn.commit()
        return rowcount

    async def insert(self, sql: str, params=(), commit: bool = True) -> tuple[int, int]:
        """Execute an INSERT and return (rowcount, lastrowid)."""
        assert self.conn
        cur = await self.conn.execute(sql, params)
        result = (cur.rowcount, cur.lastrowid)
        await cur.close()
        if commit and not self._in_tx:
            await self.conn.commit()
        return result

    async def commit(self):
        assert self.conn
        await self.conn.commit()

    @asynccontextmanager
    async def transaction(self):
        """Transaction context manager: BEGIN on enter, COMMIT on success, ROLLBACK on exception."""
        assert self.conn
        self._in_tx = True
        try:
            await self.conn.execute("BEGIN")
            yield self
            await self.conn.commit()
        except Exception:
            await self.conn.rollback()
            raise
        finally:
            self._in_tx = False

    async def fetchone(self, sql: str, params=()):
        assert self.conn
        cur = await self.conn.execute(sql, params)
        row = await cur.fetchone()
        await cur.close()
        return row

    async def fetchall(self, sql: str, params=()):
        assert self.conn
        cur = await self.conn.execute(sql, params)
        rows = await cur.fetchall()
        await cur.close()
        return rows

    async def _ensure_column(self, table: str, col: str, ddl: str, commit: bool = True):
        """Add column if missing (SQLite)."""
        assert self.conn
        try:
            rows = await self.fetchall(f"PRAGMA table_info({table});")
            existing = {r["name"] for r in rows}
            if col not in existing:
                await self.execute(f"ALTER TABLE {table} ADD COLUMN {col} {ddl};", commit=commit)
        except Exception as e:
            print(f"Warning: Could not check/add column {col} to {table}: {e}")

    async def migrate(self):
        """Run database migrations in a single transaction."""
        try:
            async with self.transaction():
                await self._migrate_tables()
        except Exception as e:
            print(f"Database migration error: {e}")
            print(f"Error type: {type(e).__name__}")
            import traceback
            traceback.print_exc()
            raise

    async def _migrate_tables(self):
        await self.execute("""
        CREATE TABLE IF NOT EXISTS comp_verifications (
          id            INTEGER PRIMARY KEY AUTOINCREMENT,
          user_id       INTEGER NOT NULL,
          guild_id      INTEGER NOT NULL,
          username      TEXT,
          player_tag    TEXT,
          platform      TEXT,
          win_pct       REAL,
          games_played  INTEGER,
          points        INTEGER,
          rebounds      INTEGER,
          assists       INTEGER,
          image_url     TEXT,
          image_hash    TEXT,
          verified      INTEGER NOT NULL DEFAULT 0,
          verified_at   INTEGER,
          expires_at    INTEGER,
          flagged       INTEGER NOT NULL DEFAULT 0,
          flag_reason   TEXT,
          source        TEXT,
          created_at    INTEGER NOT NULL
        );
        """)

        # Older installs predate model provenance
        await self._ensure_column("comp_verifications", "source", "TEXT")

        await self.execute("""
        CREATE INDEX IF NOT EXISTS idx_comp_verif_user
          ON comp_verifications(guild_id, user_id, created_at);
        """)
        await self.execute("""
        CREATE INDEX IF NOT EXISTS idx_comp_verif_tag
          ON comp_verifications(guild_id, player_tag);
        """)
        await self.execute("""
        CREATE INDEX IF NOT EXISTS idx_comp_verif_hash
          ON comp_verifications(guild_id, user_id, image_hash);
        """)

        await self.execute("""
        CREATE TABLE IF NOT EXISTS comp_settings (
          guild_id        INTEGER PRIMARY KEY,
          channel_id      INTEGER,
          log_channel_id  INTEGER,
          category_id     INTEGER,
          role_id         INTEGER,
          min_games       INTEGER,
          min_win_pct     REAL,
          reverify_days   INTEGER,
          updated_at      INTEGER
        );
        """)

        await self.execute("""
        CREATE TABLE IF NOT EXISTS audit_log (
          id             INTEGER PRIMARY KEY AUTOINCREMENT,
          guild_id       INTEGER NOT NULL,
          actor_id       INTEGER,
          target_user_id INTEGER,
          action         TEXT NOT NULL,
          meta           TEXT,
          created_ts     INTEGER NOT NULL
        );
        """)
        await self.execute("""
        CREATE INDEX IF NOT EXISTS idx_audit_guild_ts ON audit_log(guild_id, created_ts);
        """)

    async def audit(self, gid: int, actor_id: int | None, target_user_id: int | None, action: str, meta: str, ts: int):
        """Log an audit entry."""
        meta_truncated = meta[:2000] if meta else "{}"
        await self.execute(
            "INSERT INTO audit_log(guild_id,actor_id,target_user_id,action,meta,created_ts) VALUES(?,?,?,?,?,?)",
            (gid, actor_id, target_user_id, action, meta_truncated, ts),
        )
