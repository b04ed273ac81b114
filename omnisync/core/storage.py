from __future__ import annotations

import logging
import os
import sqlite3
from dataclasses import dataclass

from omnisync.core.settings import Settings
from omnisync.core.sync_state import SyncState

logger = logging.getLogger(__name__)

SYNC_STATE_KEYS = ("last_sync_date", "synced_articles", "synced_highlights")

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;

-- Watermark and ledgers (key-value, JSON values)
CREATE TABLE IF NOT EXISTS sync_state (
  key TEXT PRIMARY KEY,
  value TEXT NOT NULL,
  updated_at TEXT DEFAULT (datetime('now'))
);

-- Sync passes (manual and scheduled)
CREATE TABLE IF NOT EXISTS sync_jobs (
  id TEXT PRIMARY KEY,
  status TEXT NOT NULL,  -- pending, running, completed, failed
  trigger TEXT NOT NULL DEFAULT 'manual',  -- manual, scheduled
  articles_synced INTEGER DEFAULT 0,
  highlights_synced INTEGER DEFAULT 0,
  notes_updated INTEGER DEFAULT 0,
  notes_merged INTEGER DEFAULT 0,
  items_skipped INTEGER DEFAULT 0,
  items_failed INTEGER DEFAULT 0,
  started_at TEXT DEFAULT (datetime('now')),
  last_activity TEXT DEFAULT (datetime('now')),
  error TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_jobs_started_at ON sync_jobs(started_at);
"""


@dataclass
class DB:
    conn: sqlite3.Connection

    def init(self) -> None:
        self.conn.executescript(SCHEMA_SQL)
        self.conn.commit()

    def get_state_value(self, key: str, default: str | None = None) -> str | None:
        """Get a persisted state value by key."""
        cur = self.conn.execute("SELECT value FROM sync_state WHERE key = ?", (key,))
        row = cur.fetchone()
        return row[0] if row else default

    def _upsert_state_value(self, key: str, value: str) -> None:
        self.conn.execute(
            """
            INSERT INTO sync_state (key, value, updated_at)
            VALUES (?, ?, datetime('now'))
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = datetime('now')
            """,
            (key, value),
        )

    def set_state_value(self, key: str, value: str) -> None:
        """Set a persisted state value (upsert)."""
        self._upsert_state_value(key, value)
        self.conn.commit()

    def load_sync_state(self) -> SyncState:
        return SyncState.load({key: self.get_state_value(key) for key in SYNC_STATE_KEYS})

    def save_sync_state(self, state: SyncState) -> None:
        """Write watermark and both ledgers in one transaction."""
        with self.conn:
            for key, value in state.dump().items():
                self._upsert_state_value(key, value)

    def reset_sync_state(self) -> None:
        """Clear watermark and ledgers. Notes and source data are untouched."""
        self.save_sync_state(SyncState())
        logger.info("Sync state has been reset")


_db: DB | None = None


def connect(db_path: str) -> sqlite3.Connection:
    if db_path != ":memory:":
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db(settings: Settings | None = None) -> None:
    global _db
    from omnisync.core.sync_job import init_sync_store

    s = settings or Settings.from_env()
    conn = connect(s.db_path)

    _db = DB(conn=conn)
    _db.init()

    init_sync_store(conn)


def get_db() -> DB:
    assert _db is not None, "DB not initialized"
    return _db
