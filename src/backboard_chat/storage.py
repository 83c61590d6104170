"""SQLite key/value store for thread titles, plus a best-effort cache over it."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class TitleStore:
    """SQLite-backed mapping from thread id to title."""

    def __init__(self, db_path: Path):
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path))
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._migrate()

    def _migrate(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS thread_titles (
                thread_id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
        """)
        self.conn.commit()

    def get_all(self) -> dict[str, str]:
        rows = self.conn.execute("SELECT thread_id, title FROM thread_titles").fetchall()
        return {row["thread_id"]: row["title"] for row in rows}

    def upsert(self, thread_id: str, title: str):
        """Insert or replace the title for a thread."""
        self.conn.execute(
            """INSERT INTO thread_titles (thread_id, title, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(thread_id) DO UPDATE SET
                   title = excluded.title,
                   updated_at = excluded.updated_at""",
            (thread_id, title, datetime.now(timezone.utc).isoformat()),
        )
        self.conn.commit()

    def delete(self, thread_id: str):
        self.conn.execute("DELETE FROM thread_titles WHERE thread_id = ?", (thread_id,))
        self.conn.commit()

    def close(self):
        self.conn.close()


class TitleCache:
    """Load-once view of a TitleStore, written through on every change.

    The store is treated as a cache of convenience: failures are logged and
    never raised to the caller.
    """

    def __init__(self, store: TitleStore | None):
        self.store = store
        self._titles: dict[str, str] = {}
        self._loaded = False

    def _ensure_loaded(self):
        if self._loaded:
            return
        self._loaded = True
        if self.store is None:
            return
        try:
            self._titles = self.store.get_all()
            logger.debug("Loaded %d thread titles", len(self._titles))
        except sqlite3.Error:
            logger.warning("Failed to load thread titles", exc_info=True)

    def all(self) -> dict[str, str]:
        self._ensure_loaded()
        return dict(self._titles)

    def get(self, thread_id: str) -> str | None:
        self._ensure_loaded()
        return self._titles.get(thread_id)

    def save(self, thread_id: str, title: str):
        self._ensure_loaded()
        self._titles[thread_id] = title
        if self.store is None:
            return
        try:
            self.store.upsert(thread_id, title)
        except sqlite3.Error:
            logger.warning("Failed to save title for thread %s", thread_id, exc_info=True)
            self.invalidate()

    def delete(self, thread_id: str):
        self._ensure_loaded()
        self._titles.pop(thread_id, None)
        if self.store is None:
            return
        try:
            self.store.delete(thread_id)
        except sqlite3.Error:
            logger.warning("Failed to delete title for thread %s", thread_id, exc_info=True)
            self.invalidate()

    def invalidate(self):
        """Force the next read to reload from the store."""
        self._loaded = False
        self._titles = {}
