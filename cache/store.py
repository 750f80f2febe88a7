"""
SQLite-backed run journal.
Keeps a short-lived dataset cache (so one run does not page through the
directory twice), a log of task runs, and every per-item admin action.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger("m365_admin.cache")


class RunJournal:
    """
    Persistent journal backed by SQLite.
    Features:
      - TTL-based dataset cache
      - Run log (start / completion / status per task run)
      - Action log (target, action, outcome for each mutation)
      - Connection-per-call, safe to use from async tasks
    """

    def __init__(self, cache_dir: str, ttl_hours: float = 1):
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = self.cache_dir / "run_journal.db"
        self.ttl_seconds = ttl_hours * 3600
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path))

    def _init_db(self):
        """Initialize the journal database schema."""
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS cache_entries (
                    key TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    timestamp REAL NOT NULL,
                    run_id TEXT NOT NULL,
                    item_count INTEGER DEFAULT 0
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS run_log (
                    run_id TEXT NOT NULL,
                    task TEXT NOT NULL,
                    started_at REAL NOT NULL,
                    completed_at REAL,
                    status TEXT DEFAULT 'running',
                    metadata TEXT,
                    PRIMARY KEY (run_id, task)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS actions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL,
                    task TEXT NOT NULL,
                    target TEXT NOT NULL,
                    action TEXT NOT NULL,
                    status TEXT NOT NULL,
                    detail TEXT,
                    timestamp REAL NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_actions_run
                ON actions(run_id)
            """)
            conn.commit()

    # ── Dataset cache ───────────────────────────────────────────────────────

    def get(self, key: str) -> Optional[Any]:
        """Return cached data, or None if missing or expired."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data, timestamp FROM cache_entries WHERE key = ?",
                (key,),
            ).fetchone()

        if row is None:
            return None

        data_json, timestamp = row
        if time.time() - timestamp > self.ttl_seconds:
            logger.debug(f"Cache expired for key: {key}")
            return None

        logger.debug(f"Cache hit for key: {key}")
        return json.loads(data_json)

    def put(self, key: str, data: Any, run_id: str):
        """Store data in cache with current timestamp."""
        data_json = json.dumps(data, default=str)
        item_count = len(data) if isinstance(data, (list, dict)) else 1

        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO cache_entries (key, data, timestamp, run_id, item_count)
                VALUES (?, ?, ?, ?, ?)
                """,
                (key, data_json, time.time(), run_id, item_count),
            )
            conn.commit()
        logger.debug(f"Cached {item_count} items for key: {key}")

    def invalidate(self, key: str):
        with self._connect() as conn:
            conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
            conn.commit()
        logger.debug(f"Invalidated cache key: {key}")

    def clear_expired(self) -> int:
        """Remove all expired cache entries."""
        cutoff = time.time() - self.ttl_seconds
        with self._connect() as conn:
            deleted = conn.execute(
                "DELETE FROM cache_entries WHERE timestamp < ?",
                (cutoff,),
            ).rowcount
            conn.commit()
        if deleted:
            logger.info(f"Cleared {deleted} expired cache entries.")
        return deleted

    # ── Run log ─────────────────────────────────────────────────────────────

    def start_run(self, run_id: str, task: str, metadata: Optional[dict] = None):
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO run_log (run_id, task, started_at, status, metadata)
                VALUES (?, ?, ?, 'running', ?)
                """,
                (run_id, task, time.time(), json.dumps(metadata or {}, default=str)),
            )
            conn.commit()

    def complete_run(self, run_id: str, task: str, status: str = "completed"):
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE run_log SET completed_at = ?, status = ?
                WHERE run_id = ? AND task = ?
                """,
                (time.time(), status, run_id, task),
            )
            conn.commit()

    def get_run_history(self, limit: int = 10) -> list[dict]:
        """Retrieve recent runs, newest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT run_id, task, started_at, completed_at, status, metadata
                FROM run_log ORDER BY started_at DESC LIMIT ?
                """,
                (limit,),
            ).fetchall()

        return [
            {
                "run_id": r[0],
                "task": r[1],
                "started_at": r[2],
                "completed_at": r[3],
                "status": r[4],
                "metadata": json.loads(r[5]) if r[5] else {},
            }
            for r in rows
        ]

    # ── Action log ──────────────────────────────────────────────────────────

    def record_action(
        self,
        run_id: str,
        task: str,
        target: str,
        action: str,
        status: str,
        detail: str = "",
    ):
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO actions (run_id, task, target, action, status, detail, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (run_id, task, target, action, status, detail, time.time()),
            )
            conn.commit()

    def get_actions(self, run_id: str) -> list[dict]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT target, action, status, detail, timestamp
                FROM actions WHERE run_id = ? ORDER BY id
                """,
                (run_id,),
            ).fetchall()
        return [
            {"target": r[0], "action": r[1], "status": r[2], "detail": r[3], "timestamp": r[4]}
            for r in rows
        ]
