"""SQLite-backed thread metadata - the durable source of truth for loop configs"""

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = Path.home() / ".loopwork" / "threads.db"


class ThreadStore:
    """Persist per-thread metadata as a JSON blob.

    Loop configuration lives under the "loop" key; the workspace path
    under "workspacePath" and the model id under "model".
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = str(db_path or DEFAULT_DB_PATH)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        else:
            # sqlite forgets :memory: between connections
            self._memory_conn = sqlite3.connect(":memory:")
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        if self.db_path == ":memory:":
            return self._memory_conn
        return sqlite3.connect(self.db_path)

    def _init_db(self):
        conn = self._connect()
        with conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS threads (
                    thread_id TEXT PRIMARY KEY,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    metadata TEXT
                )
            """)

    def create_thread(self, thread_id: str, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Insert a thread, or replace the metadata of an existing one."""
        now = time.time()
        meta_json = json.dumps(metadata or {})
        conn = self._connect()
        with conn:
            conn.execute(
                """
                INSERT INTO threads (thread_id, created_at, updated_at, metadata)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(thread_id) DO UPDATE SET
                    updated_at=excluded.updated_at,
                    metadata=excluded.metadata
                """,
                (thread_id, now, now, meta_json),
            )
        return dict(metadata or {})

    def get_thread(self, thread_id: str) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        conn.row_factory = sqlite3.Row
        row = conn.execute(
            "SELECT * FROM threads WHERE thread_id = ?", (thread_id,)
        ).fetchone()
        if not row:
            return None
        d = dict(row)
        d["metadata"] = self._decode(thread_id, d.get("metadata"))
        return d

    def get_metadata(self, thread_id: str) -> Dict[str, Any]:
        """Metadata dict for a thread ({} when the thread is unknown)."""
        thread = self.get_thread(thread_id)
        return thread["metadata"] if thread else {}

    def update_metadata(self, thread_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """Shallow-merge patch into a thread's metadata; creates the thread if needed."""
        merged = {**self.get_metadata(thread_id), **patch}
        now = time.time()
        conn = self._connect()
        with conn:
            conn.execute(
                """
                INSERT INTO threads (thread_id, created_at, updated_at, metadata)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(thread_id) DO UPDATE SET
                    updated_at=excluded.updated_at,
                    metadata=excluded.metadata
                """,
                (thread_id, now, now, json.dumps(merged)),
            )
        return merged

    def list_thread_ids(self) -> List[str]:
        conn = self._connect()
        rows = conn.execute("SELECT thread_id FROM threads ORDER BY created_at").fetchall()
        return [r[0] for r in rows]

    def delete_thread(self, thread_id: str) -> bool:
        conn = self._connect()
        with conn:
            cur = conn.execute("DELETE FROM threads WHERE thread_id = ?", (thread_id,))
        return cur.rowcount > 0

    @staticmethod
    def _decode(thread_id: str, raw: Optional[str]) -> Dict[str, Any]:
        try:
            data = json.loads(raw or "{}")
        except ValueError as e:
            logger.warning(f"Corrupt metadata for thread {thread_id}: {e}")
            return {}
        return data if isinstance(data, dict) else {}
