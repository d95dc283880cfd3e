"""SQLite connection management for the durable job store."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from threading import Lock
from typing import Dict


class SQLiteManager:
    """Manage SQLite connections with basic schema guarantees."""

    def __init__(self) -> None:
        self._connections: Dict[Path, sqlite3.Connection] = {}
        self._lock = Lock()

    def connect(self, path: Path) -> sqlite3.Connection:
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if path not in self._connections:
                # Autocommit mode; the job store issues explicit BEGIN IMMEDIATE.
                conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
                conn.row_factory = sqlite3.Row
                self._connections[path] = conn
                self._ensure_schema(conn)
            return self._connections[path]

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                total INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                completed_at TEXT,
                error_message TEXT,
                archived_at TEXT
            )
            """
        )
        # state: pending | in_flight | done
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS job_items (
                job_id TEXT NOT NULL,
                slot INTEGER NOT NULL,
                identifier TEXT NOT NULL,
                state TEXT NOT NULL DEFAULT 'pending',
                result_status TEXT,
                result TEXT,
                updated_at TEXT,
                PRIMARY KEY (job_id, slot)
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_job_items_state ON job_items(job_id, state)"
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS queue_state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )
        columns = {row["name"] for row in conn.execute("PRAGMA table_info(jobs)")}
        if "archived_at" not in columns:
            conn.execute("ALTER TABLE jobs ADD COLUMN archived_at TEXT")
        conn.commit()

    def close_all(self) -> None:
        with self._lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()


__all__ = ["SQLiteManager"]
