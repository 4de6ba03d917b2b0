from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any


class MemoryStore:
    def __init__(self, db_path: str):
        self._db_path = Path(db_path)
        if db_path != ":memory:":
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        self._initialize_schema()

    def close(self) -> None:
        self._conn.close()

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        return self._conn.execute(query, params)

    def commit(self) -> None:
        self._conn.commit()

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS active_workflows (
                thread_ts TEXT PRIMARY KEY,
                workflow_type TEXT NOT NULL CHECK (workflow_type IN ('alert', 'delay_alert', 'discuss')),
                channel_id TEXT NOT NULL,
                incident_id TEXT NULL,
                dag_name TEXT NULL,
                cli_session_id TEXT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS alert_counters (
                dag_name TEXT PRIMARY KEY,
                count INTEGER NOT NULL DEFAULT 0,
                first_seen_at REAL NOT NULL,
                window_expires_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_active_workflows_type
                ON active_workflows(workflow_type);
            """
        )
        self._conn.commit()
