from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from cli_relay.memory.store import MemoryStore

WORKFLOW_TYPES = ("alert", "delay_alert", "discuss")


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


@dataclass
class WorkflowRow:
    thread_ts: str
    workflow_type: str
    channel_id: str
    incident_id: str | None = None
    dag_name: str | None = None
    cli_session_id: str | None = None
    created_at: str | None = None


@dataclass
class AlertCounter:
    dag_name: str
    count: int
    first_seen_at: float
    window_expires_at: float


class WorkflowStore:
    """Rows for conversations that must survive a restart."""

    def __init__(self, store: MemoryStore):
        self._store = store

    def upsert_session(self, row: WorkflowRow) -> None:
        if row.workflow_type not in WORKFLOW_TYPES:
            raise ValueError(f"Unknown workflow type: {row.workflow_type}")
        self._store.execute(
            """
            INSERT OR REPLACE INTO active_workflows
                (thread_ts, workflow_type, channel_id, incident_id, dag_name, cli_session_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                row.thread_ts,
                row.workflow_type,
                row.channel_id,
                row.incident_id,
                row.dag_name,
                row.cli_session_id,
                row.created_at or utc_now(),
            ),
        )
        self._store.commit()

    def update_resumption_token(self, thread_ts: str, token: str) -> None:
        self._store.execute(
            "UPDATE active_workflows SET cli_session_id = ? WHERE thread_ts = ?",
            (token, thread_ts),
        )
        self._store.commit()

    def delete_session(self, thread_ts: str) -> None:
        self._store.execute("DELETE FROM active_workflows WHERE thread_ts = ?", (thread_ts,))
        self._store.commit()

    def list_sessions_by_type(self, workflow_type: str) -> list[WorkflowRow]:
        rows = self._store.execute(
            "SELECT * FROM active_workflows WHERE workflow_type = ? ORDER BY created_at ASC",
            (workflow_type,),
        ).fetchall()
        return [WorkflowRow(**dict(row)) for row in rows]


class AlertCounterStore:
    def __init__(self, store: MemoryStore):
        self._store = store

    def upsert(self, counter: AlertCounter) -> None:
        self._store.execute(
            """
            INSERT INTO alert_counters (dag_name, count, first_seen_at, window_expires_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(dag_name) DO UPDATE SET
                count = excluded.count,
                first_seen_at = excluded.first_seen_at,
                window_expires_at = excluded.window_expires_at
            """,
            (counter.dag_name, counter.count, counter.first_seen_at, counter.window_expires_at),
        )
        self._store.commit()

    def get(self, dag_name: str) -> AlertCounter | None:
        row = self._store.execute(
            "SELECT * FROM alert_counters WHERE dag_name = ? LIMIT 1",
            (dag_name,),
        ).fetchone()
        if row is None:
            return None
        return AlertCounter(**dict(row))

    def delete(self, dag_name: str) -> None:
        self._store.execute("DELETE FROM alert_counters WHERE dag_name = ?", (dag_name,))
        self._store.commit()

    def list_all(self) -> list[AlertCounter]:
        rows = self._store.execute("SELECT * FROM alert_counters").fetchall()
        return [AlertCounter(**dict(row)) for row in rows]
