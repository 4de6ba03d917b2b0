from __future__ import annotations

import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger

from cli_relay.memory.workflow_store import AlertCounter, AlertCounterStore

_PD_INCIDENT_RE = re.compile(r"pagerduty\.com/incidents/([A-Z0-9]+)", re.IGNORECASE)
_PD_HOST_RE = re.compile(r"pagerduty\.com", re.IGNORECASE)
_ATTACHMENT_FIELDS = ("title_link", "fallback", "text", "pretext")

_TASK_LABEL_RE = re.compile(r"\*Task\*:", re.IGNORECASE)
_DAG_LABEL_RE = re.compile(r"\*Dag\*:", re.IGNORECASE)
_EXECUTION_LABEL_RE = re.compile(r"\*Execution Time\*:", re.IGNORECASE)
_TASK_VALUE_RE = re.compile(r"\*Task\*:\s*(.+)")
_DAG_VALUE_RE = re.compile(r"\*Dag\*:\s*(.+)")


def _attachment_strings(attachments: list[dict[str, Any]] | None):
    for attachment in attachments or []:
        for field in _ATTACHMENT_FIELDS:
            value = attachment.get(field)
            if isinstance(value, str):
                yield value


def is_pagerduty_message(event: dict[str, Any]) -> bool:
    bot_profile = event.get("bot_profile") or {}
    if "pagerduty" in str(bot_profile.get("name") or "").lower():
        return True
    if "pagerduty" in str(event.get("username") or "").lower():
        return True
    if _PD_INCIDENT_RE.search(event.get("text") or ""):
        return True
    return any(_PD_HOST_RE.search(value) for value in _attachment_strings(event.get("attachments")))


def extract_incident_id(text: str, attachments: list[dict[str, Any]] | None = None) -> str | None:
    match = _PD_INCIDENT_RE.search(text or "")
    if match:
        return match.group(1)
    for value in _attachment_strings(attachments):
        match = _PD_INCIDENT_RE.search(value)
        if match:
            return match.group(1)
    return None


@dataclass
class TaskInfo:
    task_name: str
    dag_name: str


def is_airflow_task_alert(text: str) -> bool:
    return bool(
        _TASK_LABEL_RE.search(text) and _DAG_LABEL_RE.search(text) and _EXECUTION_LABEL_RE.search(text)
    )


def extract_task_info(text: str) -> TaskInfo | None:
    task = _TASK_VALUE_RE.search(text)
    dag = _DAG_VALUE_RE.search(text)
    if not task or not dag:
        return None
    return TaskInfo(task_name=task.group(1).strip(), dag_name=dag.group(1).strip())


def matches_task_pattern(task_name: str, patterns: list[str]) -> bool:
    lower = task_name.lower()
    return any(p.lower() in lower for p in patterns)


class DelayAlertCounter:
    """Per-dag alert counts inside a fixed window opened by the first alert.

    Counts are mirrored to the store so a restart keeps partially filled
    windows. Expired windows are dropped lazily.
    """

    def __init__(
        self,
        *,
        window_seconds: float,
        store: AlertCounterStore | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._window_seconds = window_seconds
        self._store = store
        self._clock = clock
        self._counters: dict[str, AlertCounter] = {}

    def record(self, dag_name: str) -> int:
        now = self._clock()
        counter = self._counters.get(dag_name)
        if counter is not None and counter.window_expires_at <= now:
            logger.info(f"[DelayAlertMonitor] Window expired for Dag: {dag_name}, resetting counter")
            counter = None
        if counter is None:
            counter = AlertCounter(
                dag_name=dag_name,
                count=0,
                first_seen_at=now,
                window_expires_at=now + self._window_seconds,
            )
            self._counters[dag_name] = counter
        counter.count += 1
        if self._store is not None:
            self._store.upsert(counter)
        return counter.count

    def reset(self, dag_name: str) -> None:
        self._counters.pop(dag_name, None)
        if self._store is not None:
            self._store.delete(dag_name)

    def count(self, dag_name: str) -> int:
        counter = self._counters.get(dag_name)
        if counter is None or counter.window_expires_at <= self._clock():
            return 0
        return counter.count

    def restore(self) -> int:
        if self._store is None:
            return 0
        now = self._clock()
        restored = 0
        expired = 0
        for counter in self._store.list_all():
            if counter.window_expires_at <= now:
                self._store.delete(counter.dag_name)
                expired += 1
                continue
            self._counters[counter.dag_name] = counter
            restored += 1
        if restored or expired:
            logger.info(f"[DelayAlertMonitor] Restored {restored} counters, expired {expired}")
        return restored
