from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from cli_relay.chat.messenger import Messenger, ThreadMessage
from cli_relay.chat.monitors import (
    DelayAlertCounter,
    extract_incident_id,
    extract_task_info,
    is_airflow_task_alert,
    is_pagerduty_message,
    matches_task_pattern,
)
from cli_relay.sessions.controller import DiscussionController
from cli_relay.workflows.alert import AlertWorkflowController
from cli_relay.workflows.delay_alert import DelayAlertWorkflowController

COMPACT_COMMAND = "!compact"
EXIT_COMMAND = "!exit"


@dataclass
class ChannelRoutes:
    discuss: set[str] = field(default_factory=set)
    monitor: set[str] = field(default_factory=set)
    monitor_delay: set[str] = field(default_factory=set)


def format_thread_context(messages: list[ThreadMessage]) -> str:
    if not messages:
        return ""
    lines = [f"<@{m.author_id}>: {m.text}".strip() for m in messages]
    return "Thread context (messages from other users):\n" + "\n".join(lines) + "\n\n"


class MessageRouter:
    """Dispatches inbound channel messages to the controller that owns the channel."""

    def __init__(
        self,
        *,
        owner_user_id: str,
        routes: ChannelRoutes,
        messenger: Messenger,
        discussions: DiscussionController | None = None,
        alerts: AlertWorkflowController | None = None,
        delay_alerts: DelayAlertWorkflowController | None = None,
        delay_counter: DelayAlertCounter | None = None,
        delay_threshold: int = 3,
        delay_task_patterns: list[str] | None = None,
        bot_user_id: str | None = None,
    ):
        self._owner_user_id = owner_user_id
        self._routes = routes
        self._messenger = messenger
        self._discussions = discussions
        self._alerts = alerts
        self._delay_alerts = delay_alerts
        self._delay_counter = delay_counter
        self._delay_threshold = delay_threshold
        self._delay_task_patterns = list(delay_task_patterns or [])
        self.bot_user_id = bot_user_id

    async def handle_message(self, event: dict[str, Any]) -> None:
        channel_id = event.get("channel")
        if not channel_id:
            return
        if channel_id in self._routes.monitor and self._alerts is not None:
            await self._handle_alert_channel(event)
        elif channel_id in self._routes.monitor_delay and self._delay_alerts is not None:
            await self._handle_delay_channel(event)
        elif channel_id in self._routes.discuss and self._discussions is not None:
            await self._handle_discuss_channel(event)

    # -- alert channel --

    async def _handle_alert_channel(self, event: dict[str, Any]) -> None:
        assert self._alerts is not None
        thread_ts = event.get("thread_ts")
        text = event.get("text") or ""

        if not thread_ts and is_pagerduty_message(event):
            logger.info(f"[AlertMonitor] PagerDuty message detected in {event['channel']}")
            incident_id = extract_incident_id(text, event.get("attachments"))
            await self._alerts.start(event["ts"], event["channel"], incident_id)
            return

        if thread_ts and self._is_owner(event) and self._alerts.is_active(thread_ts):
            await self._alerts.feedback(thread_ts, text)

    # -- delay channel --

    async def _handle_delay_channel(self, event: dict[str, Any]) -> None:
        assert self._delay_alerts is not None
        thread_ts = event.get("thread_ts")
        text = event.get("text") or ""

        if thread_ts:
            if self._is_owner(event) and self._delay_alerts.is_active(thread_ts):
                await self._delay_alerts.feedback(thread_ts, text)
            return

        if not is_airflow_task_alert(text):
            return
        info = extract_task_info(text)
        if info is None or not matches_task_pattern(info.task_name, self._delay_task_patterns):
            return

        dag_name = info.dag_name
        logger.info(f"[DelayAlertMonitor] Airflow alert for Dag: {dag_name} (Task: {info.task_name})")
        if self._delay_counter is None:
            return
        count = self._delay_counter.record(dag_name)
        logger.info(f"[DelayAlertMonitor] Dag: {dag_name} count: {count}/{self._delay_threshold}")
        if count < self._delay_threshold:
            return
        if self._delay_alerts.is_active_for_target(dag_name):
            logger.info(f"[DelayAlertMonitor] Workflow already active for Dag: {dag_name}, skipping")
            return

        self._delay_counter.reset(dag_name)
        logger.info(f"[DelayAlertMonitor] Threshold reached for Dag: {dag_name}, starting workflow")
        await self._delay_alerts.start(event["ts"], event["channel"], dag_name)

    # -- discuss channel --

    async def _handle_discuss_channel(self, event: dict[str, Any]) -> None:
        assert self._discussions is not None
        if not self._is_owner(event) or event.get("bot_id") or event.get("subtype"):
            return
        text = event.get("text") or ""
        if not text.strip():
            return

        channel_id = event["channel"]
        message_ts = event["ts"]
        thread_ts = event.get("thread_ts")

        if not thread_ts:
            await self._discussions.start(message_ts, channel_id, text)
            self._discussions.observe(message_ts, message_ts)
            return
        if not self._discussions.is_active(thread_ts):
            return

        command = text.strip().lower()
        if command == COMPACT_COMMAND:
            await self._discussions.compact(thread_ts)
            return
        if command == EXIT_COMMAND:
            await self._discussions.exit(thread_ts)
            return

        dispatched = await self._discussions.reply(
            thread_ts,
            text,
            context_loader=lambda: self._thread_context(channel_id, thread_ts, message_ts),
        )
        # Only dispatched replies advance the marker.
        if dispatched:
            self._discussions.observe(thread_ts, message_ts)

    async def _thread_context(self, channel_id: str, thread_ts: str, message_ts: str) -> str:
        since = self._discussions.last_observed_marker(thread_ts) if self._discussions is not None else None
        try:
            messages = await self._messenger.fetch_thread_messages(channel_id, thread_ts, since)
        except Exception as ex:
            logger.error(f"[Router] Failed to fetch thread context: {ex}")
            return ""
        others = [
            m
            for m in messages
            if not m.is_bot
            and m.author_id not in (self.bot_user_id, self._owner_user_id)
            and m.marker != message_ts
            and not (since is None and m.marker == thread_ts)
        ]
        return format_thread_context(others)

    def _is_owner(self, event: dict[str, Any]) -> bool:
        return event.get("user") == self._owner_user_id
