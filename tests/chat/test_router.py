import asyncio
import unittest

from cli_relay.chat.messenger import ThreadMessage
from cli_relay.chat.monitors import DelayAlertCounter
from cli_relay.chat.router import ChannelRoutes, MessageRouter, format_thread_context
from cli_relay.cli.launcher import TurnResult
from cli_relay.sessions.controller import BUSY_TEXT, EXIT_TEXT, DiscussionController
from cli_relay.sessions.registry import SessionRegistry
from tests.fakes import FakeLauncher, FakeMessenger

OWNER = "UOWNER"
BOT = "UBOT"
AIRFLOW_ALERT = "*Task*: load_tax_rates_sensor\n*Dag*: billing_daily\n*Execution Time*: 2026-10-18T04:00:00"


class RecordingWorkflows:
    """Stands in for a workflow controller and records what the router asks of it."""

    def __init__(self, active: set[str] | None = None, active_targets: set[str] | None = None):
        self.active = set(active or ())
        self.active_targets = set(active_targets or ())
        self.started: list[tuple[str, str, str | None]] = []
        self.feedbacks: list[tuple[str, str]] = []

    async def start(self, conversation_id: str, channel_id: str, target: str | None = None) -> bool:
        self.started.append((conversation_id, channel_id, target))
        return True

    async def feedback(self, conversation_id: str, text: str) -> bool:
        self.feedbacks.append((conversation_id, text))
        return True

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self.active

    def is_active_for_target(self, target: str) -> bool:
        return target in self.active_targets


class RouterTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.launcher = FakeLauncher()
        self.messenger = FakeMessenger()
        self.discussions = DiscussionController(
            registry=SessionRegistry(),
            launcher=self.launcher,
            messenger=self.messenger,
        )
        self.alerts = RecordingWorkflows()
        self.delay_alerts = RecordingWorkflows()
        self.delay_counter = DelayAlertCounter(window_seconds=3600)
        self.router = MessageRouter(
            owner_user_id=OWNER,
            routes=ChannelRoutes(discuss={"CDISCUSS"}, monitor={"CALERT"}, monitor_delay={"CDELAY"}),
            messenger=self.messenger,
            discussions=self.discussions,
            alerts=self.alerts,
            delay_alerts=self.delay_alerts,
            delay_counter=self.delay_counter,
            delay_threshold=2,
            delay_task_patterns=["tax_rates"],
            bot_user_id=BOT,
        )

    async def settle(self, conversation_id: str) -> None:
        session = self.discussions.registry.get(conversation_id)
        if session is not None and session.turn_task is not None:
            await session.turn_task


class DiscussChannelTests(RouterTestCase):
    def test_top_level_owner_message_starts_session(self) -> None:
        async def scenario():
            await self.router.handle_message({"channel": "CDISCUSS", "user": OWNER, "ts": "10.1", "text": "hello"})
            await self.settle("10.1")

        asyncio.run(scenario())
        self.assertTrue(self.discussions.is_active("10.1"))
        self.assertEqual("10.1", self.discussions.last_observed_marker("10.1"))
        self.assertEqual([("hello", None)], self.launcher.resumable_calls)

    def test_non_owner_bot_and_subtype_messages_are_ignored(self) -> None:
        events = [
            {"channel": "CDISCUSS", "user": "USOMEONE", "ts": "10.1", "text": "hello"},
            {"channel": "CDISCUSS", "user": OWNER, "bot_id": "B1", "ts": "10.2", "text": "hello"},
            {"channel": "CDISCUSS", "user": OWNER, "subtype": "message_changed", "ts": "10.3", "text": "hello"},
            {"channel": "CDISCUSS", "user": OWNER, "ts": "10.4", "text": "   "},
            {"channel": "CUNKNOWN", "user": OWNER, "ts": "10.5", "text": "hello"},
            {"user": OWNER, "ts": "10.6", "text": "hello"},
        ]

        async def scenario():
            for event in events:
                await self.router.handle_message(event)

        asyncio.run(scenario())
        self.assertEqual([], self.launcher.resumable_calls)
        self.assertEqual(0, len(self.discussions.registry))

    def test_reply_carries_context_from_other_users(self) -> None:
        self.launcher.queue(TurnResult(exit_code=0, response="first", resumption_token="tok"))
        self.messenger.thread_messages = [
            ThreadMessage(author_id=OWNER, text="hello", marker="10.1"),
            ThreadMessage(author_id="UTEAMMATE", text="deploy finished", marker="10.2"),
            ThreadMessage(author_id=BOT, text="first", marker="10.3"),
            ThreadMessage(author_id="UOTHERBOT", text="beep", marker="10.4", is_bot=True),
            ThreadMessage(author_id=OWNER, text="what changed?", marker="10.5"),
        ]

        async def scenario():
            await self.router.handle_message({"channel": "CDISCUSS", "user": OWNER, "ts": "10.1", "text": "hello"})
            await self.settle("10.1")
            await self.router.handle_message(
                {"channel": "CDISCUSS", "user": OWNER, "ts": "10.5", "thread_ts": "10.1", "text": "what changed?"}
            )
            await self.settle("10.1")

        asyncio.run(scenario())
        self.assertEqual([("CDISCUSS", "10.1", "10.1")], self.messenger.fetch_calls)
        prompt, token = self.launcher.resumable_calls[1]
        self.assertEqual("tok", token)
        self.assertEqual(
            "Thread context (messages from other users):\n<@UTEAMMATE>: deploy finished\n\nwhat changed?",
            prompt,
        )
        self.assertEqual("10.5", self.discussions.last_observed_marker("10.1"))

    def test_reply_without_context_is_sent_verbatim(self) -> None:
        self.launcher.queue(TurnResult(exit_code=0, response="first", resumption_token="tok"))

        async def scenario():
            await self.router.handle_message({"channel": "CDISCUSS", "user": OWNER, "ts": "10.1", "text": "hello"})
            await self.settle("10.1")
            await self.router.handle_message(
                {"channel": "CDISCUSS", "user": OWNER, "ts": "10.2", "thread_ts": "10.1", "text": "and then?"}
            )
            await self.settle("10.1")

        asyncio.run(scenario())
        self.assertEqual(("and then?", "tok"), self.launcher.resumable_calls[1])

    def test_rejected_reply_does_not_advance_marker(self) -> None:
        self.launcher.queue(TurnResult(exit_code=0, response="first", resumption_token="tok"), None)

        async def scenario():
            await self.router.handle_message({"channel": "CDISCUSS", "user": OWNER, "ts": "10.1", "text": "hello"})
            await self.settle("10.1")
            await self.router.handle_message(
                {"channel": "CDISCUSS", "user": OWNER, "ts": "10.2", "thread_ts": "10.1", "text": "dig deeper"}
            )
            await self.router.handle_message(
                {"channel": "CDISCUSS", "user": OWNER, "ts": "10.4", "thread_ts": "10.1", "text": "still there?"}
            )
            marker = self.discussions.last_observed_marker("10.1")
            self.discussions.kill_all()
            return marker

        self.assertEqual("10.2", asyncio.run(scenario()))
        self.assertEqual([("CDISCUSS", "10.1", "10.1")], self.messenger.fetch_calls)
        self.assertEqual(BUSY_TEXT, self.messenger.post_texts()[-1])
        self.assertEqual(2, len(self.launcher.resumable_calls))

    def test_commands_are_routed(self) -> None:
        self.launcher.queue(TurnResult(exit_code=0, response="first", resumption_token="tok"))

        async def scenario():
            await self.router.handle_message({"channel": "CDISCUSS", "user": OWNER, "ts": "10.1", "text": "hello"})
            await self.settle("10.1")
            await self.router.handle_message(
                {"channel": "CDISCUSS", "user": OWNER, "ts": "10.2", "thread_ts": "10.1", "text": " !COMPACT "}
            )
            await self.router.handle_message(
                {"channel": "CDISCUSS", "user": OWNER, "ts": "10.3", "thread_ts": "10.1", "text": "!exit"}
            )

        asyncio.run(scenario())
        self.assertEqual(["tok"], self.launcher.compact_calls)
        self.assertEqual(EXIT_TEXT, self.messenger.post_texts()[-1])
        self.assertFalse(self.discussions.is_active("10.1"))
        self.assertEqual(1, len(self.launcher.resumable_calls))

    def test_replies_in_unknown_threads_are_ignored(self) -> None:
        asyncio.run(
            self.router.handle_message(
                {"channel": "CDISCUSS", "user": OWNER, "ts": "10.2", "thread_ts": "9.9", "text": "!exit"}
            )
        )
        self.assertEqual([], self.messenger.posts)
        self.assertEqual([], self.messenger.fetch_calls)


class AlertChannelTests(RouterTestCase):
    def test_pagerduty_message_starts_workflow(self) -> None:
        event = {
            "channel": "CALERT",
            "ts": "20.1",
            "text": "Triggered https://acme.pagerduty.com/incidents/PXYZ9",
            "bot_profile": {"name": "PagerDuty"},
        }
        asyncio.run(self.router.handle_message(event))
        self.assertEqual([("20.1", "CALERT", "PXYZ9")], self.alerts.started)

    def test_other_top_level_messages_are_ignored(self) -> None:
        asyncio.run(self.router.handle_message({"channel": "CALERT", "ts": "20.1", "user": OWNER, "text": "hi"}))
        self.assertEqual([], self.alerts.started)

    def test_owner_reply_in_active_thread_is_feedback(self) -> None:
        self.alerts.active.add("20.1")

        async def scenario():
            for user, thread in ((OWNER, "20.1"), ("USOMEONE", "20.1"), (OWNER, "30.1")):
                await self.router.handle_message(
                    {"channel": "CALERT", "ts": "20.9", "thread_ts": thread, "user": user, "text": "why?"}
                )

        asyncio.run(scenario())
        self.assertEqual([("20.1", "why?")], self.alerts.feedbacks)


class DelayChannelTests(RouterTestCase):
    def alert(self, ts: str, text: str = AIRFLOW_ALERT) -> dict:
        return {"channel": "CDELAY", "ts": ts, "text": text}

    def test_threshold_starts_workflow_and_resets_counter(self) -> None:
        async def scenario():
            await self.router.handle_message(self.alert("40.1"))
            await self.router.handle_message(self.alert("40.2"))

        asyncio.run(scenario())
        self.assertEqual([("40.2", "CDELAY", "billing_daily")], self.delay_alerts.started)
        self.assertEqual(0, self.delay_counter.count("billing_daily"))

    def test_active_dag_is_not_started_twice(self) -> None:
        self.delay_alerts.active_targets.add("billing_daily")

        async def scenario():
            for ts in ("40.1", "40.2", "40.3"):
                await self.router.handle_message(self.alert(ts))

        asyncio.run(scenario())
        self.assertEqual([], self.delay_alerts.started)
        self.assertEqual(3, self.delay_counter.count("billing_daily"))

    def test_unmatched_tasks_are_not_counted(self) -> None:
        other = AIRFLOW_ALERT.replace("load_tax_rates_sensor", "ledger_export")

        async def scenario():
            for ts in ("40.1", "40.2"):
                await self.router.handle_message(self.alert(ts, other))
                await self.router.handle_message(self.alert(ts, "plain chatter"))

        asyncio.run(scenario())
        self.assertEqual(0, self.delay_counter.count("billing_daily"))
        self.assertEqual([], self.delay_alerts.started)

    def test_owner_thread_reply_is_feedback(self) -> None:
        self.delay_alerts.active.add("40.1")
        event = {"channel": "CDELAY", "ts": "40.5", "thread_ts": "40.1", "user": OWNER, "text": AIRFLOW_ALERT}
        asyncio.run(self.router.handle_message(event))
        self.assertEqual([("40.1", AIRFLOW_ALERT)], self.delay_alerts.feedbacks)
        self.assertEqual(0, self.delay_counter.count("billing_daily"))


class ThreadContextFormatTests(unittest.TestCase):
    def test_empty_context(self) -> None:
        self.assertEqual("", format_thread_context([]))
