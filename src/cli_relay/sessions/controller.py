from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from loguru import logger

from cli_relay.chat.messenger import Messenger
from cli_relay.cli.launcher import CliLauncher, CliRun, CompactResult, TurnResult, wait_result
from cli_relay.logging_config import thread_logger
from cli_relay.memory.workflow_store import WorkflowRow, WorkflowStore
from cli_relay.sessions.formatting import (
    CONTEXT_MAX_TOKENS,
    CONTEXT_WARN_TOKENS,
    build_usage_footer,
    format_compact_outcome,
    format_elapsed,
    split_message,
)
from cli_relay.sessions.models import Session, SessionState
from cli_relay.sessions.registry import SessionRegistry
from cli_relay.sessions.supervision import SupervisedOutcome, log_task_failure, supervise_turn

THINKING_TEXT = "Thinking..."
BUSY_TEXT = "Still thinking on your previous message... hang tight."
NO_SESSION_TEXT = "No active CLI session. Start a new conversation with a top-level message."
COMPACT_BUSY_TEXT = "Can't compact while still processing. Wait for the current response."
COMPACT_NO_SESSION_TEXT = "No active session to compact."
COMPACTING_TEXT = "Compacting..."
EXIT_TEXT = "Session ended. Start a new conversation with a top-level message."
LAUNCH_FAILED_TEXT = "CLI failed to start. Use `!exit` and try again."
EMPTY_RESPONSE_TEXT = "No response from Claude CLI."
RUN_FAILED_TEXT = "CLI run failed unexpectedly. Use `!exit` and try again."

_MENTION_RE = re.compile(r"<@[A-Z0-9]+>")


def strip_mention(text: str) -> str:
    return _MENTION_RE.sub("", text).strip()


@dataclass
class ActiveSessionInfo:
    conversation_id: str
    channel_id: str
    resumption_token: str | None
    is_processing: bool
    has_live_process: bool


class DiscussionController:
    """Drives multi-turn CLI conversations, one resumable session per chat thread."""

    kind = "discuss"

    def __init__(
        self,
        *,
        registry: SessionRegistry[Session],
        launcher: CliLauncher,
        messenger: Messenger,
        store: WorkflowStore | None = None,
        turn_timeout_seconds: float = 600.0,
        heartbeat_interval_seconds: float = 30.0,
        max_message_chars: int = 39_000,
        context_max_tokens: int = CONTEXT_MAX_TOKENS,
        context_warn_tokens: int = CONTEXT_WARN_TOKENS,
    ):
        self._registry = registry
        self._launcher = launcher
        self._messenger = messenger
        self._store = store
        self._turn_timeout_seconds = turn_timeout_seconds
        self._heartbeat_interval_seconds = heartbeat_interval_seconds
        self._max_message_chars = max_message_chars
        self._context_max_tokens = context_max_tokens
        self._context_warn_tokens = context_warn_tokens

    @property
    def registry(self) -> SessionRegistry[Session]:
        return self._registry

    # -- inbound operations --

    async def start(self, conversation_id: str, channel_id: str, text: str) -> None:
        if conversation_id in self._registry:
            return
        prompt = strip_mention(text)
        if not prompt:
            return

        session = Session(conversation_id=conversation_id, channel_id=channel_id, kind=self.kind)
        session.begin_turn()
        self._registry.upsert(session)
        if self._store is not None:
            self._store.upsert_session(
                WorkflowRow(thread_ts=conversation_id, workflow_type=self.kind, channel_id=channel_id)
            )
        logger.info(f"[Discuss] New session in {channel_id}, thread {conversation_id}")

        placeholder_id = await self._post(session, THINKING_TEXT)
        run = await self._launcher.start_resumable(prompt)
        self._launch_turn(session, run, placeholder_id)

    async def reply(
        self,
        conversation_id: str,
        text: str,
        *,
        context_loader: Callable[[], Awaitable[str]] | None = None,
    ) -> bool:
        """Send a follow-up turn. Returns False when the reply was rejected or ignored.

        ``context_loader`` is only awaited once the turn is accepted; its text
        is prepended verbatim and never scanned for skills.
        """
        session = self._registry.get(conversation_id)
        if session is None:
            return False
        prompt = strip_mention(text)
        if not prompt:
            return False

        if session.is_processing:
            await self._post(session, BUSY_TEXT)
            return False
        if not session.resumption_token:
            await self._post(session, NO_SESSION_TEXT)
            return False

        session.begin_turn()
        logger.info(f"[Discuss] Follow-up in thread {conversation_id}")

        context = await context_loader() if context_loader is not None else ""
        placeholder_id = await self._post(session, THINKING_TEXT)
        run = await self._launcher.start_resumable(prompt, session.resumption_token, context=context)
        self._launch_turn(session, run, placeholder_id)
        return True

    async def compact(self, conversation_id: str) -> None:
        session = self._registry.get(conversation_id)
        if session is None:
            return
        if session.is_processing:
            await self._post(session, COMPACT_BUSY_TEXT)
            return
        if not session.resumption_token:
            await self._post(session, COMPACT_NO_SESSION_TEXT)
            return

        session.begin_compact()
        logger.info(f"[Discuss] Compacting session {session.resumption_token} for thread {conversation_id}")

        placeholder_id = await self._post(session, COMPACTING_TEXT)
        run = await self._launcher.start_compact(session.resumption_token)
        session.process = run
        try:
            result = await wait_result(run)
        except Exception as ex:
            logger.error(f"[Discuss] Compact run failed for thread {conversation_id}: {ex!r}")
            run.kill()
            result = CompactResult(success=False)
        finally:
            if session.state is SessionState.COMPACTING:
                session.finish()

        if self._registry.get(conversation_id) is not session:
            return
        message = format_compact_outcome(result, max_tokens=self._context_max_tokens)
        await self._deliver(session, placeholder_id, message)

    async def exit(self, conversation_id: str) -> None:
        session = self._registry.remove(conversation_id)
        if session is None:
            return
        self._release(session)
        if self._store is not None:
            self._store.delete_session(conversation_id)
        logger.info(f"[Discuss] Session ended for thread {conversation_id}")
        await self._post(session, EXIT_TEXT)

    def observe(self, conversation_id: str, marker: str) -> None:
        session = self._registry.get(conversation_id)
        if session is not None:
            session.last_observed_marker = marker

    def last_observed_marker(self, conversation_id: str) -> str | None:
        session = self._registry.get(conversation_id)
        return session.last_observed_marker if session is not None else None

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self._registry

    # -- operational surface --

    def list_active(self) -> list[ActiveSessionInfo]:
        return [
            ActiveSessionInfo(
                conversation_id=s.conversation_id,
                channel_id=s.channel_id,
                resumption_token=s.resumption_token,
                is_processing=s.is_processing,
                has_live_process=s.has_live_process,
            )
            for s in self._registry.list_by_kind(self.kind)
        ]

    def kill_one(self, conversation_id: str) -> bool:
        session = self._registry.remove(conversation_id)
        if session is None:
            return False
        self._release(session)
        if self._store is not None:
            self._store.delete_session(conversation_id)
        logger.info(f"[Discuss] Killed session for thread {conversation_id}")
        return True

    def kill_all(self) -> int:
        """Kill every live process and drop every session. Persisted rows are kept for restore."""
        killed = 0
        for session in self._registry.list_by_kind(self.kind):
            if self._release(session):
                killed += 1
            self._registry.remove(session.conversation_id)
        if killed > 0:
            logger.info(f"[Discuss] Killed {killed} active discussions")
        return killed

    def restore(self) -> int:
        if self._store is None:
            return 0
        rows = self._store.list_sessions_by_type(self.kind)
        for row in rows:
            if row.thread_ts in self._registry:
                continue
            self._registry.upsert(
                Session(
                    conversation_id=row.thread_ts,
                    channel_id=row.channel_id,
                    kind=self.kind,
                    resumption_token=row.cli_session_id,
                )
            )
        if rows:
            logger.info(f"[Discuss] Restored {len(rows)} sessions")
        return len(rows)

    # -- turn execution --

    def _launch_turn(self, session: Session, run: CliRun[TurnResult], placeholder_id: str | None) -> None:
        if self._registry.get(session.conversation_id) is not session:
            # Exited while the process was spawning.
            run.kill()
            return
        session.process = run
        session.turn_task = asyncio.create_task(self._run_turn(session, run, placeholder_id))
        session.turn_task.add_done_callback(log_task_failure("Discuss"))

    async def _run_turn(self, session: Session, run: CliRun[TurnResult], placeholder_id: str | None) -> None:
        async def heartbeat(elapsed: float) -> None:
            assert placeholder_id is not None
            await self._messenger.update_message(
                session.channel_id, placeholder_id, f"Thinking... ({format_elapsed(elapsed)})"
            )

        log = thread_logger(session.conversation_id)
        try:
            outcome = await supervise_turn(
                run,
                timeout_seconds=self._turn_timeout_seconds,
                heartbeat_interval_seconds=self._heartbeat_interval_seconds,
                on_heartbeat=heartbeat if placeholder_id is not None else None,
            )
        except Exception as ex:
            log.error(f"[Discuss] CLI run failed: {ex!r}")
            run.kill()
            outcome = None

        session.finish()
        session.turn_task = None
        if outcome is None:
            await self._deliver(session, placeholder_id, RUN_FAILED_TEXT)
            return

        result = outcome.result
        if result.resumption_token:
            session.resumption_token = result.resumption_token
            if self._store is not None:
                self._store.update_resumption_token(session.conversation_id, result.resumption_token)

        log.info(f"[Discuss] CLI done (exit: {result.exit_code}, session: {result.resumption_token or 'none'})")
        await self._deliver(session, placeholder_id, self.render_outcome(outcome))

    def render_outcome(self, outcome: SupervisedOutcome) -> str:
        result = outcome.result
        if outcome.timed_out:
            minutes = round(self._turn_timeout_seconds / 60)
            logger.info(f"[Discuss] CLI timed out after {minutes}m")
            return f"CLI session timed out after {minutes} minutes. Use `!exit` and try again."
        if result.launch_failed:
            return LAUNCH_FAILED_TEXT
        if result.exit_code != 0 and not result.response:
            return f"CLI exited with error (code: {result.exit_code}). Use `!exit` and try again."
        footer = build_usage_footer(
            result,
            max_tokens=self._context_max_tokens,
            warn_tokens=self._context_warn_tokens,
        )
        return (result.response or EMPTY_RESPONSE_TEXT) + footer

    # -- delivery --

    async def _deliver(self, session: Session, placeholder_id: str | None, text: str) -> None:
        chunks = split_message(text, self._max_message_chars)
        lead, rest = chunks[0], chunks[1:]
        if placeholder_id is not None:
            await self._update(session, placeholder_id, lead)
        else:
            await self._post(session, lead)
        for chunk in rest:
            await self._post(session, chunk)

    async def _post(self, session: Session, text: str) -> str | None:
        try:
            return await self._messenger.post_message(session.channel_id, text, thread_id=session.conversation_id)
        except Exception as ex:
            logger.error(f"[Discuss] Failed to post to thread {session.conversation_id}: {ex}")
            return None

    async def _update(self, session: Session, message_id: str, text: str) -> None:
        try:
            await self._messenger.update_message(session.channel_id, message_id, text)
        except Exception as ex:
            logger.error(f"[Discuss] Failed to update message {message_id}: {ex}")

    def _release(self, session: Session) -> bool:
        """Cancel the retained turn task and SIGTERM any live process."""
        task = session.turn_task
        if task is not None and not task.done():
            task.cancel()
        session.turn_task = None
        killed = False
        if session.process is not None:
            killed = session.process.kill()
            session.process = None
        return killed
