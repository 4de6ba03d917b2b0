from __future__ import annotations

import asyncio
from dataclasses import dataclass

from loguru import logger

from cli_relay.chat.messenger import Messenger
from cli_relay.cli.launcher import CliLauncher, CliRun, TurnResult
from cli_relay.logging_config import thread_logger
from cli_relay.memory.workflow_store import WorkflowRow, WorkflowStore
from cli_relay.sessions.models import SessionState, WorkflowSession
from cli_relay.sessions.registry import SessionRegistry
from cli_relay.sessions.supervision import log_task_failure, supervise_turn


def build_permalink(workspace_domain: str, channel_id: str, message_ts: str) -> str:
    return f"https://{workspace_domain}/archives/{channel_id}/p{message_ts.replace('.', '', 1)}"


@dataclass
class WorkflowInfo:
    conversation_id: str
    channel_id: str
    target: str | None
    is_processing: bool
    has_live_process: bool


class FeedbackWorkflowController:
    """Single-shot skill investigations that stay open for owner feedback.

    Each run is a fresh single-turn CLI invocation. When it finishes a
    feedback window opens; an owner reply cancels the window and starts a
    follow-up run, and silence until the window closes cleans the workflow up.
    Subclasses set the persistence kind, the log tag, the completion notice,
    and how the skill arguments are phrased.
    """

    kind = ""
    log_tag = "Workflow"
    completion_text = "Investigation complete."
    target_column = "dag_name"

    def __init__(
        self,
        *,
        registry: SessionRegistry[WorkflowSession],
        launcher: CliLauncher,
        messenger: Messenger,
        skill: str,
        workspace_domain: str,
        store: WorkflowStore | None = None,
        feedback_timeout_seconds: float = 300.0,
        turn_timeout_seconds: float = 600.0,
    ):
        self._registry = registry
        self._launcher = launcher
        self._messenger = messenger
        self._skill = skill
        self._workspace_domain = workspace_domain
        self._store = store
        self._feedback_timeout_seconds = feedback_timeout_seconds
        self._turn_timeout_seconds = turn_timeout_seconds
        # Runs outside any session, such as cleanup teardowns.
        self._detached_runs: list[CliRun[TurnResult]] = []

    # -- prompts --

    def skill_args(self, link: str) -> str:
        return link

    def initial_prompt(self, link: str) -> str:
        return f'Invoke skill "{self._skill}" with args "{self.skill_args(link)}". Pre-approved to post report.'

    def followup_prompt(self, link: str, text: str) -> str:
        return f'Invoke skill "{self._skill}" with args "{self.skill_args(link)}". Follow-up question from owner: {text}'

    def permalink(self, session: WorkflowSession) -> str:
        return build_permalink(self._workspace_domain, session.channel_id, session.conversation_id)

    # -- lifecycle --

    async def start(self, conversation_id: str, channel_id: str, target: str | None = None) -> bool:
        if conversation_id in self._registry:
            return False

        session = WorkflowSession(
            conversation_id=conversation_id,
            channel_id=channel_id,
            kind=self.kind,
            target=target,
        )
        self._registry.upsert(session)
        if self._store is not None:
            self._store.upsert_session(self._build_row(session))
        logger.info(
            f"[{self.log_tag}] Started for thread {conversation_id}"
            + (f" (target: {target})" if target else "")
        )

        await self.on_start(session)
        if self._registry.get(conversation_id) is not session:
            return False
        await self._spawn(session, self.initial_prompt(self.permalink(session)))
        return True

    async def on_start(self, session: WorkflowSession) -> None:
        """Hook run after registration and before the first CLI run."""

    async def feedback(self, conversation_id: str, text: str) -> bool:
        session = self._registry.get(conversation_id)
        if session is None:
            return False

        logger.info(f"[{self.log_tag}] Owner feedback on thread {conversation_id}")
        self._clear_feedback_timer(session)
        self._release_process(session)
        if session.state is not SessionState.IDLE:
            session.finish()

        await self._spawn(session, self.followup_prompt(self.permalink(session), text))
        return True

    async def cleanup(self, conversation_id: str) -> None:
        session = self._registry.remove(conversation_id)
        if session is None:
            return

        self._clear_feedback_timer(session)
        self._release_process(session)
        try:
            await self.teardown(session)
        except Exception as ex:
            thread_logger(conversation_id).error(f"[{self.log_tag}] Teardown failed: {ex!r}")
        try:
            await self._messenger.post_message(
                session.channel_id, self.completion_text, thread_id=session.conversation_id
            )
        except Exception as ex:
            logger.error(f"[{self.log_tag}] Failed to post cleanup message: {ex}")

        if self._store is not None:
            self._store.delete_session(conversation_id)
        logger.info(f"[{self.log_tag}] Cleaned up workflow for thread {conversation_id}")

    async def teardown(self, session: WorkflowSession) -> None:
        """Hook run during cleanup, after the process is gone and before the completion notice."""

    # -- operational surface --

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self._registry

    def is_active_for_target(self, target: str) -> bool:
        return any(s.target == target for s in self._registry.list_by_kind(self.kind))

    def list_active(self) -> list[WorkflowInfo]:
        return [
            WorkflowInfo(
                conversation_id=s.conversation_id,
                channel_id=s.channel_id,
                target=s.target,
                is_processing=s.is_processing,
                has_live_process=s.has_live_process,
            )
            for s in self._registry.list_by_kind(self.kind)
        ]

    def kill_one(self, conversation_id: str) -> bool:
        session = self._registry.remove(conversation_id)
        if session is None:
            return False
        self._clear_feedback_timer(session)
        self._release_process(session)
        if self._store is not None:
            self._store.delete_session(conversation_id)
        logger.info(f"[{self.log_tag}] Killed workflow for thread {conversation_id} via API")
        return True

    def kill_all(self) -> int:
        killed = 0
        for session in self._registry.list_by_kind(self.kind):
            self._clear_feedback_timer(session)
            if self._release_process(session):
                killed += 1
            self._registry.remove(session.conversation_id)
        for run in list(self._detached_runs):
            if run.kill():
                killed += 1
        if killed > 0:
            logger.info(f"[{self.log_tag}] Killed {killed} active workflows")
        return killed

    def restore(self) -> int:
        """Reload persisted workflows and reopen their feedback windows. Needs a running loop."""
        if self._store is None:
            return 0
        rows = self._store.list_sessions_by_type(self.kind)
        for row in rows:
            if row.thread_ts in self._registry:
                continue
            session = WorkflowSession(
                conversation_id=row.thread_ts,
                channel_id=row.channel_id,
                kind=self.kind,
                resumption_token=row.cli_session_id,
                target=getattr(row, self.target_column),
            )
            self._registry.upsert(session)
            self._arm_feedback_timer(session)
        if rows:
            logger.info(f"[{self.log_tag}] Restored {len(rows)} workflows")
        return len(rows)

    # -- internals --

    def _build_row(self, session: WorkflowSession) -> WorkflowRow:
        row = WorkflowRow(thread_ts=session.conversation_id, workflow_type=self.kind, channel_id=session.channel_id)
        setattr(row, self.target_column, session.target)
        return row

    async def _spawn(self, session: WorkflowSession, prompt: str) -> None:
        session.spawn_generation += 1
        generation = session.spawn_generation
        session.begin_turn()
        run = await self._launcher.start_single_turn(prompt)
        if self._registry.get(session.conversation_id) is not session or session.spawn_generation != generation:
            # Removed, or superseded by a newer spawn while this one was starting.
            run.kill()
            return
        session.process = run
        session.turn_task = asyncio.create_task(self._await_turn(session, run))
        session.turn_task.add_done_callback(log_task_failure(self.log_tag))

    async def _await_turn(self, session: WorkflowSession, run: CliRun[TurnResult]) -> None:
        try:
            outcome = await supervise_turn(run, timeout_seconds=self._turn_timeout_seconds)
            status = f"exit: {outcome.result.exit_code}{', timed out' if outcome.timed_out else ''}"
        except Exception as ex:
            run.kill()
            status = f"failed: {ex!r}"
        session.finish()
        session.turn_task = None
        thread_logger(session.conversation_id).info(f"[{self.log_tag}] CLI finished ({status})")
        if self._registry.get(session.conversation_id) is session:
            self._arm_feedback_timer(session)

    async def run_to_completion(self, prompt: str) -> TurnResult:
        """Run a single-turn CLI invocation outside any session and wait for it.

        The run is tracked until it exits so ``kill_all`` can reach it.
        """
        run = await self._launcher.start_single_turn(prompt)
        self._detached_runs.append(run)
        try:
            outcome = await supervise_turn(run, timeout_seconds=self._turn_timeout_seconds)
        finally:
            self._detached_runs = [r for r in self._detached_runs if r is not run]
        return outcome.result

    def _arm_feedback_timer(self, session: WorkflowSession) -> None:
        self._clear_feedback_timer(session)
        session.feedback_task = asyncio.create_task(self._feedback_countdown(session))

    async def _feedback_countdown(self, session: WorkflowSession) -> None:
        await asyncio.sleep(self._feedback_timeout_seconds)
        session.feedback_task = None
        logger.info(f"[{self.log_tag}] Feedback timeout for thread {session.conversation_id}, cleaning up")
        await self.cleanup(session.conversation_id)

    def _clear_feedback_timer(self, session: WorkflowSession) -> None:
        task = session.feedback_task
        session.feedback_task = None
        # Cleanup triggered by the countdown itself must not cancel it.
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _release_process(self, session: WorkflowSession) -> bool:
        task = session.turn_task
        session.turn_task = None
        if task is not None and not task.done():
            task.cancel()
        killed = False
        if session.process is not None:
            killed = session.process.kill()
            session.process = None
        return killed
