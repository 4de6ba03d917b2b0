from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum

from cli_relay.cli.launcher import CliRun


class SessionState(Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    COMPACTING = "compacting"


class InvalidTransitionError(RuntimeError):
    pass


@dataclass
class Session:
    conversation_id: str
    channel_id: str
    kind: str = "discuss"
    resumption_token: str | None = None
    process: CliRun | None = None
    state: SessionState = SessionState.IDLE
    last_observed_marker: str | None = None
    turn_task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def is_processing(self) -> bool:
        return self.state is not SessionState.IDLE

    @property
    def has_live_process(self) -> bool:
        return self.process is not None and self.process.is_alive

    def begin_turn(self) -> None:
        self._transition(SessionState.IDLE, SessionState.PROCESSING)

    def begin_compact(self) -> None:
        self._transition(SessionState.IDLE, SessionState.COMPACTING)

    def finish(self) -> None:
        if self.state is SessionState.IDLE:
            raise InvalidTransitionError(f"Session {self.conversation_id} is not busy")
        self.state = SessionState.IDLE
        self.process = None

    def _transition(self, expected: SessionState, target: SessionState) -> None:
        if self.state is not expected:
            raise InvalidTransitionError(
                f"Session {self.conversation_id}: cannot go {self.state.value} -> {target.value}"
            )
        self.state = target


@dataclass
class WorkflowSession(Session):
    """A single-shot investigation thread with a feedback window instead of ``!exit``."""

    target: str | None = None
    feedback_task: asyncio.Task | None = field(default=None, repr=False)
    spawn_generation: int = 0
