from __future__ import annotations

from collections.abc import Iterator
from typing import Generic, TypeVar

from cli_relay.sessions.models import Session

S = TypeVar("S", bound=Session)


class SessionRegistry(Generic[S]):
    """In-memory table of live conversations keyed by conversation id.

    Only touched from the event loop between awaits, so no locking.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, S] = {}

    def get(self, conversation_id: str) -> S | None:
        return self._sessions.get(conversation_id)

    def upsert(self, session: S) -> None:
        self._sessions[session.conversation_id] = session

    def remove(self, conversation_id: str) -> S | None:
        return self._sessions.pop(conversation_id, None)

    def list_by_kind(self, kind: str) -> list[S]:
        return [s for s in self._sessions.values() if s.kind == kind]

    def values(self) -> list[S]:
        return list(self._sessions.values())

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[S]:
        return iter(list(self._sessions.values()))
