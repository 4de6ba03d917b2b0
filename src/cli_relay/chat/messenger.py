from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass
class ThreadMessage:
    author_id: str | None
    text: str
    marker: str
    is_bot: bool = False


class Messenger(Protocol):
    """Outbound chat operations the controllers depend on."""

    async def post_message(self, channel_id: str, text: str, *, thread_id: str | None = None) -> str | None:
        ...

    async def update_message(self, channel_id: str, message_id: str, text: str) -> None:
        ...

    async def fetch_thread_messages(
        self,
        channel_id: str,
        thread_id: str,
        since_marker: str | None = None,
    ) -> list[ThreadMessage]:
        ...
