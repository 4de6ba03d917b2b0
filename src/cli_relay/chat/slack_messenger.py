from __future__ import annotations

from loguru import logger
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_client import AsyncWebClient
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from cli_relay.chat.messenger import ThreadMessage

_MAX_ATTEMPTS = 5


def _is_rate_limited(ex: BaseException) -> bool:
    if not isinstance(ex, SlackApiError):
        return False
    response = ex.response
    return response.status_code == 429 or response.get("error") == "ratelimited"


def _on_retry(retry_state):
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    logger.warning(f"Slack rate limited. Retrying in {wait:.0f}s (attempt {attempt}/{_MAX_ATTEMPTS})...")


_slack_retry = retry(
    retry=retry_if_exception(_is_rate_limited),
    wait=wait_exponential(multiplier=1, min=1, max=30),
    stop=stop_after_attempt(_MAX_ATTEMPTS),
    before_sleep=_on_retry,
    reraise=True,
)


class SlackMessenger:
    def __init__(self, client: AsyncWebClient):
        self._client = client
        self._bot_user_id: str | None = None

    @property
    def client(self) -> AsyncWebClient:
        return self._client

    @_slack_retry
    async def post_message(self, channel_id: str, text: str, *, thread_id: str | None = None) -> str | None:
        kwargs = {"channel": channel_id, "text": text}
        if thread_id:
            kwargs["thread_ts"] = thread_id
        response = await self._client.chat_postMessage(**kwargs)
        return response.get("ts")

    @_slack_retry
    async def update_message(self, channel_id: str, message_id: str, text: str) -> None:
        await self._client.chat_update(channel=channel_id, ts=message_id, text=text)

    @_slack_retry
    async def fetch_thread_messages(
        self,
        channel_id: str,
        thread_id: str,
        since_marker: str | None = None,
    ) -> list[ThreadMessage]:
        kwargs = {"channel": channel_id, "ts": thread_id}
        if since_marker:
            kwargs["oldest"] = since_marker
        response = await self._client.conversations_replies(**kwargs)

        messages: list[ThreadMessage] = []
        for m in response.get("messages") or []:
            marker = m.get("ts") or ""
            # "oldest" is inclusive
            if since_marker and marker <= since_marker:
                continue
            messages.append(
                ThreadMessage(
                    author_id=m.get("user"),
                    text=m.get("text") or "",
                    marker=marker,
                    is_bot=bool(m.get("bot_id")),
                )
            )
        return messages

    async def bot_user_id(self) -> str | None:
        if self._bot_user_id is None:
            auth = await self._client.auth_test()
            self._bot_user_id = auth.get("user_id")
            logger.info(f"Connected as {auth.get('user', '')} ({self._bot_user_id})")
        return self._bot_user_id

    async def resolve_channel_ids(self, names: list[str]) -> dict[str, str]:
        """Map channel names (case-insensitive) to ids by paging through public channels."""
        wanted = {n.lower() for n in names}
        found: dict[str, str] = {}
        if not wanted:
            return found

        cursor: str | None = None
        while True:
            response = await self._list_channels(cursor)
            for channel in response.get("channels") or []:
                name = (channel.get("name") or "").lower()
                if name in wanted and channel.get("id"):
                    found[name] = channel["id"]
            cursor = (response.get("response_metadata") or {}).get("next_cursor") or None
            if not cursor:
                break

        for name in names:
            if name.lower() not in found:
                logger.warning(f"Channel #{name} not found")
        return found

    @_slack_retry
    async def _list_channels(self, cursor: str | None):
        kwargs = {"types": "public_channel", "limit": 200}
        if cursor:
            kwargs["cursor"] = cursor
        return await self._client.conversations_list(**kwargs)
