from __future__ import annotations

import codecs
import json
import math
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class TurnUpdate:
    """An ``assistant`` record: one model turn, possibly carrying usage."""

    content: list[dict[str, Any]] = field(default_factory=list)
    usage: dict[str, Any] | None = None

    def text_blocks(self) -> list[str]:
        return [
            block["text"]
            for block in self.content
            if block.get("type") == "text" and isinstance(block.get("text"), str)
        ]

    def tool_names(self) -> list[str]:
        return [
            block["name"]
            for block in self.content
            if block.get("type") == "tool_use" and isinstance(block.get("name"), str)
        ]


@dataclass(frozen=True)
class TerminalResult:
    """The final ``result`` record emitted when the CLI finishes."""

    result: Any = None
    cost_usd: float | None = None
    session_id: str | None = None
    num_turns: int | None = None

    def response_text(self) -> str | None:
        if isinstance(self.result, str):
            return self.result or None
        if isinstance(self.result, list):
            texts = [
                block["text"]
                for block in self.result
                if isinstance(block, dict)
                and block.get("type") == "text"
                and isinstance(block.get("text"), str)
            ]
            if texts:
                return "\n".join(texts)
        return None


@dataclass(frozen=True)
class UnknownRecord:
    type: str | None
    raw: dict[str, Any]


StreamRecord = TurnUpdate | TerminalResult | UnknownRecord


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    # json.loads accepts Infinity and NaN
    if isinstance(value, float) and math.isfinite(value):
        return value
    return None


def decode_record(obj: dict[str, Any]) -> StreamRecord:
    record_type = obj.get("type")
    if record_type == "assistant":
        message = obj.get("message")
        if not isinstance(message, dict):
            return TurnUpdate()
        content = message.get("content")
        usage = message.get("usage")
        return TurnUpdate(
            content=[b for b in content if isinstance(b, dict)] if isinstance(content, list) else [],
            usage=usage if isinstance(usage, dict) else None,
        )
    if record_type == "result":
        session_id = obj.get("session_id")
        num_turns = _number(obj.get("num_turns"))
        return TerminalResult(
            result=obj.get("result"),
            cost_usd=_number(obj.get("total_cost_usd")),
            session_id=session_id if isinstance(session_id, str) and session_id else None,
            num_turns=int(num_turns) if num_turns is not None else None,
        )
    return UnknownRecord(type=record_type if isinstance(record_type, str) else None, raw=obj)


class StreamParser:
    """Incremental newline-delimited JSON decoder.

    Chunks may split lines (and UTF-8 sequences) anywhere. Only the trailing
    unterminated line is buffered between calls. Lines that are not JSON
    objects are dropped: the CLI interleaves plain diagnostics with records.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, chunk: bytes | str) -> list[dict[str, Any]]:
        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        self._pending += text
        lines = self._pending.split("\n")
        self._pending = lines.pop()
        return [obj for obj in (self._parse_line(line) for line in lines) if obj is not None]

    def flush(self) -> list[dict[str, Any]]:
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        obj = self._parse_line(tail)
        return [obj] if obj is not None else []

    @staticmethod
    def _parse_line(line: str) -> dict[str, Any] | None:
        if not line.strip():
            return None
        try:
            obj = json.loads(line)
        except json.JSONDecodeError:
            return None
        return obj if isinstance(obj, dict) else None
