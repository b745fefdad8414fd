"""Decoding of the worker's line-delimited event stream.

Each line is one JSON document. Only three shapes matter to the orchestrator:
assistant text, tool invocations and the final result. Everything else,
including lines that are not valid JSON, decodes to :class:`NoopEvent`.
"""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any, Union

WRITE_TOOLS = frozenset({"Write", "Edit", "MultiEdit", "NotebookEdit"})


@dataclass(frozen=True, slots=True)
class MessageEvent:
    text: str


@dataclass(frozen=True, slots=True)
class ToolUseEvent:
    name: str
    input: dict[str, Any] = field(default_factory=dict)

    @property
    def file_path(self) -> str | None:
        value = self.input.get("file_path") or self.input.get("notebook_path")
        return str(value) if value else None

    def describe(self) -> str:
        """Short human-readable status line for progress updates."""

        detail = ""
        if self.file_path:
            detail = PurePath(self.file_path).name
        elif "command" in self.input:
            lines = str(self.input["command"]).strip().splitlines()
            detail = lines[0][:60] if lines else ""
        elif "pattern" in self.input:
            detail = str(self.input["pattern"])[:60]
        elif "url" in self.input:
            detail = str(self.input["url"])[:60]
        elif "description" in self.input:
            detail = str(self.input["description"])[:60]
        return f"{self.name}: {detail}" if detail else self.name


@dataclass(frozen=True, slots=True)
class ResultEvent:
    text: str | None
    is_error: bool = False
    session_id: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)

    @property
    def units(self) -> int | None:
        tokens = [self.usage.get(key) for key in ("input_tokens", "output_tokens")]
        counted = [int(value) for value in tokens if isinstance(value, (int, float))]
        return sum(counted) if counted else None


@dataclass(frozen=True, slots=True)
class NoopEvent:
    raw: str = ""


StreamEvent = Union[MessageEvent, ToolUseEvent, ResultEvent, NoopEvent]


def decode_line(line: str) -> list[StreamEvent]:
    """Decode one stream line into zero or more events."""

    stripped = line.strip()
    if not stripped:
        return []
    try:
        document = json.loads(stripped)
    except json.JSONDecodeError:
        return [NoopEvent(stripped)]
    if not isinstance(document, dict):
        return [NoopEvent(stripped)]

    kind = document.get("type")
    if kind == "assistant":
        message = document.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            return [NoopEvent(stripped)]
        events: list[StreamEvent] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "text" and block.get("text"):
                events.append(MessageEvent(str(block["text"])))
            elif block.get("type") == "tool_use" and block.get("name"):
                tool_input = block.get("input")
                events.append(
                    ToolUseEvent(str(block["name"]), tool_input if isinstance(tool_input, dict) else {})
                )
        return events or [NoopEvent(stripped)]

    if kind == "result":
        result = document.get("result")
        usage = document.get("usage")
        return [
            ResultEvent(
                text=str(result) if result is not None else None,
                is_error=bool(document.get("is_error")) or document.get("subtype", "success") != "success",
                session_id=document.get("session_id"),
                usage=usage if isinstance(usage, dict) else {},
            )
        ]

    return [NoopEvent(stripped)]


class StreamDecoder:
    """Incremental decoder that holds partial lines across reads."""

    def __init__(self) -> None:
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: bytes | str) -> list[StreamEvent]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        *complete, self._buffer = self._buffer.split("\n")
        events: list[StreamEvent] = []
        for line in complete:
            events.extend(decode_line(line))
        return events

    def flush(self) -> list[StreamEvent]:
        remainder, self._buffer = self._buffer + self._decoder.decode(b"", final=True), ""
        return decode_line(remainder)


__all__ = [
    "MessageEvent",
    "NoopEvent",
    "ResultEvent",
    "StreamDecoder",
    "StreamEvent",
    "ToolUseEvent",
    "WRITE_TOOLS",
    "decode_line",
]
