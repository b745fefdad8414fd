"""Channel adapter contracts and the in-process outbox adapter."""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class ChannelAdapter(Protocol):
    async def send_message(self, channel: str, text: str) -> None: ...

    async def send_status(self, channel: str, text: str) -> str: ...

    async def edit_status(self, channel: str, handle: str, text: str) -> None: ...

    async def send_buttons(self, channel: str, text: str, options: Sequence[str]) -> None: ...


@runtime_checkable
class Notifier(Protocol):
    async def notify(self, text: str, context: dict[str, Any] | None = None) -> None: ...


@dataclass(slots=True)
class OutboxMessage:
    id: int
    channel: str
    kind: str
    text: str
    options: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "channel": self.channel,
            "kind": self.kind,
            "text": self.text,
            "created_at": self.created_at,
        }
        if self.options:
            payload["options"] = list(self.options)
        return payload


class OutboxAdapter:
    """Records outgoing messages per channel so a caller can fetch them later.

    Status messages are kept in place and edited, mirroring how chat clients
    update a single "working..." bubble.
    """

    def __init__(self, *, limit: int = 200) -> None:
        self._limit = limit
        self._ids = itertools.count(1)
        self._boxes: dict[str, list[OutboxMessage]] = {}
        self._status: dict[str, OutboxMessage] = {}

    def _append(self, channel: str, kind: str, text: str, options: Sequence[str] = ()) -> OutboxMessage:
        message = OutboxMessage(id=next(self._ids), channel=channel, kind=kind, text=text, options=list(options))
        box = self._boxes.setdefault(channel, [])
        box.append(message)
        if len(box) > self._limit:
            del box[: len(box) - self._limit]
        return message

    async def send_message(self, channel: str, text: str) -> None:
        self._append(channel, "message", text)

    async def send_status(self, channel: str, text: str) -> str:
        message = self._append(channel, "status", text)
        handle = str(message.id)
        self._status[handle] = message
        return handle

    async def edit_status(self, channel: str, handle: str, text: str) -> None:
        message = self._status.get(handle)
        if message is None or message.channel != channel:
            logger.debug("Unknown status handle", extra={"channel": channel, "handle": handle})
            return
        message.text = text

    async def send_buttons(self, channel: str, text: str, options: Sequence[str]) -> None:
        self._append(channel, "buttons", text, options)

    def messages(self, channel: str, *, after: int = 0) -> list[OutboxMessage]:
        return [message for message in self._boxes.get(channel, []) if message.id > after]

    def drain(self, channel: str) -> list[OutboxMessage]:
        box = self._boxes.pop(channel, [])
        for message in box:
            self._status.pop(str(message.id), None)
        return box

    def channels(self) -> list[str]:
        return list(self._boxes)


class ChannelNotifier:
    """Fan notifications out to a fixed list of channels through one adapter."""

    def __init__(self, adapter: ChannelAdapter, channels: Sequence[str]) -> None:
        self._adapter = adapter
        self._channels = list(channels)

    @property
    def channels(self) -> list[str]:
        return list(self._channels)

    async def notify(self, text: str, context: dict[str, Any] | None = None) -> None:
        if not self._channels:
            logger.info("Notification dropped, no notify channels", extra={"context": context or {}})
            return
        for channel in self._channels:
            try:
                await self._adapter.send_message(channel, text)
            except Exception as exc:
                logger.error(
                    "Notification delivery failed",
                    extra={"channel": channel, "error": str(exc), "context": context or {}},
                )


__all__ = ["ChannelAdapter", "ChannelNotifier", "Notifier", "OutboxAdapter", "OutboxMessage"]
