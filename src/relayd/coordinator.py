"""Interrupt-and-merge handling for messages that arrive while a channel is busy."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from .worker import ActiveRunRegistry

logger = logging.getLogger(__name__)

Dispatch = Callable[[str, str], Awaitable[None]]
Acknowledge = Callable[[str], Awaitable[None]]


@dataclass(slots=True)
class QueueEntry:
    messages: list[str] = field(default_factory=list)
    timer: asyncio.Task[None] | None = None
    abort_sent: bool = False


class InterruptCoordinator:
    """Turns a burst of messages into one interrupted-then-restarted run.

    While a channel is busy each new message is queued, the running worker is
    interrupted once, and a debounce timer is restarted. When the timer fires
    the previous run is joined and the queued messages are dispatched together.
    """

    def __init__(
        self,
        registry: ActiveRunRegistry,
        dispatch: Dispatch,
        acknowledge: Acknowledge,
        *,
        debounce: float = 5.0,
        join_timeout: float = 15.0,
    ) -> None:
        self._registry = registry
        self._dispatch = dispatch
        self._acknowledge = acknowledge
        self.debounce = debounce
        self.join_timeout = join_timeout
        self._queues: dict[str, QueueEntry] = {}
        self._inflight: dict[str, asyncio.Task[None]] = {}

    def is_busy(self, channel: str) -> bool:
        return channel in self._registry or channel in self._inflight

    def has_queue(self, channel: str) -> bool:
        return channel in self._queues

    def queued(self, channel: str) -> list[str]:
        entry = self._queues.get(channel)
        return list(entry.messages) if entry else []

    async def submit(self, channel: str, text: str) -> None:
        if not self.is_busy(channel) and channel not in self._queues:
            self._start(channel, text)
            return

        entry = self._queues.get(channel)
        first = entry is None
        if entry is None:
            entry = self._queues[channel] = QueueEntry()
        entry.messages.append(text)
        if not entry.abort_sent:
            entry.abort_sent = True
            if self.is_busy(channel):
                self._registry.abort(channel)
        if entry.timer is not None:
            entry.timer.cancel()
        entry.timer = asyncio.create_task(self._fire_after(channel))
        logger.info("Message queued behind active run", extra={"channel": channel, "queued": len(entry.messages)})
        if first:
            try:
                await self._acknowledge(channel)
            except Exception as exc:
                logger.error("Queue acknowledgement failed", extra={"channel": channel, "error": str(exc)})

    async def _fire_after(self, channel: str) -> None:
        await asyncio.sleep(self.debounce)
        await self._flush(channel)

    async def _flush(self, channel: str) -> None:
        if not await self._join(channel):
            entry = self._queues.get(channel)
            if entry is not None:
                logger.warning("Previous run still alive, postponing queued messages", extra={"channel": channel})
                entry.timer = asyncio.create_task(self._fire_after(channel))
            return

        entry = self._queues.pop(channel, None)
        if entry is None:
            return
        self._registry.clear_pending_abort(channel)
        merged = "\n".join(entry.messages)
        logger.info("Dispatching merged messages", extra={"channel": channel, "count": len(entry.messages)})
        self._start(channel, merged)

    async def _join(self, channel: str) -> bool:
        inflight = self._inflight.get(channel)
        if inflight is not None:
            _, pending = await asyncio.wait([inflight], timeout=self.join_timeout)
            if pending:
                return False
        return await self._registry.wait_idle(channel, self.join_timeout)

    def _start(self, channel: str, text: str) -> asyncio.Task[None]:
        job = asyncio.create_task(self._guarded(channel, text), name=f"dispatch:{channel}")
        self._inflight[channel] = job

        def _forget(finished: asyncio.Task[None]) -> None:
            if self._inflight.get(channel) is finished:
                del self._inflight[channel]
                # an abort that arrived after the worker exited has nothing left to stop
                self._registry.clear_pending_abort(channel)

        job.add_done_callback(_forget)
        return job

    async def _guarded(self, channel: str, text: str) -> None:
        try:
            await self._dispatch(channel, text)
        except Exception:
            logger.exception("Dispatch failed", extra={"channel": channel})

    def cancel(self, channel: str) -> bool:
        """Drop queued messages and interrupt the channel's run; True if anything was stopped."""

        stopped = False
        entry = self._queues.pop(channel, None)
        if entry is not None:
            stopped = True
            if entry.timer is not None:
                entry.timer.cancel()
        if channel in self._registry:
            stopped = self._registry.abort(channel) or stopped
        elif channel in self._inflight:
            stopped = self._registry.abort(channel) or stopped
        return stopped

    async def wait_idle(self, channel: str) -> None:
        """Wait for queued and in-flight work on ``channel`` to settle."""

        while True:
            entry = self._queues.get(channel)
            if entry is not None and entry.timer is not None:
                await asyncio.wait([entry.timer])
                continue
            inflight = self._inflight.get(channel)
            if inflight is None:
                return
            await asyncio.wait([inflight])

    def close(self) -> None:
        for entry in self._queues.values():
            if entry.timer is not None:
                entry.timer.cancel()
        self._queues.clear()


__all__ = ["InterruptCoordinator", "QueueEntry"]
