"""Per-channel registry of in-flight worker processes."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


class WorkerBusyError(RuntimeError):
    """Raised when a channel already has a live worker process."""


@dataclass(slots=True)
class ActiveRun:
    channel: str
    process: Any
    process_group: int | None = None
    aborted: bool = False
    done: asyncio.Event = field(default_factory=asyncio.Event)


class ActiveRunRegistry:
    """Holds at most one :class:`ActiveRun` per channel.

    An abort requested while a channel is busy but before its process has been
    spawned is remembered and applied at registration time.
    """

    def __init__(self) -> None:
        self._runs: dict[str, ActiveRun] = {}
        self._pending_aborts: set[str] = set()

    def __contains__(self, channel: str) -> bool:
        return channel in self._runs

    def get(self, channel: str) -> ActiveRun | None:
        return self._runs.get(channel)

    def channels(self) -> list[str]:
        return list(self._runs)

    def register(self, channel: str, process: Any, *, process_group: int | None = None) -> ActiveRun:
        if channel in self._runs:
            raise WorkerBusyError(f"Channel '{channel}' already has an active worker run")
        run = ActiveRun(channel=channel, process=process, process_group=process_group)
        self._runs[channel] = run
        if channel in self._pending_aborts:
            self._pending_aborts.discard(channel)
            self._interrupt(run)
        return run

    def release(self, channel: str, run: ActiveRun) -> None:
        if self._runs.get(channel) is run:
            del self._runs[channel]
        run.done.set()

    def abort(self, channel: str) -> bool:
        """Request cooperative cancellation; returns True only when a new signal was issued."""

        run = self._runs.get(channel)
        if run is None:
            if channel in self._pending_aborts:
                return False
            self._pending_aborts.add(channel)
            return True
        if run.aborted:
            return False
        self._interrupt(run)
        return True

    def consume_pending_abort(self, channel: str) -> bool:
        if channel in self._pending_aborts:
            self._pending_aborts.discard(channel)
            return True
        return False

    def clear_pending_abort(self, channel: str) -> None:
        self._pending_aborts.discard(channel)

    async def wait_idle(self, channel: str, timeout: float) -> bool:
        """Wait until the channel's current run exits; False if it is still alive after ``timeout``."""

        run = self._runs.get(channel)
        if run is None:
            return True
        try:
            await asyncio.wait_for(run.done.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    @staticmethod
    def _interrupt(run: ActiveRun) -> None:
        run.aborted = True
        try:
            if run.process_group is not None:
                os.killpg(run.process_group, signal.SIGINT)
            else:
                run.process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            pass
        logger.info("Interrupt sent to worker", extra={"channel": run.channel})


__all__ = ["ActiveRun", "ActiveRunRegistry", "WorkerBusyError"]
