"""Heartbeat scheduler for recurring tasks."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from ..storage import StateStore
from .models import DaemonConfig, TaskDefinition
from .runner import TaskOutcome, TaskRunner

logger = logging.getLogger(__name__)


class SchedulerError(RuntimeError):
    """Raised when a manual run cannot be started."""


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class HeartbeatScheduler:
    """Fire due tasks on a fixed tick without letting one task overlap itself."""

    def __init__(
        self,
        config: DaemonConfig,
        runner: TaskRunner,
        store: StateStore,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._runner = runner
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._next_run: dict[str, datetime] = {}
        self._inflight: dict[str, asyncio.Task[TaskOutcome]] = {}
        self._stopped = asyncio.Event()
        now = self._clock()
        for task in config.tasks:
            self._next_run[task.name] = self._initial_due(task, now)

    @property
    def config(self) -> DaemonConfig:
        return self._config

    def _initial_due(self, task: TaskDefinition, now: datetime) -> datetime:
        record = self._store.task_record(task.name)
        last_run = _parse_time(record.last_run if record else None)
        if last_run is None:
            return now + timedelta(seconds=self._config.tick_interval)
        elapsed = (now - last_run).total_seconds()
        return now + timedelta(seconds=max(0.0, task.interval - elapsed))

    def next_run(self, name: str) -> datetime | None:
        return self._next_run.get(name)

    def is_running(self, name: str) -> bool:
        return name in self._inflight

    def tick(self, now: datetime | None = None) -> list[str]:
        """Dispatch every enabled task that is due; returns the names started."""

        now = now or self._clock()
        started: list[str] = []
        for task in self._config.tasks:
            if not task.enabled or task.name in self._inflight:
                continue
            due = self._next_run.get(task.name)
            if due is None:
                due = self._next_run[task.name] = self._initial_due(task, now)
            if now < due:
                continue
            self._next_run[task.name] = now + timedelta(seconds=task.interval)
            self._start(task)
            started.append(task.name)
        if started:
            logger.info("Heartbeat dispatched tasks", extra={"tasks": started})
        return started

    def _start(self, task: TaskDefinition) -> asyncio.Task[TaskOutcome]:
        job = asyncio.create_task(self._runner.execute(task), name=f"task:{task.name}")
        self._inflight[task.name] = job
        job.add_done_callback(lambda _: self._inflight.pop(task.name, None))
        return job

    async def run_now(self, name: str) -> TaskOutcome:
        """Run ``name`` immediately, outside its cadence."""

        task = self._config.task(name)
        if task is None:
            available = ", ".join(t.name for t in self._config.tasks) or "none"
            raise SchedulerError(f"Unknown task '{name}'. Available: {available}")
        if task.name in self._inflight:
            raise SchedulerError(f"Task '{name}' is already running")
        logger.info("Manual task run", extra={"task": name})
        return await self._start(task)

    def reload(self, config: DaemonConfig) -> None:
        """Swap in a new task list, keeping cadence for tasks whose interval is unchanged."""

        now = self._clock()
        previous = {task.name: task for task in self._config.tasks}
        next_run: dict[str, datetime] = {}
        for task in config.tasks:
            old = previous.get(task.name)
            if old is not None and old.interval == task.interval and task.name in self._next_run:
                next_run[task.name] = self._next_run[task.name]
            else:
                next_run[task.name] = self._initial_due(task, now)
        self._config = config
        self._next_run = next_run
        logger.info(
            "Scheduler reloaded",
            extra={"tasks": len(config.tasks), "enabled": sum(1 for t in config.tasks if t.enabled)},
        )

    def status(self) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        for task in self._config.tasks:
            record = self._store.task_record(task.name)
            due = self._next_run.get(task.name)
            rows.append(
                {
                    "name": task.name,
                    "type": task.type,
                    "interval": task.interval,
                    "enabled": task.enabled,
                    "running": task.name in self._inflight,
                    "next_run": due.isoformat() if due and task.enabled else None,
                    "last_run": record.to_dict() if record else None,
                }
            )
        return rows

    def stop(self) -> None:
        self._stopped.set()

    async def run_forever(self) -> None:
        logger.info(
            "Heartbeat started",
            extra={"tick_interval": self._config.tick_interval, "tasks": len(self._config.tasks)},
        )
        while not self._stopped.is_set():
            try:
                await asyncio.wait_for(self._stopped.wait(), self._config.tick_interval)
            except asyncio.TimeoutError:
                self.tick()

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight task runs to finish."""

        pending = list(self._inflight.values())
        if pending:
            await asyncio.wait(pending, timeout=timeout)


__all__ = ["HeartbeatScheduler", "SchedulerError"]
