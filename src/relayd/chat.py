"""Conversational front door: chat commands and interrupt-aware worker turns."""

from __future__ import annotations

import asyncio
import logging
import shlex
from pathlib import Path
from typing import Awaitable, Callable

from .budget import BudgetLedger
from .channels import ChannelAdapter
from .checkpoints import CheckpointError, CheckpointManager
from .coordinator import InterruptCoordinator
from .profiles import ProfileLoadError, ProfileSelector
from .sessions import Session, SessionDirectory
from .tasks import HeartbeatScheduler, SchedulerError, SessionConfig
from .worker import RunError, WorkerBusyError, WorkerResult, WorkerRunner

logger = logging.getLogger(__name__)

MAX_ERROR_CHARS = 200
HELP_TEXT = "\n".join(
    [
        "/new [dir] [name] - start a fresh conversation",
        "/continue - continue the latest conversation",
        "/last - attach to the most recent conversation here",
        "/resume [query] - pick or attach to a conversation",
        "/cd <dir> - change the working directory",
        "/session - show the current binding",
        "/status - daemon status",
        "/tasks - scheduled tasks",
        "/run <task> - run a task now",
        "/budget - today's usage",
        "/reload - reload daemon.yaml",
        "/stop - interrupt the running turn",
        "/checkpoints - list checkpoints",
        "/undo [id] - roll back to a checkpoint",
        "/profile [name] - show or switch execution profile",
    ]
)

Reloader = Callable[[], Awaitable[str]]


class ChatService:
    """Routes inbound channel messages.

    Slash commands are answered directly. Everything else becomes a worker
    turn on the channel's bound conversation, dispatched through the
    :class:`InterruptCoordinator` so that messages arriving mid-run interrupt
    it and are merged into the next turn.
    """

    def __init__(
        self,
        worker: WorkerRunner,
        sessions: SessionDirectory,
        adapter: ChannelAdapter,
        ledger: BudgetLedger,
        profiles: ProfileSelector,
        *,
        checkpoints: CheckpointManager | None = None,
        scheduler: HeartbeatScheduler | None = None,
        reloader: Reloader | None = None,
        session_config: SessionConfig | None = None,
    ) -> None:
        self._worker = worker
        self._sessions = sessions
        self._adapter = adapter
        self._ledger = ledger
        self._profiles = profiles
        self._checkpoints = checkpoints
        self.scheduler = scheduler
        self.reloader = reloader
        self._config = session_config or SessionConfig()
        self._background: set[asyncio.Task] = set()
        self.coordinator = InterruptCoordinator(
            worker.registry,
            self.ask,
            self._acknowledge,
            debounce=self._config.debounce,
            join_timeout=self._config.join_timeout,
        )
        self._commands: dict[str, Callable[[str, list[str]], Awaitable[None]]] = {
            "new": self._cmd_new,
            "continue": self._cmd_continue,
            "last": self._cmd_last,
            "resume": self._cmd_resume,
            "cd": self._cmd_cd,
            "session": self._cmd_session,
            "status": self._cmd_status,
            "tasks": self._cmd_tasks,
            "run": self._cmd_run,
            "budget": self._cmd_budget,
            "reload": self._cmd_reload,
            "stop": self._cmd_stop,
            "checkpoints": self._cmd_checkpoints,
            "undo": self._cmd_undo,
            "profile": self._cmd_profile,
            "help": self._cmd_help,
        }

    def configure(self, session_config: SessionConfig) -> None:
        self._config = session_config
        self.coordinator.debounce = session_config.debounce
        self.coordinator.join_timeout = session_config.join_timeout

    async def handle_message(self, channel: str, text: str) -> None:
        text = text.strip()
        if not text:
            return
        if text.startswith("/"):
            head, _, rest = text[1:].partition(" ")
            handler = self._commands.get(head.lower())
            if handler is not None:
                try:
                    args = shlex.split(rest)
                except ValueError:
                    args = rest.split()
                logger.info("Chat command", extra={"channel": channel, "command": head.lower()})
                await handler(channel, args)
                return
        await self.coordinator.submit(channel, text)

    async def _reply(self, channel: str, text: str) -> None:
        await self._adapter.send_message(channel, text)

    async def _acknowledge(self, channel: str) -> None:
        await self._reply(channel, "Got it, interrupting the current run. Send more within a few seconds to merge.")

    # worker turns --------------------------------------------------------

    def _current_session(self, channel: str) -> Session:
        session = self._sessions.get(channel)
        if session is None:
            cwd = Path(self._config.default_cwd).expanduser() if self._config.default_cwd else None
            session = self._sessions.create(channel, cwd)
        return session

    async def _run(self, channel: str, session: Session, text: str, status: str) -> WorkerResult:
        async def _progress(update: str) -> None:
            await self._adapter.edit_status(channel, status, update)

        return await self._worker.run(
            text,
            cwd=session.cwd,
            channel=channel,
            session_id=session.session_id,
            resume=session.started,
            model=self._config.model,
            allowed_tools=self._config.allowed_tools,
            timeout=self._config.timeout,
            on_progress=_progress,
        )

    async def ask(self, channel: str, text: str) -> WorkerResult | None:
        """Run one conversational turn and deliver its outcome to ``channel``."""

        session = self._current_session(channel)
        status = await self._adapter.send_status(channel, "Working...")
        if self._config.checkpoints and self._checkpoints is not None:
            await self._checkpoints.snapshot(session.cwd)

        try:
            result = await self._run(channel, session, text, status)
            if result.error is RunError.SESSION_EXPIRED:
                logger.warning(
                    "Conversation expired, starting a new one",
                    extra={"channel": channel, "session_id": session.session_id},
                )
                session = self._sessions.create(channel, session.cwd, session.name)
                result = await self._run(channel, session, text, status)
        except WorkerBusyError:
            await self._adapter.edit_status(channel, status, "Busy")
            await self._reply(channel, "Still working on the previous message. Use /stop to interrupt.")
            return None

        if result.profile_fallback:
            await self._reply(
                channel,
                f"Profile fallback: reverted to '{self._profiles.active_name}' after repeated failures.",
            )

        if result.ok:
            first_turn = not session.started
            self._sessions.mark_started(channel)
            if first_turn and session.name:
                self._sessions.name_conversation(session.session_id, session.name)
            await self._adapter.edit_status(channel, status, "Done")
            body = result.output or "(no output)"
            if result.files:
                body += "\n\nFiles changed:\n" + "\n".join(f"- {path}" for path in result.files)
            await self._reply(channel, body)
            return result

        if result.error is RunError.STOPPED_BY_CALLER:
            if self.coordinator.has_queue(channel):
                await self._adapter.edit_status(channel, status, "Interrupted")
                return result
            await self._adapter.edit_status(channel, status, "Stopped")
            await self._reply(channel, "Stopped.")
            return result

        await self._adapter.edit_status(channel, status, "Failed")
        await self._reply(channel, self._describe_error(result))
        return result

    @staticmethod
    def _describe_error(result: WorkerResult) -> str:
        if result.error is RunError.BUDGET_EXCEEDED:
            return "Daily budget exhausted, try again tomorrow."
        if result.error is RunError.TIMEOUT:
            partial = f"\n\nPartial output:\n{result.output[:MAX_ERROR_CHARS]}" if result.output else ""
            return f"Timed out. {result.detail}{partial}"
        detail = result.detail[:MAX_ERROR_CHARS] if result.detail else ""
        code = result.error.value if result.error else "error"
        return f"Error ({code}): {detail}".rstrip(": ")

    # commands ------------------------------------------------------------

    async def _cmd_help(self, channel: str, args: list[str]) -> None:
        await self._reply(channel, HELP_TEXT)

    def _recent_directories(self, limit: int = 8) -> list[str]:
        directories: list[str] = []
        for info in self._sessions.list_conversations(limit=None):
            path = info.project_path
            if path and path not in directories and Path(path).is_dir():
                directories.append(path)
                if len(directories) >= limit:
                    break
        return directories

    async def _cmd_new(self, channel: str, args: list[str]) -> None:
        cwd: str | None = None
        if not args:
            directories = self._recent_directories()
            if directories:
                await self._adapter.send_buttons(
                    channel, "Start a new conversation in:", [f"/new {shlex.quote(path)}" for path in directories]
                )
                return
        if args and args[0].startswith(("/", "~", ".")):
            cwd = str(Path(args.pop(0)).expanduser())
            if not Path(cwd).is_dir():
                await self._reply(channel, f"No such directory: {cwd}")
                return
        current = self._sessions.get(channel)
        cwd = cwd or (current.cwd if current else None)
        name = " ".join(args) or None
        session = self._sessions.create(channel, cwd, name)
        label = f" '{name}'" if name else ""
        await self._reply(channel, f"New session{label} #{session.session_id[:8]} in {session.cwd}")

    async def _cmd_continue(self, channel: str, args: list[str]) -> None:
        session = self._sessions.continue_latest(channel)
        await self._reply(channel, f"Continuing the latest conversation in {session.cwd}")

    async def _cmd_last(self, channel: str, args: list[str]) -> None:
        current = self._sessions.get(channel)
        session = self._sessions.attach_most_recent(channel, current.cwd if current else None)
        await self._reply(channel, f"Attached to #{session.session_id[:8]} in {session.cwd}")

    async def _cmd_resume(self, channel: str, args: list[str]) -> None:
        if args:
            session = self._sessions.attach(channel, " ".join(args))
            name = f" '{session.name}'" if session.name else ""
            await self._reply(channel, f"Resumed{name} #{session.session_id[:8]} in {session.cwd}")
            return
        conversations = self._sessions.list_conversations(limit=10)
        if not conversations:
            await self._reply(channel, "No conversations found.")
            return
        lines = [
            f"{number}. {info.label(self._sessions.session_name(info.session_id) or None)}"
            for number, info in enumerate(conversations, start=1)
        ]
        options = [f"/resume {info.session_id}" for info in conversations]
        await self._adapter.send_buttons(channel, "Pick a conversation:\n" + "\n".join(lines), options)

    async def _cmd_cd(self, channel: str, args: list[str]) -> None:
        if not args:
            directories = self._recent_directories()
            if not directories:
                await self._reply(channel, "Usage: /cd <dir>")
                return
            options = [f"/cd {shlex.quote(path)}" for path in directories]
            await self._adapter.send_buttons(channel, "Switch to:", options)
            return
        target = Path(" ".join(args)).expanduser()
        if not target.is_absolute():
            current = self._sessions.get(channel)
            base = Path(current.cwd) if current else Path(self._sessions.default_cwd)
            target = base / target
        target = target.resolve()
        if not target.is_dir():
            await self._reply(channel, f"No such directory: {target}")
            return
        session = self._sessions.switch_directory(channel, target)
        await self._reply(channel, f"Working directory: {session.cwd}")

    async def _cmd_session(self, channel: str, args: list[str]) -> None:
        session = self._sessions.get(channel)
        if session is None:
            await self._reply(channel, "No session yet. Send a message or use /new.")
            return
        name = session.name or self._sessions.session_name(session.session_id)
        lines = [
            f"Session: #{session.session_id[:8]}" + (f" '{name}'" if name else ""),
            f"Directory: {session.cwd}",
            f"Started: {'yes' if session.started else 'no'}",
        ]
        await self._reply(channel, "\n".join(lines))

    async def _cmd_status(self, channel: str, args: list[str]) -> None:
        budget = self._ledger.summary()
        lines = [
            f"Busy: {'yes' if self.coordinator.is_busy(channel) else 'no'}",
            f"Active runs: {len(self._worker.registry.channels())}",
            f"Profile: {self._profiles.active_name}",
            f"Budget: {budget['used']}/{budget['limit']} ({budget['level']})",
        ]
        if self.scheduler is not None:
            rows = self.scheduler.status()
            running = sum(1 for row in rows if row["running"])
            lines.append(f"Tasks: {len(rows)} configured, {running} running")
        await self._reply(channel, "\n".join(lines))

    async def _cmd_tasks(self, channel: str, args: list[str]) -> None:
        if self.scheduler is None or not self.scheduler.status():
            await self._reply(channel, "No tasks configured.")
            return
        lines = []
        for row in self.scheduler.status():
            last = row["last_run"] or {}
            state = "running" if row["running"] else (last.get("status") or "never run")
            flag = "" if row["enabled"] else " (disabled)"
            lines.append(f"{row['name']}{flag}: every {row['interval']}s, {state}")
        await self._reply(channel, "\n".join(lines))

    async def _cmd_run(self, channel: str, args: list[str]) -> None:
        if not args:
            await self._reply(channel, "Usage: /run <task>")
            return
        if self.scheduler is None:
            await self._reply(channel, "Scheduler not running.")
            return
        name = args[0]

        async def _run_and_report() -> None:
            try:
                outcome = await self.scheduler.run_now(name)
            except SchedulerError as exc:
                await self._reply(channel, str(exc))
                return
            await self._reply(channel, outcome.message())

        await self._reply(channel, f"Running {name}...")
        job = asyncio.create_task(_run_and_report())
        self._background.add(job)
        job.add_done_callback(self._background.discard)

    async def _cmd_budget(self, channel: str, args: list[str]) -> None:
        summary = self._ledger.summary()
        await self._reply(
            channel,
            f"Budget {summary['date']}: {summary['used']}/{summary['limit']} units ({summary['level']})",
        )

    async def _cmd_reload(self, channel: str, args: list[str]) -> None:
        if self.reloader is None:
            await self._reply(channel, "Reload not available.")
            return
        await self._reply(channel, await self.reloader())

    async def _cmd_stop(self, channel: str, args: list[str]) -> None:
        if not self.coordinator.is_busy(channel) and not self.coordinator.has_queue(channel):
            await self._reply(channel, "Nothing is running.")
            return
        self.coordinator.cancel(channel)
        await self._reply(channel, "Stopping...")

    async def _cmd_checkpoints(self, channel: str, args: list[str]) -> None:
        session = self._sessions.get(channel)
        if self._checkpoints is None or session is None:
            await self._reply(channel, "No checkpoints.")
            return
        checkpoints = await self._checkpoints.list_checkpoints(session.cwd, limit=10)
        if not checkpoints:
            await self._reply(channel, "No checkpoints.")
            return
        lines = [f"{checkpoint.id[:8]} {checkpoint.label}" for checkpoint in checkpoints]
        await self._reply(channel, "\n".join(lines))

    async def _cmd_undo(self, channel: str, args: list[str]) -> None:
        session = self._sessions.get(channel)
        if self._checkpoints is None or session is None:
            await self._reply(channel, "Nothing to undo.")
            return
        if self.coordinator.is_busy(channel):
            await self._reply(channel, "A run is in progress. Use /stop first.")
            return
        if args:
            target = args[0]
        else:
            checkpoints = await self._checkpoints.list_checkpoints(session.cwd, limit=1)
            if not checkpoints:
                await self._reply(channel, "Nothing to undo.")
                return
            target = checkpoints[0].id
        try:
            result = await self._checkpoints.rollback(
                session.cwd, target, transcript=self._sessions.find_transcript(session.session_id)
            )
        except CheckpointError as exc:
            await self._reply(channel, f"Undo failed: {exc}")
            return
        note = f", {result.removed_entries} transcript entries removed" if result.transcript_truncated else ""
        await self._reply(channel, f"Rolled back to {result.checkpoint.id[:8]}{note}")

    async def _cmd_profile(self, channel: str, args: list[str]) -> None:
        if not args:
            active = self._profiles.active_name
            try:
                available = self._profiles.available()
            except ProfileLoadError as exc:
                await self._reply(channel, str(exc))
                return
            lines = [
                f"{'*' if profile_id == active else ' '} {profile_id} - {profile.label}"
                for profile_id, profile in sorted(available.items())
            ]
            await self._reply(channel, "\n".join(lines))
            return
        try:
            profile = self._profiles.set_active(args[0])
        except ProfileLoadError as exc:
            await self._reply(channel, str(exc))
            return
        await self._reply(channel, f"Profile: {profile.id}")

    async def close(self) -> None:
        self.coordinator.close()
        for job in list(self._background):
            job.cancel()


__all__ = ["ChatService", "HELP_TEXT"]
