"""Tool registration for the relayd control surface."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from fastmcp import Context, FastMCP

from ..checkpoints import CheckpointError
from ..context import OrchestratorContext
from ..profiles import ProfileLoadError
from ..tasks import SchedulerError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    send_message: Any
    fetch_messages: Any
    run_task: Any
    list_tasks: Any
    budget_status: Any
    new_session: Any
    list_conversations: Any
    list_checkpoints: Any
    rollback: Any
    set_profile: Any


def register_tools(server: FastMCP, *, orchestrator: OrchestratorContext) -> ToolHandles:
    """Register relayd's MCP tools on the server."""

    outbox = orchestrator.outbox

    def _session_cwd(channel: str) -> str:
        session = orchestrator.sessions.get(channel)
        if session is None:
            raise ValueError(f"Channel '{channel}' has no session")
        return session.cwd

    async def _send_message(
        channel: str,
        text: str,
        wait: bool = True,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Deliver a chat message as if it arrived on ``channel``."""

        before = outbox.messages(channel)
        last_id = before[-1].id if before else 0
        await orchestrator.chat.handle_message(channel, text)
        if wait:
            await orchestrator.chat.coordinator.wait_idle(channel)
        _emit_log(context, "info", "Message delivered", extra={"channel": channel, "wait": wait})
        return {
            "channel": channel,
            "busy": orchestrator.chat.coordinator.is_busy(channel),
            "queued": orchestrator.chat.coordinator.has_queue(channel),
            "messages": [message.to_dict() for message in outbox.messages(channel, after=last_id)],
        }

    def _fetch_messages(
        channel: str,
        after: int = 0,
        drain: bool = False,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """Return outgoing messages recorded for ``channel``."""

        messages = outbox.drain(channel) if drain else outbox.messages(channel)
        return [message.to_dict() for message in messages if message.id > after]

    async def _run_task(name: str, context: Context | None = None) -> dict[str, Any]:
        try:
            outcome = await orchestrator.scheduler.run_now(name)
        except SchedulerError as exc:
            raise ValueError(str(exc)) from exc
        _emit_log(context, "info", "Task run on demand", extra={"task": name, "success": outcome.success})
        return {
            "name": outcome.name,
            "success": outcome.success,
            "skipped": outcome.skipped,
            "output": outcome.output[:2000],
            "error": outcome.error,
            "units": outcome.units,
            "record": outcome.record.to_dict(),
            "warnings": outcome.warnings,
        }

    def _list_tasks(context: Context | None = None) -> list[dict[str, Any]]:
        return orchestrator.scheduler.status()

    def _budget_status(context: Context | None = None) -> dict[str, Any]:
        return orchestrator.ledger.summary()

    def _new_session(
        channel: str,
        cwd: str | None = None,
        name: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        if cwd is not None and not Path(cwd).expanduser().is_dir():
            raise ValueError(f"No such directory: {cwd}")
        session = orchestrator.sessions.create(channel, Path(cwd).expanduser() if cwd else None, name)
        return {"channel": channel, **session.to_dict()}

    def _list_conversations(
        cwd: str | None = None,
        limit: int = 10,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        conversations = orchestrator.sessions.list_conversations(cwd=cwd, limit=limit)
        return [
            {
                "session_id": info.session_id,
                "label": info.label(orchestrator.sessions.session_name(info.session_id) or None),
                "project_path": info.project_path,
                "mtime": info.mtime,
                "message_count": info.message_count,
            }
            for info in conversations
        ]

    async def _list_checkpoints(channel: str, context: Context | None = None) -> list[dict[str, Any]]:
        checkpoints = await orchestrator.checkpoints.list_checkpoints(_session_cwd(channel))
        return [
            {
                "id": checkpoint.id,
                "label": checkpoint.label,
                "created_at": checkpoint.created_at.isoformat() if checkpoint.created_at else None,
            }
            for checkpoint in checkpoints
        ]

    async def _rollback(channel: str, checkpoint_id: str, context: Context | None = None) -> dict[str, Any]:
        if orchestrator.chat.coordinator.is_busy(channel):
            raise RuntimeError(f"Channel '{channel}' has a run in progress")
        session = orchestrator.sessions.get(channel)
        if session is None:
            raise ValueError(f"Channel '{channel}' has no session")
        try:
            result = await orchestrator.checkpoints.rollback(
                session.cwd,
                checkpoint_id,
                transcript=orchestrator.sessions.find_transcript(session.session_id),
            )
        except CheckpointError as exc:
            raise RuntimeError(str(exc)) from exc
        _emit_log(context, "info", "Rolled back", extra={"channel": channel, "checkpoint": result.checkpoint.id})
        return {
            "checkpoint": result.checkpoint.id,
            "label": result.checkpoint.label,
            "transcript_truncated": result.transcript_truncated,
            "removed_entries": result.removed_entries,
        }

    def _set_profile(name: str, context: Context | None = None) -> dict[str, Any]:
        try:
            profile = orchestrator.profiles.set_active(name)
        except ProfileLoadError as exc:
            raise ValueError(str(exc)) from exc
        return {"active": profile.id, "label": profile.label, "model": profile.model}

    tool_send = server.tool(
        name="send_message",
        description=(
            "Send a chat message or slash command on a channel. Messages sent while "
            "a run is active interrupt it and are merged into the next run."
        ),
    )(_send_message)

    tool_fetch = server.tool(
        name="fetch_messages",
        description="Fetch replies and status messages recorded for a channel.",
    )(_fetch_messages)

    tool_run = server.tool(
        name="run_task",
        description="Run a configured task immediately and return its outcome.",
    )(_run_task)

    tool_list_tasks = server.tool(
        name="list_tasks",
        description="List configured tasks with their schedule and last run.",
    )(_list_tasks)

    tool_budget = server.tool(
        name="budget_status",
        description="Report today's cost-unit usage against the daily limit.",
    )(_budget_status)

    tool_new_session = server.tool(
        name="new_session",
        description="Bind a channel to a brand-new worker conversation.",
    )(_new_session)

    tool_conversations = server.tool(
        name="list_conversations",
        description="List recent worker conversations, optionally within one directory.",
    )(_list_conversations)

    tool_checkpoints = server.tool(
        name="list_checkpoints",
        description="List checkpoints in the working directory of a channel's session.",
    )(_list_checkpoints)

    tool_rollback = server.tool(
        name="rollback",
        description="Reset a channel's working directory to a checkpoint and trim its transcript.",
        annotations={
            "safety": {
                "level": "caution",
                "notes": "Discards uncommitted changes and untracked files",
            }
        },
    )(_rollback)

    tool_profile = server.tool(
        name="set_profile",
        description="Switch the execution profile used for new worker runs.",
    )(_set_profile)

    return ToolHandles(
        send_message=tool_send,
        fetch_messages=tool_fetch,
        run_task=tool_run,
        list_tasks=tool_list_tasks,
        budget_status=tool_budget,
        new_session=tool_new_session,
        list_conversations=tool_conversations,
        list_checkpoints=tool_checkpoints,
        rollback=tool_rollback,
        set_profile=tool_profile,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Log through the MCP request logger when one is attached, else the module logger."""

    payload = extra or {}
    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        log_method = getattr(ctx_logger, level, None) if ctx_logger is not None else None
        if callable(log_method):
            log_method(message, extra=payload)
            return
    getattr(logger, level, logger.info)(message, extra=payload)


__all__ = ["ToolHandles", "register_tools"]
