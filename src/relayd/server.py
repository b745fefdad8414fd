"""FastMCP server bootstrap for relayd."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import RelaydSettings, get_settings
from .context import OrchestratorContext, build_context
from .profiles import ProfileLoadError
from .tasks import ConfigWatcher
from .tools import register_tools

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the relayd daemon."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def create_server(
    settings: Optional[RelaydSettings] = None,
    orchestrator: OrchestratorContext | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server around an orchestrator context."""

    settings = settings or get_settings()
    orchestrator = orchestrator or build_context(settings)

    server = FastMCP(
        name="relayd",
        version=__version__,
        instructions=(
            "relayd drives a coding-agent CLI on behalf of chat channels and a "
            "heartbeat scheduler. Send messages per channel, run and inspect "
            "scheduled tasks, manage conversations, checkpoints and profiles."
        ),
    )

    handles = register_tools(server, orchestrator=orchestrator)

    @server.resource(
        "resource://relayd/status",
        name="relayd_status",
        title="relayd Status",
        description="Provides the current runtime status for the relayd daemon.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing runtime state."""

        try:
            profile_ids = sorted(orchestrator.profiles.available())
            profile_error: str | None = None
        except ProfileLoadError as exc:
            profile_ids = []
            profile_error = str(exc)

        tasks = orchestrator.scheduler.status()
        status_counts: dict[str, int] = {}
        for row in tasks:
            status = (row["last_run"] or {}).get("status", "never_run")
            status_counts[status] = status_counts.get(status, 0) + 1

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "started_at": orchestrator.started_at,
            "log_level": settings.log_level,
            "worker": {"path": str(orchestrator.worker.executable)},
            "profiles": {
                "active": orchestrator.profiles.active_name,
                "ids": profile_ids,
                "error": profile_error,
            },
            "budget": orchestrator.ledger.summary(),
            "tasks": {
                "count": len(tasks),
                "running": [row["name"] for row in tasks if row["running"]],
                "status_counts": status_counts,
            },
            "channels": {
                "active": orchestrator.worker.registry.channels(),
                "notify": list(settings.notify_channels),
            },
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "orchestrator", orchestrator)
    setattr(server, "tool_handles", handles)
    return server


async def serve(server: FastMCP, orchestrator: OrchestratorContext) -> None:
    """Run the heartbeat, the config watcher and the MCP transport together."""

    watcher = ConfigWatcher(orchestrator.config_loader, orchestrator.apply_config)
    background = [
        asyncio.create_task(orchestrator.scheduler.run_forever(), name="heartbeat"),
        asyncio.create_task(watcher.run(), name="config-watcher"),
    ]
    try:
        await server.run_async()
    finally:
        orchestrator.scheduler.stop()
        watcher.stop()
        await orchestrator.chat.close()
        await asyncio.gather(*background, return_exceptions=True)
        await orchestrator.scheduler.drain(timeout=orchestrator.config.session.join_timeout)


def main() -> None:
    """Entry point for running the relayd daemon via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    orchestrator: OrchestratorContext = getattr(server, "orchestrator")
    logger.info(
        "Launching relayd",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "worker": str(orchestrator.worker.executable),
            "tasks": len(orchestrator.config.tasks),
        },
    )
    asyncio.run(serve(server, orchestrator))


if __name__ == "__main__":
    main()
