"""Wiring of the daemon's long-lived components."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .budget import BudgetLedger
from .channels import ChannelAdapter, ChannelNotifier, OutboxAdapter
from .chat import ChatService
from .checkpoints import CheckpointManager
from .config import RelaydSettings, get_settings
from .profiles import ProfileLoader, ProfileSelector
from .sessions import SessionDirectory
from .storage import StateStore
from .tasks import ConfigLoadError, ConfigLoader, DaemonConfig, HeartbeatScheduler, TaskRunner
from .worker import WorkerRunner

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class OrchestratorContext:
    """Everything the control surface and the background loops share."""

    settings: RelaydSettings
    store: StateStore
    config_loader: ConfigLoader
    config: DaemonConfig
    ledger: BudgetLedger
    profiles: ProfileSelector
    worker: WorkerRunner
    sessions: SessionDirectory
    checkpoints: CheckpointManager
    outbox: OutboxAdapter
    adapter: ChannelAdapter
    notifier: ChannelNotifier
    task_runner: TaskRunner
    scheduler: HeartbeatScheduler
    chat: ChatService
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def apply_config(self, config: DaemonConfig) -> None:
        """Push a freshly loaded configuration into the running components."""

        self.config = config
        self.ledger.configure(
            daily_limit=config.budget.daily_limit,
            warning_threshold=config.budget.warning_threshold,
        )
        self.chat.configure(config.session)
        self.scheduler.reload(config)

    async def reload(self) -> str:
        try:
            config = self.config_loader.load()
        except ConfigLoadError as exc:
            logger.error("Manual reload failed", extra={"error": str(exc)})
            return f"Reload failed: {exc}"
        self.apply_config(config)
        return f"Reloaded {len(config.tasks)} task(s)"


def build_context(
    settings: RelaydSettings | None = None,
    *,
    worker: WorkerRunner | None = None,
    adapter: ChannelAdapter | None = None,
) -> OrchestratorContext:
    """Construct the component graph from ``settings``.

    Raises :class:`~relayd.tasks.ConfigLoadError` when ``daemon.yaml`` is
    invalid and :class:`~relayd.worker.WorkerNotFoundError` when no worker
    executable can be found and none was supplied.
    """

    settings = settings or get_settings()
    store = StateStore(settings.resolved_state_path)
    store.state.started_at = datetime.now(timezone.utc).isoformat()
    store.save()

    config_loader = ConfigLoader(settings.resolved_config_path)
    config = config_loader.load()

    ledger = BudgetLedger(
        store,
        daily_limit=config.budget.daily_limit,
        warning_threshold=config.budget.warning_threshold,
    )
    profiles = ProfileSelector(
        ProfileLoader([settings.resolved_profiles_path]),
        store,
        fallback_threshold=settings.fallback_threshold,
    )
    if worker is None:
        worker = WorkerRunner(
            Path(settings.worker_path) if settings.worker_path else None,
            ledger=ledger,
            profiles=profiles,
        )

    default_cwd = Path(config.session.default_cwd).expanduser() if config.session.default_cwd else None
    sessions = SessionDirectory(store, settings.transcripts_path, default_cwd=default_cwd)
    checkpoints = CheckpointManager()
    outbox = OutboxAdapter()
    adapter = adapter or outbox
    notifier = ChannelNotifier(adapter, settings.notify_channels)

    task_runner = TaskRunner(
        worker,
        ledger,
        store,
        checkpoints=checkpoints,
        notifier=notifier,
        default_cwd=str(default_cwd) if default_cwd else None,
    )
    scheduler = HeartbeatScheduler(config, task_runner, store)
    chat = ChatService(
        worker,
        sessions,
        adapter,
        ledger,
        profiles,
        checkpoints=checkpoints,
        scheduler=scheduler,
        session_config=config.session,
    )

    context = OrchestratorContext(
        settings=settings,
        store=store,
        config_loader=config_loader,
        config=config,
        ledger=ledger,
        profiles=profiles,
        worker=worker,
        sessions=sessions,
        checkpoints=checkpoints,
        outbox=outbox,
        adapter=adapter,
        notifier=notifier,
        task_runner=task_runner,
        scheduler=scheduler,
        chat=chat,
        started_at=store.state.started_at,
    )
    chat.reloader = context.reload
    logger.info(
        "Context ready",
        extra={
            "config": str(config_loader.path),
            "state": str(settings.resolved_state_path),
            "tasks": len(config.tasks),
        },
    )
    return context


__all__ = ["OrchestratorContext", "build_context"]
