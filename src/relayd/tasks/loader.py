"""Daemon configuration loading and hot reload."""

from __future__ import annotations

import asyncio
import inspect
import logging
from pathlib import Path
from typing import Awaitable, Callable

import yaml
from pydantic import ValidationError

from .models import DaemonConfig

logger = logging.getLogger(__name__)


class ConfigLoadError(RuntimeError):
    """Raised when the daemon configuration cannot be parsed."""


class ConfigLoader:
    """Loads ``daemon.yaml`` into a validated :class:`DaemonConfig`."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def mtime(self) -> float | None:
        try:
            return self._path.stat().st_mtime
        except OSError:
            return None

    def load(self) -> DaemonConfig:
        if not self._path.exists():
            logger.info("No daemon config found, running without tasks", extra={"path": str(self._path)})
            return DaemonConfig()

        try:
            document = yaml.safe_load(self._path.read_text(encoding="utf-8"))
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigLoadError(f"Failed to read {self._path}: {exc}") from exc

        if document is None:
            return DaemonConfig()
        if not isinstance(document, dict):
            raise ConfigLoadError(f"{self._path} must contain a mapping at the top level")

        try:
            return DaemonConfig.model_validate(document)
        except ValidationError as exc:
            raise ConfigLoadError(f"Config validation error in {self._path}: {exc}") from exc


class ConfigWatcher:
    """Poll the config file's mtime and hand each successfully parsed change to ``on_change``."""

    def __init__(
        self,
        loader: ConfigLoader,
        on_change: Callable[[DaemonConfig], Awaitable[None] | None],
        *,
        poll_interval: float = 2.0,
        settle: float = 1.0,
    ) -> None:
        self._loader = loader
        self._on_change = on_change
        self._poll_interval = poll_interval
        self._settle = settle
        self._last_mtime = loader.mtime()
        self._stopped = asyncio.Event()

    def stop(self) -> None:
        self._stopped.set()

    async def check(self) -> bool:
        """Reload once if the file changed since the last check; returns True on reload."""

        current = self._loader.mtime()
        if current == self._last_mtime:
            return False
        # let the writer finish before parsing
        await asyncio.sleep(self._settle)
        self._last_mtime = self._loader.mtime()
        try:
            config = self._loader.load()
        except ConfigLoadError as exc:
            logger.error("Config reload failed, keeping previous config", extra={"error": str(exc)})
            return False
        logger.info("Config changed on disk, reloading", extra={"path": str(self._loader.path)})
        outcome = self._on_change(config)
        if inspect.isawaitable(outcome):
            await outcome
        return True

    async def run(self) -> None:
        while not self._stopped.is_set():
            try:
                await asyncio.wait_for(self._stopped.wait(), self._poll_interval)
            except asyncio.TimeoutError:
                await self.check()


__all__ = ["ConfigLoadError", "ConfigLoader", "ConfigWatcher"]
