"""JSON-file persistence layer."""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from .models import BudgetState, DaemonState, TaskRunRecord

logger = logging.getLogger(__name__)


class StateStoreError(RuntimeError):
    """Raised when the state file cannot be written."""


class StateStore:
    """Load and persist the daemon's small JSON state document.

    All mutation happens on the event loop thread; every ``save`` rewrites the
    whole document through a temporary file so a crash never leaves a torn file.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = Path(path) if path is not None else None
        self._state = self._load()

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def state(self) -> DaemonState:
        return self._state

    def _load(self) -> DaemonState:
        if self._path is None or not self._path.exists():
            return DaemonState()
        try:
            document = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(
                "State file unreadable, starting fresh",
                extra={"path": str(self._path), "error": str(exc)},
            )
            return DaemonState()
        if not isinstance(document, dict):
            return DaemonState()
        return DaemonState.from_dict(document)

    def save(self) -> None:
        if self._path is None:
            return
        payload = json.dumps(self._state.to_dict(), indent=2, ensure_ascii=False)
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(payload, encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as exc:
            raise StateStoreError(f"Failed to write state file {self._path}: {exc}") from exc

    # task history -----------------------------------------------------

    def task_record(self, name: str) -> TaskRunRecord | None:
        return self._state.tasks.get(name)

    def record_task(self, name: str, record: TaskRunRecord) -> TaskRunRecord:
        self._state.tasks[name] = record
        self.save()
        return record

    # budget -----------------------------------------------------------

    @property
    def budget(self) -> BudgetState:
        return self._state.budget

    # sessions ---------------------------------------------------------

    def session_payload(self, channel: str) -> dict | None:
        return self._state.sessions.get(channel)

    def put_session(self, channel: str, payload: dict) -> None:
        self._state.sessions[channel] = payload
        self.save()

    def session_name(self, session_id: str) -> str:
        return self._state.session_names.get(session_id, "")

    def set_session_name(self, session_id: str, name: str) -> None:
        self._state.session_names[session_id] = name
        self.save()

    # profiles ---------------------------------------------------------

    @property
    def active_profile(self) -> str | None:
        return self._state.active_profile

    def set_active_profile(self, name: str | None) -> None:
        self._state.active_profile = name
        self.save()


__all__ = ["StateStore", "StateStoreError"]
