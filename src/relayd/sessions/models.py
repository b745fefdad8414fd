"""Session models."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True)
class Session:
    """Binding of one channel to one worker conversation."""

    channel: str
    session_id: str
    cwd: str
    started: bool = False
    created_at: str = field(default_factory=_now_iso)
    name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload.pop("channel")
        return payload

    @classmethod
    def from_dict(cls, channel: str, data: dict[str, Any]) -> "Session":
        return cls(
            channel=channel,
            session_id=str(data.get("session_id") or data.get("id") or ""),
            cwd=str(data.get("cwd") or Path.home()),
            started=bool(data.get("started", False)),
            created_at=str(data.get("created_at") or _now_iso()),
            name=data.get("name") or None,
        )


@dataclass(slots=True)
class ConversationInfo:
    """A worker conversation discovered in the transcript store."""

    session_id: str
    mtime: float
    project_path: str | None = None
    message_count: int | None = None
    custom_title: str | None = None
    summary: str | None = None
    first_prompt: str | None = None
    transcript: Path | None = None

    def label(self, name: str | None = None) -> str:
        short_id = self.session_id[:4]
        project = Path(self.project_path).name if self.project_path else ""
        title = name or self.custom_title
        if title:
            return f"[{title}] {project} #{short_id}".replace("  ", " ")
        text = (self.summary or self.first_prompt or "")[:30]
        prefix = f"{project}: " if project else ""
        return f"{prefix}{text} #{short_id}".strip()


__all__ = ["ConversationInfo", "Session"]
