"""Data models for persistent tracking."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any


@dataclass(slots=True)
class TaskRunRecord:
    last_run: str | None = None
    status: str | None = None
    skip_reason: str | None = None
    output_preview: str = ""
    error: str | None = None
    session_id: str | None = None
    steps_completed: int | None = None
    steps_total: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskRunRecord":
        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})


@dataclass(slots=True)
class BudgetState:
    date: str | None = None
    units_used: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"date": self.date, "units_used": self.units_used}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BudgetState":
        return cls(date=data.get("date"), units_used=int(data.get("units_used", 0) or 0))


@dataclass(slots=True)
class DaemonState:
    tasks: dict[str, TaskRunRecord] = field(default_factory=dict)
    budget: BudgetState = field(default_factory=BudgetState)
    sessions: dict[str, dict[str, Any]] = field(default_factory=dict)
    session_names: dict[str, str] = field(default_factory=dict)
    active_profile: str | None = None
    started_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tasks": {name: record.to_dict() for name, record in self.tasks.items()},
            "budget": self.budget.to_dict(),
            "sessions": self.sessions,
            "session_names": self.session_names,
            "active_profile": self.active_profile,
            "started_at": self.started_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DaemonState":
        return cls(
            tasks={
                name: TaskRunRecord.from_dict(record)
                for name, record in (data.get("tasks") or {}).items()
                if isinstance(record, dict)
            },
            budget=BudgetState.from_dict(data.get("budget") or {}),
            sessions=dict(data.get("sessions") or {}),
            session_names=dict(data.get("session_names") or {}),
            active_profile=data.get("active_profile"),
            started_at=data.get("started_at"),
        )


__all__ = ["TaskRunRecord", "BudgetState", "DaemonState"]
