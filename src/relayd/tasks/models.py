"""Daemon configuration models."""

from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

_INTERVAL_PATTERN = re.compile(r"^(\d+)\s*(s|m|h|d)$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_interval(value: Any) -> int:
    """Convert ``"30s" | "5m" | "2h" | "1d"`` or a plain number of seconds to seconds."""

    if isinstance(value, bool):
        raise ValueError(f"Invalid interval {value!r}")
    if isinstance(value, (int, float)):
        seconds = int(value)
    else:
        text = str(value).strip().lower()
        if text.isdigit():
            seconds = int(text)
        else:
            match = _INTERVAL_PATTERN.match(text)
            if not match:
                raise ValueError(f"Invalid interval {value!r}; use forms like 30s, 5m, 2h, 1d")
            seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]
    if seconds <= 0:
        raise ValueError("Interval must be positive")
    return seconds


class PlanStep(BaseModel):
    """One numbered step of a multi-step task."""

    prompt: str = ""
    skill: str | None = None
    optional: bool = False
    timeout: float = Field(default=300.0, gt=0)

    @model_validator(mode="after")
    def _require_instructions(self) -> "PlanStep":
        if not self.prompt.strip() and not self.skill:
            raise ValueError("Plan step needs a prompt or a skill")
        return self

    def instructions(self) -> str:
        prefix = f"/{self.skill} " if self.skill else ""
        return (prefix + self.prompt).strip()


class TaskDefinition(BaseModel):
    """A named unit of recurring work."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    type: Literal["agent", "script", "plan"] = "agent"
    interval: int = 3600
    prompt: str = ""
    command: str | None = None
    steps: list[PlanStep] = Field(default_factory=list)
    precondition: str | None = None
    model: str | None = None
    allowed_tools: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("allowed_tools", "allowedTools")
    )
    cwd: str | None = None
    notify: bool = False
    enabled: bool = True
    persistent_session: bool = False
    checkpoint: bool = False
    timeout: float = Field(default=120.0, gt=0)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Task name must not be empty")
        return normalized

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any):
        if value == "workflow":
            return "plan"
        return value

    @field_validator("interval", mode="before")
    @classmethod
    def _parse_interval(cls, value: Any) -> int:
        return parse_interval(value)

    @model_validator(mode="after")
    def _check_shape(self) -> "TaskDefinition":
        if self.type == "script" and not (self.command or "").strip():
            raise ValueError(f"Script task '{self.name}' needs a command")
        if self.type == "plan" and not self.steps:
            raise ValueError(f"Plan task '{self.name}' needs at least one step")
        if self.type == "agent" and not self.prompt.strip():
            raise ValueError(f"Task '{self.name}' needs a prompt")
        return self

    @property
    def effective_model(self) -> str:
        if self.model:
            return self.model
        return "sonnet" if self.type == "plan" else "haiku"


class BudgetConfig(BaseModel):
    daily_limit: int = Field(default=50_000, gt=0)
    warning_threshold: float = Field(default=0.8, gt=0, le=1)


class SessionConfig(BaseModel):
    allowed_tools: list[str] = Field(default_factory=list)
    default_cwd: str | None = None
    model: str | None = None
    timeout: float = Field(default=300.0, gt=0)
    debounce: float = Field(default=5.0, ge=0)
    join_timeout: float = Field(default=15.0, gt=0)
    checkpoints: bool = True


class DaemonConfig(BaseModel):
    """Validated contents of ``daemon.yaml``."""

    tick_interval: int = Field(
        default=60, validation_alias=AliasChoices("tick_interval", "heartbeat_check_interval")
    )
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    tasks: list[TaskDefinition] = Field(default_factory=list)

    @field_validator("tick_interval", mode="before")
    @classmethod
    def _parse_tick(cls, value: Any) -> int:
        return parse_interval(value)

    @field_validator("tasks")
    @classmethod
    def _unique_names(cls, value: list[TaskDefinition]) -> list[TaskDefinition]:
        seen: set[str] = set()
        for task in value:
            if task.name in seen:
                raise ValueError(f"Duplicate task name '{task.name}'")
            seen.add(task.name)
        return value

    def task(self, name: str) -> TaskDefinition | None:
        return next((task for task in self.tasks if task.name == name), None)


__all__ = [
    "BudgetConfig",
    "DaemonConfig",
    "PlanStep",
    "SessionConfig",
    "TaskDefinition",
    "parse_interval",
]
