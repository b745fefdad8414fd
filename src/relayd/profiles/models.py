"""Execution profile models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

DEFAULT_PROFILE_ID = "default"


class ExecutionProfile(BaseModel):
    """Backend selection the worker is launched with."""

    id: str = Field(..., description="Unique identifier for the profile.")
    label: str = Field(default="", description="Display label for the profile.")
    env: dict[str, str] = Field(
        default_factory=dict,
        description="Environment overrides injected into the worker process (base URL, API key).",
    )
    model: str | None = Field(
        default=None,
        description="Model override applied when a run does not request one explicitly.",
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def _normalize_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Execution profile id must not be empty")
        return normalized

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, value: Any):
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(key): str(item) for key, item in value.items() if item is not None}
        raise TypeError("Profile env must be a mapping of variable names to values")

    @property
    def is_default(self) -> bool:
        return self.id == DEFAULT_PROFILE_ID


def default_profile() -> ExecutionProfile:
    return ExecutionProfile(id=DEFAULT_PROFILE_ID, label="Default backend")


__all__ = ["DEFAULT_PROFILE_ID", "ExecutionProfile", "default_profile"]
